# /*
# Copyright 2026 The Testbed Manager Authors.
#
# Licensed under the Apache License, Version 2.0 (the "License");
# you may not use this file except in compliance with the License.
# You may obtain a copy of the License at
#
#     http://www.apache.org/licenses/LICENSE-2.0
#
# Unless required by applicable law or agreed to in writing, software
# distributed under the License is distributed on an "AS IS" BASIS,
# WITHOUT WARRANTIES OR CONDITIONS OF ANY KIND, either express or implied.
# See the License for the specific language governing permissions and
# limitations under the License.
# */

"""Per-change Lease on the parent cluster serializing runs for one identifier."""

from __future__ import annotations

import json
from collections.abc import Callable, Iterator
from contextlib import contextmanager
from datetime import datetime, timedelta, timezone
from pathlib import Path

import yaml
from tenacity import RetryError, retry, retry_if_result, stop_after_attempt, wait_fixed

from testbed_manager import console, logger
from testbed_manager.config import LeaseConfig, TestbedNames
from testbed_manager.constants import EXIT_LEASE_FAILED, EXIT_LEASE_HELD
from testbed_manager.errors import FatalError
from testbed_manager.utils import run_kubectl, warn

MICROTIME_FORMAT = "%Y-%m-%dT%H:%M:%S.%fZ"
LABEL_CHANGE_ID = "testbed.ci/change-id"


def lease_manifest(names: TestbedNames, cfg: LeaseConfig, now: datetime) -> dict:
    """Build the Lease resource claiming *names* for this run.

    Args:
        names: Derived testbed names.
        cfg: Lease configuration with holder and duration.
        now: Acquisition time (UTC).

    Returns:
        Kubernetes Lease resource as a dictionary.
    """
    stamp = now.strftime(MICROTIME_FORMAT)
    return {
        "apiVersion": "coordination.k8s.io/v1",
        "kind": "Lease",
        "metadata": {
            "name": names.lease,
            "namespace": cfg.lease_namespace,
            "labels": {LABEL_CHANGE_ID: names.change_id},
        },
        "spec": {
            "holderIdentity": cfg.holder,
            "leaseDurationSeconds": cfg.lease_duration,
            "acquireTime": stamp,
            "renewTime": stamp,
        },
    }


def lease_expired(lease: dict, now: datetime) -> bool:
    """Whether an existing Lease outlived its duration (e.g. its holder crashed)."""
    spec = lease.get("spec") or {}
    renew = spec.get("renewTime") or spec.get("acquireTime")
    duration = spec.get("leaseDurationSeconds")
    if not renew or not duration:
        return False
    try:
        renewed = datetime.strptime(renew, MICROTIME_FORMAT).replace(tzinfo=timezone.utc)
    except ValueError:
        return False
    return now > renewed + timedelta(seconds=int(duration))


def _try_acquire(names: TestbedNames, cfg: LeaseConfig, parent_kubeconfig: Path | None) -> bool:
    now = datetime.now(timezone.utc)
    ok, _, stderr = run_kubectl(
        ["create", "-f", "-"],
        kubeconfig=parent_kubeconfig,
        input_text=yaml.dump(lease_manifest(names, cfg, now), default_flow_style=False),
    )
    if ok:
        return True
    if "AlreadyExists" not in stderr:
        raise FatalError(
            f"Could not create lease {names.lease}: {stderr.strip()[:200]}",
            exit_code=EXIT_LEASE_FAILED,
        )

    ok, stdout, _ = run_kubectl(
        ["get", "lease", names.lease, "-n", cfg.lease_namespace, "-o", "json"],
        kubeconfig=parent_kubeconfig,
    )
    if not ok:
        return False
    try:
        current = json.loads(stdout)
    except json.JSONDecodeError:
        return False
    holder = (current.get("spec") or {}).get("holderIdentity")
    if lease_expired(current, now):
        logger.warning("Lease %s held by %s expired; taking over", names.lease, holder)
        release_lease(names, cfg, parent_kubeconfig)
    else:
        console.print(f"[yellow]   Lease {names.lease} held by {holder}; waiting...[/yellow]")
    return False


def acquire_lease(names: TestbedNames, cfg: LeaseConfig, parent_kubeconfig: Path | None = None) -> None:
    """Create the Lease for *names*, waiting while another run holds it.

    ``kubectl create`` either succeeds or fails with AlreadyExists, so two
    runs for the same change identifier cannot both hold the lease.

    Raises:
        FatalError: If the lease is still held after all retries, or at once
            if the lease cannot be created for any other reason.
    """

    @retry(
        stop=stop_after_attempt(cfg.lease_retries),
        wait=wait_fixed(cfg.lease_interval),
        retry=retry_if_result(lambda acquired: not acquired),
    )
    def _attempt() -> bool:
        return _try_acquire(names, cfg, parent_kubeconfig)

    try:
        _attempt()
    except RetryError as err:
        raise FatalError(
            f"Lease {names.lease} still held after {cfg.lease_retries} attempts",
            exit_code=EXIT_LEASE_HELD,
        ) from err
    console.print(f"[green]\u2705 Acquired lease {names.lease}[/green]")


def renew_lease(names: TestbedNames, cfg: LeaseConfig, parent_kubeconfig: Path | None = None) -> bool:
    """Move the Lease's ``renewTime`` to now so it is not taken over mid-run.

    Returns:
        True if the Lease was renewed; a failure is only a warning.
    """
    stamp = datetime.now(timezone.utc).strftime(MICROTIME_FORMAT)
    patch = json.dumps({"spec": {"holderIdentity": cfg.holder, "renewTime": stamp}})
    ok, _, stderr = run_kubectl(
        ["patch", "lease", names.lease, "-n", cfg.lease_namespace, "--type=merge", "-p", patch],
        kubeconfig=parent_kubeconfig,
    )
    if not ok:
        warn(f"Could not renew lease {names.lease}: {stderr.strip()[:200]}")
    else:
        logger.debug("Renewed lease %s at %s", names.lease, stamp)
    return ok


def release_lease(names: TestbedNames, cfg: LeaseConfig, parent_kubeconfig: Path | None = None) -> None:
    """Delete the Lease for *names*; a failure is only a warning."""
    ok, _, stderr = run_kubectl(
        ["delete", "lease", names.lease, "-n", cfg.lease_namespace, "--ignore-not-found"],
        kubeconfig=parent_kubeconfig,
    )
    if not ok:
        warn(f"Could not release lease {names.lease}: {stderr.strip()[:200]}")


@contextmanager
def change_lease(
    names: TestbedNames,
    cfg: LeaseConfig | None = None,
    parent_kubeconfig: Path | None = None,
) -> Iterator[Callable[[], bool]]:
    """Hold the per-change Lease for the duration of the block.

    Yields a callable that renews the Lease; call it between long phases.
    """
    cfg = cfg or LeaseConfig()
    if not cfg.use_lease:
        yield lambda: True
        return
    acquire_lease(names, cfg, parent_kubeconfig)
    try:
        yield lambda: renew_lease(names, cfg, parent_kubeconfig)
    finally:
        release_lease(names, cfg, parent_kubeconfig)
