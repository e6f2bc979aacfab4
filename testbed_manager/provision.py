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

"""Provisioning of one per-change vcluster testbed on the parent cluster."""

from __future__ import annotations

import base64
import binascii
import json
import os
import tempfile
from dataclasses import dataclass
from pathlib import Path

from rich.panel import Panel
from tenacity import RetryError, retry, retry_if_result, stop_after_attempt, wait_fixed

from testbed_manager import console, logger
from testbed_manager.config import (
    ProvisionConfig,
    TestbedNames,
    display_config,
    resolve_parent_kubeconfig,
)
from testbed_manager.constants import (
    EXIT_KUBECONFIG_FAILED,
    EXIT_NAMESPACE_FAILED,
    EXIT_PARENT_KUBECONFIG_MISSING,
    EXIT_PARENT_UNREACHABLE,
    FLANNEL_DAEMONSET,
    FLANNEL_MANIFEST_URL,
    NS_FLANNEL,
    SYSCTL_SETTINGS,
    VCLUSTER_CHART_VERSION,
    VCLUSTER_PV_SYNC_VALUE,
    VCLUSTER_SECRET_KEYS,
    VCLUSTER_SECRET_PREFIX,
    VCLUSTER_SYNC_VALUES,
)
from testbed_manager.errors import FatalError
from testbed_manager.storage import ensure_storage
from testbed_manager.utils import require_command, run_command, run_kubectl, run_vcluster, warn


@dataclass(frozen=True)
class ProvisionResult:
    """Outcome of a provisioning run.

    Attributes:
        names: Derived testbed names.
        kubeconfig: Path of the written vcluster kubeconfig.
        namespace_created: Whether this run created the namespace.
        api_ready: Whether ``/readyz`` answered within the retry budget.
        storage_bound: Whether the shared claim bound in time.
    """

    names: TestbedNames
    kubeconfig: Path
    namespace_created: bool
    api_ready: bool
    storage_bound: bool


# ============================================================================
# Parent cluster preflight
# ============================================================================

def check_prerequisites() -> None:
    """Check that the kubectl and vcluster CLIs are on PATH."""
    console.print(Panel.fit("Checking prerequisites", style="bold blue"))
    for cmd in ("kubectl", "vcluster"):
        require_command(cmd)
    console.print("[green]\u2705 All required tools are available[/green]")


def check_parent_kubeconfig(cfg: ProvisionConfig) -> Path:
    """Resolve the parent kubeconfig and make sure it exists.

    Raises:
        FatalError: If the kubeconfig file is missing.
    """
    parent_kubeconfig = resolve_parent_kubeconfig(cfg)
    console.print(f"[cyan]>> Using parent kubeconfig: {parent_kubeconfig}[/cyan]")
    if not parent_kubeconfig.is_file():
        raise FatalError(
            f"Parent kubeconfig not found: {parent_kubeconfig}",
            exit_code=EXIT_PARENT_KUBECONFIG_MISSING,
        )
    return parent_kubeconfig


def select_parent_context(parent_kubeconfig: Path, context: str) -> None:
    """Switch the parent kubeconfig to *context*; keep the current one on failure."""
    ok, _, _ = run_kubectl(["config", "use-context", context], kubeconfig=parent_kubeconfig)
    if not ok:
        warn(f"Context '{context}' not found or could not be selected; continuing with current context")


def check_parent_reachable(parent_kubeconfig: Path) -> None:
    """Verify the parent API server answers before mutating anything.

    Tries ``/healthz`` first and falls back to listing nodes. Not retried.

    Raises:
        FatalError: If both checks fail.
    """
    console.print("[cyan]>> Verifying parent cluster reachability...[/cyan]")
    ok, _, _ = run_kubectl(["get", "--raw=/healthz"], kubeconfig=parent_kubeconfig)
    if not ok:
        ok, _, stderr = run_kubectl(["get", "nodes"], kubeconfig=parent_kubeconfig)
        if not ok:
            raise FatalError(
                f"Cannot reach parent cluster (failed /healthz & get nodes): {stderr.strip()[:200]}",
                exit_code=EXIT_PARENT_UNREACHABLE,
            )
    console.print("[green]\u2705 Parent cluster reachable[/green]")


# ============================================================================
# Host networking (best effort)
# ============================================================================

def tune_kernel_params() -> int:
    """Apply forwarding sysctls on this host.

    Returns:
        Number of settings that could not be applied.
    """
    console.print("[cyan]>> Ensuring host kernel params for networking...[/cyan]")
    failed = 0
    for setting in SYSCTL_SETTINGS:
        result = run_command(["sudo", "-n", "sysctl", "-w", setting])
        if not result.ok:
            failed += 1
            logger.info("sysctl %s not applied: %s", setting, result.detail)
    if failed:
        warn(f"{failed} of {len(SYSCTL_SETTINGS)} kernel params could not be set")
    return failed


def ensure_flannel(parent_kubeconfig: Path, timeout: int) -> bool:
    """Install the Flannel overlay if missing and wait for its rollout.

    Returns:
        True if the Flannel rollout was confirmed.
    """
    console.print("[cyan]>> Checking Flannel CNI...[/cyan]")
    ok, _, _ = run_kubectl(
        ["-n", NS_FLANNEL, "get", "ds", FLANNEL_DAEMONSET], kubeconfig=parent_kubeconfig
    )
    if ok:
        console.print("   Flannel already present; skipping install")
    else:
        console.print("   Installing Flannel CNI DaemonSet (best effort)")
        ok, _, stderr = run_kubectl(
            ["apply", "--validate=false", "-f", FLANNEL_MANIFEST_URL],
            kubeconfig=parent_kubeconfig,
            timeout=120,
        )
        if not ok:
            warn(f"Flannel install failed; continuing: {stderr.strip()[:200]}")

    console.print(f"   Waiting up to {timeout}s for Flannel rollout...")
    ok, _, _ = run_kubectl(
        ["-n", NS_FLANNEL, "rollout", "status", f"ds/{FLANNEL_DAEMONSET}", f"--timeout={timeout}s"],
        kubeconfig=parent_kubeconfig,
        timeout=timeout + 10,
    )
    if not ok:
        warn("Flannel rollout not confirmed; continuing")
    return ok


# ============================================================================
# Namespace and vcluster
# ============================================================================

def ensure_namespace(namespace: str, parent_kubeconfig: Path) -> bool:
    """Create *namespace* unless it already exists.

    Returns:
        True if this call created the namespace.

    Raises:
        FatalError: If the namespace neither exists nor can be created.
    """
    console.print(f"[cyan]>> Ensuring namespace: {namespace}[/cyan]")
    ok, _, _ = run_kubectl(["get", "namespace", namespace, "-o", "name"], kubeconfig=parent_kubeconfig)
    if ok:
        return False
    ok, _, stderr = run_kubectl(["create", "namespace", namespace], kubeconfig=parent_kubeconfig)
    if not ok and "AlreadyExists" not in stderr:
        raise FatalError(
            f"Failed to create namespace {namespace}: {stderr.strip()[:200]}",
            exit_code=EXIT_NAMESPACE_FAILED,
        )
    return ok


def vcluster_create_args(names: TestbedNames, cfg: ProvisionConfig) -> list[str]:
    """Build the idempotent ``vcluster create --upgrade`` argument list."""
    values = list(VCLUSTER_SYNC_VALUES)
    if cfg.sync_persistent_volumes:
        values.append(VCLUSTER_PV_SYNC_VALUE)
    args = [
        "create", names.vcluster,
        "-n", names.namespace,
        "--upgrade",
        "--connect=false",
    ]
    if VCLUSTER_CHART_VERSION:
        args += ["--chart-version", VCLUSTER_CHART_VERSION]
    for value in values:
        args += ["--set", value]
    return args


def create_or_upgrade_vcluster(names: TestbedNames, cfg: ProvisionConfig, parent_kubeconfig: Path) -> None:
    """Create the vcluster, or upgrade it in place if it already exists.

    Runs from a scratch directory so a local chart directory with the same
    name cannot shadow the release.

    Raises:
        FatalError: With the vcluster exit code if the call fails.
    """
    console.print(Panel.fit(f"Deploying {names.vcluster} in namespace {names.namespace}", style="bold blue"))
    with tempfile.TemporaryDirectory(prefix=f"{names.vcluster}-") as scratch:
        result = run_vcluster(vcluster_create_args(names, cfg), kubeconfig=parent_kubeconfig, cwd=Path(scratch))
    if not result.ok:
        raise FatalError(
            f"vcluster create failed (exit {result.returncode}): {result.detail}",
            exit_code=result.returncode,
        )
    console.print(f"[green]\u2705 vCluster {names.vcluster} created or upgraded[/green]")


# ============================================================================
# Kubeconfig
# ============================================================================

def _kubeconfig_from_secret(names: TestbedNames, parent_kubeconfig: Path) -> str | None:
    """Read the kubeconfig the vcluster stores in its ``vc-<name>`` secret."""
    ok, stdout, stderr = run_kubectl(
        ["get", "secret", f"{VCLUSTER_SECRET_PREFIX}{names.vcluster}", "-n", names.namespace, "-o", "json"],
        kubeconfig=parent_kubeconfig,
    )
    if not ok:
        logger.info("vcluster secret not readable: %s", stderr.strip()[:200])
        return None
    try:
        data = json.loads(stdout).get("data") or {}
        for key in VCLUSTER_SECRET_KEYS:
            if key in data:
                return base64.b64decode(data[key]).decode()
    except (json.JSONDecodeError, binascii.Error, UnicodeDecodeError) as exc:
        logger.info("vcluster secret unreadable: %s", exc)
    return None


def write_kubeconfig(names: TestbedNames, parent_kubeconfig: Path) -> Path:
    """Extract the vcluster kubeconfig and write it with mode 0600.

    Prefers ``vcluster connect --print``; falls back to the generated secret.

    Returns:
        Path of the written kubeconfig.

    Raises:
        FatalError: If neither source yields a kubeconfig.
    """
    console.print(f"[cyan]>> Generating kubeconfig for {names.vcluster} -> {names.kubeconfig}[/cyan]")
    result = run_vcluster(
        ["connect", names.vcluster, "-n", names.namespace, "--update-current=false", "--print"],
        kubeconfig=parent_kubeconfig,
        timeout=120,
    )
    content = result.stdout if result.ok and result.stdout.strip() else None
    if content is None:
        warn("vcluster connect --print failed; reading kubeconfig secret instead")
        content = _kubeconfig_from_secret(names, parent_kubeconfig)
    if not content:
        raise FatalError(
            f"Failed to generate kubeconfig for {names.vcluster}",
            exit_code=EXIT_KUBECONFIG_FAILED,
        )

    names.kubeconfig.parent.mkdir(parents=True, exist_ok=True)
    fd = os.open(names.kubeconfig, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, 0o600)
    # an existing file keeps its old mode through os.open
    os.fchmod(fd, 0o600)
    with os.fdopen(fd, "w") as f:
        f.write(content)
    return names.kubeconfig


# ============================================================================
# Readiness
# ============================================================================

def wait_for_api(kubeconfig: Path, cfg: ProvisionConfig) -> bool:
    """Poll the vcluster ``/readyz`` endpoint with a fixed interval.

    A timeout is only a warning; deploy steps re-check readiness.

    Returns:
        True if the API reported ready.
    """
    console.print("[cyan]>> Waiting for vCluster API...[/cyan]")

    @retry(
        stop=stop_after_attempt(cfg.readiness_retries),
        wait=wait_fixed(cfg.readiness_interval),
        retry=retry_if_result(lambda ready: not ready),
    )
    def _api_ready() -> bool:
        ok, _, _ = run_kubectl(["get", "--raw=/readyz"], kubeconfig=kubeconfig)
        return ok

    try:
        _api_ready()
    except RetryError:
        warn(f"vCluster API not ready after {cfg.readiness_retries} attempts; continuing")
        return False
    console.print("[green]\u2705 vCluster API ready[/green]")
    return True


# ============================================================================
# Public API
# ============================================================================

def _print_summary(names: TestbedNames, cfg: ProvisionConfig) -> None:
    console.print(Panel.fit(
        f"vCluster:  {names.vcluster}\n"
        f"Namespace: {names.namespace}\n"
        f"K8s Ver:   {cfg.k8s_version}\n"
        f"PVC Size:  {cfg.size_gi}Gi\n"
        f"Kubeconfig written to: {names.kubeconfig}",
        style="green",
    ))
    console.print(f"Use:\n  kubectl --kubeconfig {names.kubeconfig} get pods -A")


def provision(change_id: str, cfg: ProvisionConfig | None = None) -> ProvisionResult:
    """Bring the testbed for *change_id* to a ready state, idempotently.

    Only parent unreachability, namespace or vcluster creation failure and
    kubeconfig extraction failure are fatal; everything else warns.

    Args:
        change_id: Change identifier, e.g. a pull request number.
        cfg: Provisioning configuration, or None for env/defaults.

    Returns:
        The ProvisionResult for this run.

    Raises:
        FatalError: On any fatal condition.
    """
    cfg = cfg or ProvisionConfig()
    names = TestbedNames.for_change(change_id, cfg)

    parent_kubeconfig = check_parent_kubeconfig(cfg)
    display_config(names, cfg, parent_kubeconfig)
    check_prerequisites()

    select_parent_context(parent_kubeconfig, cfg.parent_context)
    check_parent_reachable(parent_kubeconfig)

    if cfg.configure_host_network:
        tune_kernel_params()
        ensure_flannel(parent_kubeconfig, cfg.flannel_timeout)

    created = ensure_namespace(names.namespace, parent_kubeconfig)
    create_or_upgrade_vcluster(names, cfg, parent_kubeconfig)
    kubeconfig = write_kubeconfig(names, parent_kubeconfig)
    api_ready = wait_for_api(kubeconfig, cfg)
    storage_bound = ensure_storage(names, cfg, parent_kubeconfig)

    _print_summary(names, cfg)
    return ProvisionResult(
        names=names,
        kubeconfig=kubeconfig,
        namespace_created=created,
        api_ready=api_ready,
        storage_bound=storage_bound,
    )
