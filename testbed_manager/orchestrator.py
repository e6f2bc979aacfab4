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

"""Orchestration functions that compose domain modules into workflows."""

from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path

from rich.panel import Panel

from testbed_manager import console
from testbed_manager.changes import detect_changes, format_units
from testbed_manager.config import (
    DeployConfig,
    DetectConfig,
    LeaseConfig,
    ProvisionConfig,
    TestbedNames,
    TunnelConfig,
)
from testbed_manager.deploy import apply_units, verify_units
from testbed_manager.lease import change_lease
from testbed_manager.provision import (
    ProvisionResult,
    check_parent_kubeconfig,
    check_parent_reachable,
    provision,
    select_parent_context,
)
from testbed_manager.tunnel import ssh_tunnel


@dataclass(frozen=True)
class PipelineResult:
    """Outcome of a full detect/provision/deploy/verify run.

    Attributes:
        units: Affected units detected for the change.
        applied: Units whose manifests were applied.
        provision: Provisioning outcome.
    """

    units: frozenset[str]
    applied: tuple[str, ...]
    provision: ProvisionResult

    @property
    def kubeconfig(self) -> Path:
        return self.provision.kubeconfig


def deploy_and_verify(units: list[str], kubeconfig: Path, cfg: DeployConfig | None = None) -> list[str]:
    """Apply *units* and wait for the rollouts of those that were applied.

    Returns:
        Units that were applied and verified.
    """
    cfg = cfg or DeployConfig()
    applied = apply_units(units, kubeconfig, cfg)
    verify_units(applied, kubeconfig, cfg)
    return applied


def run_provision(
    change_id: str,
    provision_cfg: ProvisionConfig | None = None,
    lease_cfg: LeaseConfig | None = None,
    tunnel_cfg: TunnelConfig | None = None,
) -> ProvisionResult:
    """Provision one testbed while holding its per-change lease.

    Raises:
        FatalError: On any fatal provisioning condition.
    """
    provision_cfg = provision_cfg or ProvisionConfig()
    names = TestbedNames.for_change(change_id, provision_cfg)
    with ssh_tunnel(tunnel_cfg):
        parent_kubeconfig = check_parent_kubeconfig(provision_cfg)
        select_parent_context(parent_kubeconfig, provision_cfg.parent_context)
        check_parent_reachable(parent_kubeconfig)
        with change_lease(names, lease_cfg, parent_kubeconfig):
            return provision(change_id, provision_cfg)


def run_pipeline(
    change_id: str,
    *,
    detect_cfg: DetectConfig | None = None,
    provision_cfg: ProvisionConfig | None = None,
    deploy_cfg: DeployConfig | None = None,
    lease_cfg: LeaseConfig | None = None,
    tunnel_cfg: TunnelConfig | None = None,
) -> PipelineResult:
    """Run detection, provisioning, deploy and verify for one change.

    Phases run strictly in order. The testbed is provisioned even when no
    unit changed, because later test stages use it; deploy and verify are
    then no-ops.

    Args:
        change_id: Change identifier, e.g. a pull request number.
        detect_cfg: Change detection configuration.
        provision_cfg: Provisioning configuration.
        deploy_cfg: Deploy-and-verify configuration.
        lease_cfg: Per-change lease configuration.
        tunnel_cfg: SSH hop configuration; no tunnel without an SSH host.

    Returns:
        The PipelineResult for this run.

    Raises:
        FatalError: On any fatal condition; later phases are not attempted.
    """
    provision_cfg = provision_cfg or ProvisionConfig()
    names = TestbedNames.for_change(change_id, provision_cfg)

    console.print(Panel.fit("Detecting changed units", style="bold blue"))
    units = detect_changes(detect_cfg)

    with ssh_tunnel(tunnel_cfg):
        parent_kubeconfig = check_parent_kubeconfig(provision_cfg)
        select_parent_context(parent_kubeconfig, provision_cfg.parent_context)
        check_parent_reachable(parent_kubeconfig)
        with change_lease(names, lease_cfg, parent_kubeconfig) as renew_lease:
            result = provision(change_id, provision_cfg)
            renew_lease()
            applied = deploy_and_verify(sorted(units), result.kubeconfig, deploy_cfg)

    console.print(Panel.fit(
        f"Change {change_id}: deployed [{format_units(applied) or 'nothing'}]\n"
        f"KUBECONFIG={result.kubeconfig}",
        style="bold green",
    ))
    return PipelineResult(units=frozenset(units), applied=tuple(applied), provision=result)
