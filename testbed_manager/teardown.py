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

"""Teardown of a per-change testbed."""

from __future__ import annotations

from rich.panel import Panel

from testbed_manager import console
from testbed_manager.config import ProvisionConfig, TestbedNames, resolve_parent_kubeconfig
from testbed_manager.utils import run_kubectl, run_vcluster, warn


def teardown(change_id: str, cfg: ProvisionConfig | None = None) -> bool:
    """Delete the vcluster, namespace, fallback PV and kubeconfig for *change_id*.

    Every step is best effort and safe to repeat.

    Args:
        change_id: Change identifier whose testbed to remove.
        cfg: Provisioning configuration, or None for env/defaults.

    Returns:
        True if every step succeeded.
    """
    cfg = cfg or ProvisionConfig()
    names = TestbedNames.for_change(change_id, cfg)
    parent_kubeconfig = resolve_parent_kubeconfig(cfg)
    console.print(Panel.fit(f"Tearing down {names.vcluster}", style="bold blue"))
    clean = True

    result = run_vcluster(["delete", names.vcluster, "-n", names.namespace], kubeconfig=parent_kubeconfig)
    if result.ok:
        console.print(f"[green]\u2705 vCluster {names.vcluster} deleted[/green]")
    elif "not found" in result.detail.lower():
        console.print(f"[yellow]   vCluster {names.vcluster} not found or already deleted[/yellow]")
    else:
        warn(f"vcluster delete failed: {result.detail}")
        clean = False

    ok, _, stderr = run_kubectl(
        ["delete", "namespace", names.namespace, "--ignore-not-found", "--wait=false"],
        kubeconfig=parent_kubeconfig,
        timeout=120,
    )
    if not ok:
        warn(f"Could not delete namespace {names.namespace}: {stderr.strip()[:200]}")
        clean = False

    ok, _, stderr = run_kubectl(
        ["delete", "pv", names.fallback_pv, "--ignore-not-found"],
        kubeconfig=parent_kubeconfig,
    )
    if not ok:
        warn(f"Could not delete PV {names.fallback_pv}: {stderr.strip()[:200]}")
        clean = False

    names.kubeconfig.unlink(missing_ok=True)
    if clean:
        console.print(f"[green]\u2705 Testbed for change {change_id} removed[/green]")
    return clean
