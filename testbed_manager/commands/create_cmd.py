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

"""Create subcommands (vcluster)."""

from __future__ import annotations

from pathlib import Path

import typer

from testbed_manager.commands import build_config, change_id_callback
from testbed_manager.config import LeaseConfig, ProvisionConfig
from testbed_manager.orchestrator import run_provision

app = typer.Typer(help="Create testbed resources.")


@app.command()
def vcluster(
    change_id: str = typer.Argument(..., callback=change_id_callback, help="Change identifier, e.g. a PR number"),
    size_gi: int | None = typer.Option(None, "--size-gi", help="Shared volume size in Gi (default: 5)"),
    k8s_version: str | None = typer.Option(None, "--k8s-version", help="Kubernetes version label"),
    parent_context: str | None = typer.Option(None, "--parent-context", help="Parent kubeconfig context"),
    kubeconfig_dir: Path | None = typer.Option(None, "--kubeconfig-dir", help="Where to write the vcluster kubeconfig"),
    skip_host_network: bool = typer.Option(
        False, "--skip-host-network", help="Skip sysctl tuning and Flannel checks"),
    no_pv_sync: bool = typer.Option(False, "--no-pv-sync", help="Do not sync PersistentVolumes from the parent"),
    no_lease: bool = typer.Option(False, "--no-lease", help="Do not take the per-change lease"),
) -> None:
    """Create or upgrade the vcluster testbed for CHANGE_ID."""
    provision_cfg = build_config(
        ProvisionConfig,
        size_gi=size_gi,
        k8s_version=k8s_version,
        parent_context=parent_context,
        kubeconfig_dir=kubeconfig_dir,
        configure_host_network=False if skip_host_network else None,
        sync_persistent_volumes=False if no_pv_sync else None,
    )
    lease_cfg = build_config(LeaseConfig, use_lease=False if no_lease else None)

    result = run_provision(change_id, provision_cfg, lease_cfg)
    typer.echo(str(result.kubeconfig))
