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

"""Composite setup subcommands (change)."""

from __future__ import annotations

from pathlib import Path

import typer

from testbed_manager.changes import format_units
from testbed_manager.commands import build_config, change_id_callback
from testbed_manager.config import (
    DeployConfig,
    DetectConfig,
    LeaseConfig,
    ProvisionConfig,
    TunnelConfig,
)
from testbed_manager.orchestrator import run_pipeline

app = typer.Typer(help="Composite testbed workflows.")


@app.command()
def change(
    change_id: str = typer.Argument(..., callback=change_id_callback, help="Change identifier, e.g. a PR number"),
    base: str | None = typer.Option(None, "--base", help="Target branch reference (default: origin/main)"),
    revision: str | None = typer.Option(None, "--revision", help="Working revision (default: HEAD)"),
    manifest_dir: str | None = typer.Option(None, "--manifest-dir", help="Directory holding unit manifests"),
    size_gi: int | None = typer.Option(None, "--size-gi", help="Shared volume size in Gi (default: 5)"),
    rollout_timeout: int | None = typer.Option(None, "--rollout-timeout", help="Rollout timeout per unit"),
    ssh_host: str | None = typer.Option(
        None, "--ssh-host", help="Tunnel to the parent API server through this host"),
    no_lease: bool = typer.Option(False, "--no-lease", help="Do not take the per-change lease"),
) -> None:
    """Full run for CHANGE_ID: detect, provision, deploy, verify."""
    detect_cfg = build_config(DetectConfig, base_ref=base, revision=revision, manifest_dir=manifest_dir)
    deploy_cfg = build_config(
        DeployConfig,
        manifest_dir=Path(manifest_dir) if manifest_dir is not None else None,
        rollout_timeout=rollout_timeout,
    )
    provision_cfg = build_config(ProvisionConfig, size_gi=size_gi)
    lease_cfg = build_config(LeaseConfig, use_lease=False if no_lease else None)
    tunnel_cfg = build_config(TunnelConfig, ssh_host=ssh_host)

    result = run_pipeline(
        change_id,
        detect_cfg=detect_cfg,
        provision_cfg=provision_cfg,
        deploy_cfg=deploy_cfg,
        lease_cfg=lease_cfg,
        tunnel_cfg=tunnel_cfg,
    )
    typer.echo(f"KUBECONFIG={result.kubeconfig}")
    typer.echo(f"UNITS={format_units(result.applied)}")
