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

"""Deploy subcommands (apply, verify)."""

from __future__ import annotations

from pathlib import Path

import typer

from testbed_manager.changes import parse_units
from testbed_manager.commands import build_config, change_id_callback
from testbed_manager.config import DeployConfig, TestbedNames
from testbed_manager.deploy import apply_units, verify_units

app = typer.Typer(help="Deploy units into a testbed and verify them.")


def _resolve_kubeconfig(change_id: str, kubeconfig: Path | None) -> Path:
    if kubeconfig is not None:
        return kubeconfig
    return TestbedNames.for_change(change_id).kubeconfig


@app.command()
def apply(
    change_id: str = typer.Argument(..., callback=change_id_callback, help="Change identifier"),
    units: str = typer.Argument("", help="Comma-separated unit names"),
    kubeconfig: Path | None = typer.Option(None, "--kubeconfig", help="vcluster kubeconfig (default: derived)"),
    manifest_dir: Path | None = typer.Option(None, "--manifest-dir", help="Directory holding unit manifests"),
) -> None:
    """Apply each unit's manifest; units without one are skipped."""
    deploy_cfg = build_config(DeployConfig, manifest_dir=manifest_dir)
    apply_units(parse_units(units), _resolve_kubeconfig(change_id, kubeconfig), deploy_cfg)


@app.command()
def verify(
    change_id: str = typer.Argument(..., callback=change_id_callback, help="Change identifier"),
    units: str = typer.Argument("", help="Comma-separated unit names"),
    kubeconfig: Path | None = typer.Option(None, "--kubeconfig", help="vcluster kubeconfig (default: derived)"),
    timeout: int | None = typer.Option(None, "--timeout", help="Rollout timeout per unit in seconds (default: 120)"),
) -> None:
    """Wait for each unit's Deployment rollout; fail on the first timeout."""
    deploy_cfg = build_config(DeployConfig, rollout_timeout=timeout)
    verify_units(parse_units(units), _resolve_kubeconfig(change_id, kubeconfig), deploy_cfg)
