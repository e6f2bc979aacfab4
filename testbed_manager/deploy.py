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

"""Apply changed units into a testbed and wait for their rollouts."""

from __future__ import annotations

from collections.abc import Iterable
from pathlib import Path

from rich.panel import Panel

from testbed_manager import console
from testbed_manager.config import DeployConfig
from testbed_manager.constants import (
    DEFAULT_MANIFEST_EXTENSIONS,
    EXIT_APPLY_FAILED,
    EXIT_ROLLOUT_TIMEOUT,
)
from testbed_manager.errors import FatalError
from testbed_manager.utils import run_kubectl, warn


def manifest_for(unit: str, manifest_dir: Path) -> Path | None:
    """Find the manifest for *unit* by exact name.

    Looks for ``<unit>.yaml``, ``<unit>.yml`` and then a ``<unit>/`` directory.
    """
    for ext in DEFAULT_MANIFEST_EXTENSIONS:
        candidate = manifest_dir / f"{unit}{ext}"
        if candidate.is_file():
            return candidate
    candidate = manifest_dir / unit
    if candidate.is_dir():
        return candidate
    return None


def apply_units(units: Iterable[str], kubeconfig: Path, cfg: DeployConfig | None = None) -> list[str]:
    """Apply each unit's manifest into the testbed.

    Units without a manifest are skipped with a warning.

    Args:
        units: Unit names to deploy.
        kubeconfig: vcluster kubeconfig.
        cfg: Deploy configuration, or None for env/defaults.

    Returns:
        Units whose manifests were applied, in order.

    Raises:
        FatalError: If kubectl rejects a manifest.
    """
    cfg = cfg or DeployConfig()
    units = list(units)
    if not units:
        console.print("[yellow]\u2139\ufe0f  No units to deploy[/yellow]")
        return []

    console.print(Panel.fit(f"Deploying {len(units)} unit(s)", style="bold blue"))
    applied: list[str] = []
    for unit in units:
        manifest = manifest_for(unit, Path(cfg.manifest_dir))
        if manifest is None:
            warn(f"{Path(cfg.manifest_dir) / unit}.yaml not found; skipping")
            continue
        console.print(f"[cyan]\u25b6 Applying {manifest}[/cyan]")
        args = ["apply", "-f", str(manifest)]
        if manifest.is_dir():
            args.append("--recursive")
        ok, _, stderr = run_kubectl(args, kubeconfig=kubeconfig, timeout=120)
        if not ok:
            raise FatalError(f"Failed to apply {manifest}: {stderr.strip()[:200]}", exit_code=EXIT_APPLY_FAILED)
        applied.append(unit)
    return applied


def verify_units(units: Iterable[str], kubeconfig: Path, cfg: DeployConfig | None = None) -> None:
    """Wait for each unit's Deployment rollout; stop at the first failure.

    Args:
        units: Unit names whose Deployments to check.
        kubeconfig: vcluster kubeconfig.
        cfg: Deploy configuration, or None for env/defaults.

    Raises:
        FatalError: If any rollout does not complete within the timeout.
    """
    cfg = cfg or DeployConfig()
    units = list(units)
    if not units:
        console.print("[yellow]\u2139\ufe0f  No units to verify[/yellow]")
        return

    console.print(Panel.fit(f"Verifying {len(units)} rollout(s)", style="bold blue"))
    for unit in units:
        console.print(f"[yellow]\U0001f9ea Waiting for Deployment/{unit} to become ready...[/yellow]")
        ok, _, stderr = run_kubectl(
            ["rollout", "status", f"deploy/{unit}", f"--timeout={cfg.rollout_timeout}s"],
            kubeconfig=kubeconfig,
            timeout=cfg.rollout_timeout + 10,
        )
        if not ok:
            raise FatalError(
                f"Deployment/{unit} not ready within {cfg.rollout_timeout}s: {stderr.strip()[:200]}",
                exit_code=EXIT_ROLLOUT_TIMEOUT,
            )
        console.print(f"[green]\u2705 {unit} ready[/green]")
