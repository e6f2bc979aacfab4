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

"""Detect subcommands (units)."""

from __future__ import annotations

import typer

from testbed_manager.changes import detect_changes, format_units
from testbed_manager.commands import build_config
from testbed_manager.config import DetectConfig

app = typer.Typer(help="Detect what a change touched.")


@app.command()
def units(
    base: str | None = typer.Option(None, "--base", help="Target branch reference (default: origin/main)"),
    revision: str | None = typer.Option(None, "--revision", help="Working revision (default: HEAD)"),
    manifest_dir: str | None = typer.Option(None, "--manifest-dir", help="Directory holding unit manifests"),
) -> None:
    """Print the comma-separated set of units whose manifests changed."""
    detect_cfg = build_config(DetectConfig, base_ref=base, revision=revision, manifest_dir=manifest_dir)
    typer.echo(format_units(detect_changes(detect_cfg)))
