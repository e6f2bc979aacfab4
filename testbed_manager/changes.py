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

"""Change detection: which deployable units did this revision touch?"""

from __future__ import annotations

from collections.abc import Iterable
from pathlib import PurePosixPath

from testbed_manager import console, logger
from testbed_manager.config import DetectConfig
from testbed_manager.constants import GIT_TIMEOUT
from testbed_manager.errors import FatalError
from testbed_manager.utils import run_command


def affected_units(paths: Iterable[str], manifest_dir: str, extensions: Iterable[str]) -> set[str]:
    """Map changed file paths to the set of affected unit names.

    Only files under *manifest_dir* with a recognized suffix contribute.
    A file directly in *manifest_dir* is a unit named after its stem; a
    file further down belongs to the directory unit named by its first
    path component below *manifest_dir*.

    Args:
        paths: Repository-relative changed paths.
        manifest_dir: Repository-relative manifest directory.
        extensions: Recognized suffixes, with the leading dot.

    Returns:
        Distinct unit names (possibly empty).
    """
    root = PurePosixPath(manifest_dir.strip("/"))
    suffixes = {ext.lower() for ext in extensions}
    units: set[str] = set()
    for raw in paths:
        path = PurePosixPath(raw.strip())
        if not raw.strip() or root not in path.parents:
            continue
        if path.suffix.lower() not in suffixes or not path.stem:
            continue
        parts = path.relative_to(root).parts
        units.add(path.stem if len(parts) == 1 else parts[0])
    return units


def resolve_diff_base(base_ref: str, revision: str) -> str:
    """Return the merge base of *base_ref* and *revision*.

    Shallow clones may lack a common ancestor; then *base_ref* itself is
    used as the diff base.
    """
    result = run_command(["git", "merge-base", base_ref, revision], timeout=GIT_TIMEOUT)
    merge_base = result.stdout.strip()
    if result.ok and merge_base:
        return merge_base
    logger.info("No merge base for %s and %s; diffing against %s", base_ref, revision, base_ref)
    return base_ref


def changed_paths(base: str, revision: str) -> list[str]:
    """List paths changed between *base* and *revision*.

    Raises:
        FatalError: If git cannot produce the diff.
    """
    result = run_command(["git", "diff", "--name-only", base, revision], timeout=GIT_TIMEOUT)
    if not result.ok:
        raise FatalError(f"git diff {base} {revision} failed: {result.detail}")
    return [line for line in result.stdout.splitlines() if line.strip()]


def detect_changes(cfg: DetectConfig | None = None) -> set[str]:
    """Compute the affected-unit set for the configured refs.

    Args:
        cfg: Detection configuration, or None for env/defaults.

    Returns:
        Affected unit names; empty means nothing to deploy.
    """
    cfg = cfg or DetectConfig()
    base = resolve_diff_base(cfg.base_ref, cfg.revision)
    units = affected_units(changed_paths(base, cfg.revision), cfg.manifest_dir, cfg.extensions)
    if units:
        console.print(f"[green]\u2705 Affected units: {format_units(units)}[/green]")
    else:
        console.print("[yellow]\u2139\ufe0f  No testbed manifests changed; nothing to deploy[/yellow]")
    return units


def format_units(units: Iterable[str]) -> str:
    """Render units as the sorted comma-separated list used between CI steps."""
    return ",".join(sorted(set(units)))


def parse_units(text: str) -> list[str]:
    """Parse a comma-separated unit list, dropping blanks and duplicates."""
    seen: dict[str, None] = {}
    for item in text.split(","):
        item = item.strip()
        if item:
            seen.setdefault(item)
    return list(seen)
