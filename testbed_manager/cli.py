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

"""
cli.py - CLI for per-change vcluster testbeds.

Subcommands:
    detect   Detect changed units (units)
    create   Create or upgrade a testbed (vcluster)
    delete   Tear down a testbed (vcluster)
    deploy   Apply units and verify their rollouts (apply, verify)
    setup    Composite workflows (change)

Examples:
    # Which units did this branch change?
    testbed-manager detect units --base origin/main

    # Create (or upgrade) the testbed for PR 42 with a 10Gi shared volume
    testbed-manager create vcluster 42 --size-gi 10

    # Deploy and verify two units into it
    testbed-manager deploy apply 42 feature-a,feature-b
    testbed-manager deploy verify 42 feature-a,feature-b

    # Everything at once
    testbed-manager setup change 42

    # Tear down
    testbed-manager delete vcluster 42

Exit codes: 0 success, non-zero on any fatal condition (see constants).
"""

from __future__ import annotations

import logging
import os
import sys

import typer

from testbed_manager import console
from testbed_manager.commands import (
    create_cmd,
    delete_cmd,
    deploy_cmd,
    detect_cmd,
    setup_cmd,
)
from testbed_manager.constants import EXIT_UNEXPECTED
from testbed_manager.errors import FatalError

app = typer.Typer(
    help="Per-change vcluster testbeds for CI.",
    no_args_is_help=True,
)


@app.callback()
def _main_callback(
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Log every external command"),
) -> None:
    """Initialize logging for all subcommands."""
    level = logging.DEBUG if verbose else os.environ.get("TESTBED_LOG_LEVEL", "INFO").upper()
    logging.basicConfig(
        level=level,
        format="%(asctime)s [%(levelname)s] %(message)s",
        datefmt="%H:%M:%S",
    )


app.add_typer(detect_cmd.app, name="detect")
app.add_typer(create_cmd.app, name="create")
app.add_typer(delete_cmd.app, name="delete")
app.add_typer(deploy_cmd.app, name="deploy")
app.add_typer(setup_cmd.app, name="setup")


def main() -> None:
    """Console entry point mapping fatal conditions to exit codes."""
    try:
        app()
    except FatalError as e:
        console.print(f"[red]\u274c {e}[/red]")
        sys.exit(e.exit_code)
    except Exception as e:
        console.print(f"[red]\u274c {e}[/red]")
        sys.exit(EXIT_UNEXPECTED)


if __name__ == "__main__":
    main()
