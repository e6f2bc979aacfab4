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

"""Delete subcommands (vcluster)."""

from __future__ import annotations

import typer

from testbed_manager.commands import change_id_callback
from testbed_manager.teardown import teardown

app = typer.Typer(help="Delete testbed resources.")


@app.command()
def vcluster(
    change_id: str = typer.Argument(..., callback=change_id_callback, help="Change identifier, e.g. a PR number"),
) -> None:
    """Delete the vcluster, namespace and kubeconfig for CHANGE_ID."""
    teardown(change_id)
