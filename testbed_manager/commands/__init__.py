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

"""Typer sub-applications, one module per verb."""

from __future__ import annotations

from typing import TypeVar

import typer
from pydantic import ValidationError
from pydantic_settings import BaseSettings

from testbed_manager.config import validate_change_id

SettingsT = TypeVar("SettingsT", bound=BaseSettings)


def change_id_callback(value: str) -> str:
    """Reject change identifiers that cannot be embedded in resource names."""
    try:
        return validate_change_id(value)
    except ValueError as err:
        raise typer.BadParameter(str(err)) from err


def build_config(cls: type[SettingsT], **overrides) -> SettingsT:
    """Load *cls* from env/defaults with the given CLI overrides applied.

    Options the user did not pass arrive as None and are left to the
    environment. Overrides are validated like any other setting.

    Raises:
        typer.BadParameter: If an override violates the setting's bounds.
    """
    given = {key: value for key, value in overrides.items() if value is not None}
    try:
        return cls(**given)
    except ValidationError as err:
        problems = "; ".join(
            f"{'.'.join(str(part) for part in e['loc'])}: {e['msg']}" for e in err.errors()
        )
        raise typer.BadParameter(problems) from err
