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

"""Fatal error type carrying the process exit code."""

from __future__ import annotations

from testbed_manager.constants import EXIT_UNEXPECTED


class FatalError(RuntimeError):
    """A condition that aborts the run with a non-zero exit code.

    Anything that is not a FatalError is either a warning (logged, run
    continues) or a bug (exit 1).
    """

    def __init__(self, message: str, exit_code: int = EXIT_UNEXPECTED) -> None:
        super().__init__(message)
        self.exit_code = exit_code if exit_code else EXIT_UNEXPECTED
