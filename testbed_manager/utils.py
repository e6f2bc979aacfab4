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

"""Utility functions for running external CLIs and reporting warnings."""

from __future__ import annotations

import os
import subprocess
import tempfile
from dataclasses import dataclass
from pathlib import Path

import sh
import yaml

from testbed_manager import console, logger
from testbed_manager.constants import KUBECTL_TIMEOUT, VCLUSTER_TIMEOUT

EXIT_TIMED_OUT = 124
EXIT_NOT_FOUND = 127


@dataclass(frozen=True)
class CommandResult:
    """Outcome of one external command.

    Attributes:
        returncode: Process exit status (124 on timeout, 127 if not runnable).
        stdout: Captured standard output.
        stderr: Captured standard error.
    """

    returncode: int
    stdout: str
    stderr: str

    @property
    def ok(self) -> bool:
        return self.returncode == 0

    @property
    def detail(self) -> str:
        """Short error text suitable for a one-line message."""
        text = (self.stderr or self.stdout).strip()
        return text[:200]


def require_command(cmd: str) -> None:
    """Check if a command exists on the system PATH.

    Args:
        cmd: Name of the CLI command to check.

    Raises:
        RuntimeError: If the command is not found.
    """
    try:
        sh.which(cmd)
    except sh.ErrorReturnCode as err:
        raise RuntimeError(f"Required command '{cmd}' not found. Please install it first.") from err


def _text(data: bytes | str | None) -> str:
    if isinstance(data, bytes):
        return data.decode(errors="replace")
    return data or ""


def run_command(
    args: list[str],
    timeout: float = KUBECTL_TIMEOUT,
    cwd: Path | None = None,
    env: dict[str, str] | None = None,
) -> CommandResult:
    """Run an external CLI through sh and capture its output.

    Never raises for command failures; callers decide whether a non-zero
    exit is fatal or only worth a warning.

    Args:
        args: Full command line, program first.
        timeout: Maximum seconds to wait for the command to complete.
        cwd: Optional working directory.
        env: Extra environment variables layered over the current ones.

    Returns:
        The command's CommandResult.
    """
    logger.debug("Running: %s", " ".join(args))
    program, *rest = args
    try:
        command = getattr(sh, program)
        proc = command(
            *rest,
            _timeout=timeout,
            _cwd=str(cwd) if cwd is not None else None,
            _env={**os.environ, **env} if env else None,
            _tty_out=False,
        )
    except sh.ErrorReturnCode as err:
        return CommandResult(err.exit_code, _text(err.stdout), _text(err.stderr))
    except sh.TimeoutException:
        return CommandResult(EXIT_TIMED_OUT, "", f"timed out after {timeout}s")
    except sh.CommandNotFound as err:
        return CommandResult(EXIT_NOT_FOUND, "", f"command not found: {err}")
    return CommandResult(0, _text(proc.stdout), _text(proc.stderr))


def run_kubectl(
    args: list[str],
    kubeconfig: Path | None = None,
    timeout: float = KUBECTL_TIMEOUT,
    input_text: str | None = None,
) -> tuple[bool, str, str]:
    """Run kubectl, optionally against a specific kubeconfig.

    Args:
        args: kubectl arguments (e.g. ``["get", "pods", "-n", "default"]``).
        kubeconfig: kubeconfig to pass via ``--kubeconfig``, or None for the
            ambient one.
        timeout: Maximum seconds to wait for the command to complete.
        input_text: Optional text fed to stdin.

    Returns:
        Tuple of (success, stdout, stderr).
    """
    cmd = ["kubectl"]
    if kubeconfig is not None:
        cmd += ["--kubeconfig", str(kubeconfig)]
    cmd += args
    logger.debug("Running: %s", " ".join(cmd))
    try:
        result = subprocess.run(cmd, capture_output=True, text=True, timeout=timeout, input=input_text)
        return result.returncode == 0, result.stdout or "", result.stderr or ""
    except subprocess.TimeoutExpired:
        return False, "", f"kubectl timed out after {timeout}s"
    except (subprocess.SubprocessError, OSError) as exc:
        return False, "", str(exc)


def run_vcluster(
    args: list[str],
    kubeconfig: Path | None = None,
    timeout: float = VCLUSTER_TIMEOUT,
    cwd: Path | None = None,
) -> CommandResult:
    """Run the vcluster CLI against the parent cluster.

    Args:
        args: vcluster arguments (e.g. ``["create", "vcluster-7", "-n", "dev-7"]``).
        kubeconfig: Parent kubeconfig exported as ``KUBECONFIG``, or None.
        timeout: Maximum seconds to wait for the command to complete.
        cwd: Optional working directory.

    Returns:
        The command's CommandResult.
    """
    env = {"KUBECONFIG": str(kubeconfig)} if kubeconfig is not None else None
    return run_command(["vcluster", *args], timeout=timeout, cwd=cwd, env=env)


def apply_manifests(docs: list[dict], kubeconfig: Path | None = None) -> tuple[bool, str]:
    """Apply manifest dictionaries with a single ``kubectl apply``.

    Args:
        docs: Kubernetes resources as dictionaries.
        kubeconfig: Target kubeconfig, or None for the ambient one.

    Returns:
        Tuple of (success, stderr).
    """
    combined_yaml = "---\n".join(yaml.dump(doc, default_flow_style=False) for doc in docs)

    tmp = tempfile.NamedTemporaryFile(delete=False, suffix=".yaml")
    try:
        tmp.write(combined_yaml.encode())
        tmp.flush()
        tmp.close()
        ok, _, stderr = run_kubectl(["apply", "-f", tmp.name], kubeconfig=kubeconfig)
        return ok, stderr
    finally:
        Path(tmp.name).unlink(missing_ok=True)


def warn(message: str) -> None:
    """Report a degraded step. Warnings never change the exit code."""
    logger.warning(message)
    console.print(f"[yellow]\u26a0\ufe0f  {message}[/yellow]")
