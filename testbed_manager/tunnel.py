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

"""SSH port-forward to the parent API server, owned by the run that needs it."""

from __future__ import annotations

import time
from collections.abc import Iterator
from contextlib import contextmanager

import sh

from testbed_manager import console, logger
from testbed_manager.config import TunnelConfig
from testbed_manager.constants import EXIT_TUNNEL_FAILED
from testbed_manager.errors import FatalError
from testbed_manager.utils import require_command

STOP_TIMEOUT_SECONDS = 5


class SshTunnel:
    """A background ``ssh -N -L`` process with an explicit lifetime."""

    def __init__(self, cfg: TunnelConfig) -> None:
        self._cfg = cfg
        self._proc = None

    @property
    def target(self) -> str:
        if self._cfg.ssh_user:
            return f"{self._cfg.ssh_user}@{self._cfg.ssh_host}"
        return str(self._cfg.ssh_host)

    def ssh_args(self) -> list[str]:
        cfg = self._cfg
        return [
            "-N",
            "-o", "ExitOnForwardFailure=yes",
            "-o", "BatchMode=yes",
            "-o", "ServerAliveInterval=30",
            "-p", str(cfg.ssh_port),
            "-L", f"{cfg.local_port}:{cfg.remote_host}:{cfg.remote_port}",
            self.target,
        ]

    def alive(self) -> bool:
        if self._proc is None:
            return False
        is_alive, _ = self._proc.process.is_alive()
        return is_alive

    def start(self) -> None:
        """Start ssh and confirm it survives the startup grace period.

        Raises:
            FatalError: If ssh exits during startup.
        """
        require_command("ssh")
        console.print(
            f"[cyan]>> Opening tunnel localhost:{self._cfg.local_port} -> "
            f"{self._cfg.remote_host}:{self._cfg.remote_port} via {self.target}[/cyan]"
        )
        self._proc = sh.ssh(*self.ssh_args(), _bg=True, _bg_exc=False)
        if self._cfg.startup_grace:
            time.sleep(self._cfg.startup_grace)
        if not self.alive():
            self._proc = None
            raise FatalError(f"SSH tunnel via {self.target} exited during startup", exit_code=EXIT_TUNNEL_FAILED)
        console.print("[green]\u2705 Tunnel established[/green]")

    def stop(self) -> None:
        """Terminate ssh if it is still running."""
        if self._proc is None:
            return
        proc, self._proc = self._proc, None
        is_alive, exit_code = proc.process.is_alive()
        if not is_alive:
            logger.warning("SSH tunnel had already exited with code %s", exit_code)
            return
        proc.terminate()
        try:
            proc.wait(timeout=STOP_TIMEOUT_SECONDS)
        except sh.TimeoutException:
            proc.kill()
        except sh.ErrorReturnCode:
            # ssh reports the SIGTERM as a non-zero exit
            pass
        logger.info("SSH tunnel via %s closed", self.target)


@contextmanager
def ssh_tunnel(cfg: TunnelConfig | None = None) -> Iterator[SshTunnel | None]:
    """Keep a tunnel open for the duration of the block.

    Yields None when no SSH host is configured.
    """
    cfg = cfg or TunnelConfig()
    if not cfg.ssh_host:
        yield None
        return
    tunnel = SshTunnel(cfg)
    tunnel.start()
    try:
        yield tunnel
    finally:
        tunnel.stop()
