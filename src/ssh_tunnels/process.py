"""Process management for the ssh client binary."""

import os
import shutil
import subprocess
import sys
from typing import Any

from .config import DEFAULT_SSH_PORT, TunnelSpec
from .exceptions import BinaryNotFoundError, ProcessError
from .logging import get_logger

logger = get_logger(__name__)

# Windows CREATE_NO_WINDOW process creation flag
CREATE_NO_WINDOW = 0x08000000

SSH_OPTIONS = (
    "ConnectTimeout=10",
    "ServerAliveInterval=20",
    "ServerAliveCountMax=3",
    "StrictHostKeyChecking=no",
    f"UserKnownHostsFile={os.devnull}",
    "ExitOnForwardFailure=yes",
)


def build_ssh_command(spec: TunnelSpec, ssh_binary: str = "ssh") -> list[str]:
    """Build the ssh client argument list for a local port forward.

    Args:
        spec: Tunnel connection parameters
        ssh_binary: ssh client executable name or path

    Returns:
        Argument list, executable first
    """
    cmd = [ssh_binary]

    if spec.ssh_port != DEFAULT_SSH_PORT:
        cmd.extend(["-p", str(spec.ssh_port)])

    cmd.extend(["-L", f"{spec.local_port}:{spec.remote_host}:{spec.remote_port}"])

    if spec.ssh_key_path:
        cmd.extend(["-i", os.path.expanduser(spec.ssh_key_path)])

    for option in SSH_OPTIONS:
        cmd.extend(["-o", option])

    cmd.append("-N")
    cmd.append(f"{spec.ssh_user}@{spec.ssh_host}")
    return cmd


class SSHProcess:
    """Owns one ssh client process."""

    def __init__(self, argv: list[str], suppress_console: bool = True):
        """Initialize SSHProcess with the command to run

        Args:
            argv: Command line, executable first
            suppress_console: Start without a console window where the
                platform would otherwise open one
        """
        if not argv:
            raise ValueError("argv must not be empty")
        self.argv = list(argv)
        self.suppress_console = suppress_console
        self._process: subprocess.Popen[bytes] | None = None

    def _resolve_binary(self) -> str:
        binary = shutil.which(self.argv[0])
        if binary is None:
            raise BinaryNotFoundError(f"ssh client not found: {self.argv[0]}")
        return binary

    def _popen_kwargs(self) -> dict[str, Any]:
        kwargs: dict[str, Any] = {
            "stdin": subprocess.DEVNULL,
            "stdout": subprocess.DEVNULL,
            "stderr": subprocess.DEVNULL,
        }
        if self.suppress_console and sys.platform == "win32":
            kwargs["creationflags"] = CREATE_NO_WINDOW
        return kwargs

    def start(self) -> None:
        """Spawn the process

        Raises:
            BinaryNotFoundError: If the executable cannot be found
            ProcessError: If the process fails to start
        """
        if self.is_running():
            logger.debug("Process already running", pid=self.pid)
            return

        argv = [self._resolve_binary(), *self.argv[1:]]
        try:
            self._process = subprocess.Popen(argv, **self._popen_kwargs())
        except OSError as e:
            logger.error("Failed to start ssh process", error=str(e))
            raise ProcessError(f"Failed to start ssh process: {e}") from e
        logger.debug("ssh process started", pid=self._process.pid)

    def stop(self, grace_period: float = 2.0) -> bool:
        """Terminate gracefully, force killing after grace_period

        Returns:
            True if the process is gone
        """
        if self._process is None or not self.is_running():
            return True

        pid = self._process.pid
        try:
            self._process.terminate()
        except OSError as e:
            logger.warning("Terminate failed", pid=pid, error=str(e))

        if self.wait(grace_period):
            logger.debug("ssh process terminated gracefully", pid=pid)
            return True

        logger.warning("Process did not terminate gracefully, force killing", pid=pid)
        return self.kill()

    def kill(self) -> bool:
        """Force kill the process and reap it

        Returns:
            True if the process is gone
        """
        if self._process is None or not self.is_running():
            return True

        pid = self._process.pid
        try:
            self._process.kill()
        except OSError as e:
            logger.error("Failed to kill process", pid=pid, error=str(e))
            return False
        if not self.wait(timeout=5.0):
            logger.error("Killed process did not exit", pid=pid)
            return False
        return True

    def wait(self, timeout: float | None = None) -> bool:
        """Wait for the process to exit

        Returns:
            True if the process exited within timeout
        """
        if self._process is None:
            return True
        try:
            self._process.wait(timeout=timeout)
        except subprocess.TimeoutExpired:
            return False
        return True

    def is_running(self) -> bool:
        """Check if process is currently running"""
        if self._process is None:
            return False

        return self._process.poll() is None

    @property
    def pid(self) -> int | None:
        """Get process ID if running"""
        if self.is_running() and self._process:
            return self._process.pid
        return None

    @property
    def returncode(self) -> int | None:
        if self._process is None:
            return None
        return self._process.returncode
