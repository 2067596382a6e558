"""Supervised ssh local port forward with health probing and bounded restarts."""

import socket
import threading
import time
from collections.abc import Callable
from datetime import datetime
from enum import Enum

from .config import SupervisionSettings, TunnelSpec
from .exceptions import ProcessError, RetryLimitExceededError, SSHTunnelsError
from .logging import get_logger
from .process import SSHProcess, build_ssh_command

logger = get_logger(__name__)

PROBE_HOST = "127.0.0.1"

ProcessFactory = Callable[..., SSHProcess]


class TunnelStatus(str, Enum):
    """Tunnel status enumeration."""

    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    ERROR = "error"


class Tunnel:
    """One ssh client process forwarding a local port, and its state machine.

    The tunnel never probes itself: ``check_connection`` is driven by the
    supervisor. A failed probe on a live tunnel spends one unit of the retry
    budget and schedules a delayed restart; once the budget is spent the
    tunnel stays in ``ERROR`` until ``start`` is called again or the
    configuration is reloaded.

    All mutable state is guarded by a single per-tunnel lock.
    """

    def __init__(
        self,
        spec: TunnelSpec,
        settings: SupervisionSettings | None = None,
        process_factory: ProcessFactory = SSHProcess,
    ):
        self._spec = spec
        self._settings = settings or SupervisionSettings()
        self._process_factory = process_factory
        self._lock = threading.Lock()

        self._status = TunnelStatus.DISCONNECTED
        self._retry_count = 0
        self._max_retries = self._settings.max_retries
        self._last_error = ""
        self._last_check: datetime | None = None
        self._last_success: datetime | None = None

        self._process: SSHProcess | None = None
        self._scope = threading.Event()
        self._restart_timer: threading.Timer | None = None

    def __repr__(self) -> str:
        return f"Tunnel(name={self._spec.name!r}, status={self._status.value})"

    @property
    def name(self) -> str:
        return self._spec.name

    @property
    def spec(self) -> TunnelSpec:
        with self._lock:
            return self._spec

    @property
    def max_retries(self) -> int:
        return self._max_retries

    @property
    def retry_count(self) -> int:
        with self._lock:
            return self._retry_count

    @property
    def last_success(self) -> datetime | None:
        with self._lock:
            return self._last_success

    @property
    def pid(self) -> int | None:
        with self._lock:
            return self._process.pid if self._process else None

    def get_status(self) -> TunnelStatus:
        with self._lock:
            return self._status

    def get_last_error(self) -> str:
        with self._lock:
            return self._last_error

    def get_last_check(self) -> datetime | None:
        with self._lock:
            return self._last_check

    def get_connection_string(self) -> str:
        with self._lock:
            return self._spec.connection_string

    def is_healthy(self) -> bool:
        with self._lock:
            return self._status == TunnelStatus.CONNECTED

    def start(self) -> bool:
        """Spawn the ssh client.

        The tunnel stays ``CONNECTING`` until a probe confirms the forward.

        Returns:
            True if the process was spawned or the tunnel was already live

        Raises:
            ProcessError: If the process could not be spawned
        """
        with self._lock:
            if self._status in (TunnelStatus.CONNECTING, TunnelStatus.CONNECTED):
                return True

            # an explicit start renews the retry budget
            self._retry_count = 0
            return self._spawn()

    def stop(self) -> bool:
        """Terminate the ssh client and mark the tunnel disconnected.

        Blocks for up to the grace period plus the drain period so the local
        port is released before the tunnel reports ``DISCONNECTED``.
        """
        with self._lock:
            self._scope.set()
            self._cancel_restart_timer()

            if self._status == TunnelStatus.DISCONNECTED:
                return True

            if self._process is not None:
                if not self._process.stop(self._settings.stop_grace_period):
                    logger.error(
                        "ssh process did not exit", tunnel=self.name, pid=self._process.pid
                    )
                time.sleep(self._settings.stop_drain_period)
                self._process = None

            self._status = TunnelStatus.DISCONNECTED
            self._last_error = ""
            logger.info("Tunnel stopped", tunnel=self.name)
            return True

    def restart(self, scope: threading.Event | None = None) -> bool:
        """Kill the current process and start a fresh one.

        Args:
            scope: Scope the restart was scheduled under; once it is
                cancelled the restart is dropped. A stop during the settle
                delay also drops the restart.

        Returns:
            True if a new process was spawned

        Raises:
            RetryLimitExceededError: If the retry budget is exhausted
            ProcessError: If the new process could not be spawned
        """
        with self._lock:
            if scope is not None and scope.is_set():
                logger.debug("Restart skipped, tunnel stopped", tunnel=self.name)
                return False

            if self._retry_count >= self._max_retries:
                logger.warning(
                    "Restart refused, retry limit reached",
                    tunnel=self.name,
                    max_retries=self._max_retries,
                )
                raise RetryLimitExceededError(self.name, self._max_retries)

            self._scope.set()
            self._discard_process()
            settling = self._scope = threading.Event()

            # probes are ignored while the tunnel is between processes
            if self._status in (TunnelStatus.CONNECTING, TunnelStatus.CONNECTED):
                self._status = TunnelStatus.DISCONNECTED

        time.sleep(self._settings.restart_settle)

        with self._lock:
            if settling.is_set():
                logger.debug("Restart abandoned, tunnel stopped", tunnel=self.name)
                return False
            logger.info("Restarting tunnel", tunnel=self.name, retry=self._retry_count)
            return self._spawn()

    def check_connection(self) -> None:
        """Probe the forwarded local port and update the state machine."""
        with self._lock:
            self._last_check = datetime.now()

            if (
                self._status == TunnelStatus.ERROR
                and self._retry_count >= self._max_retries
            ):
                return

            try:
                self._probe()
            except OSError as e:
                self._on_probe_failure(e)
                return

            if self._status in (TunnelStatus.CONNECTING, TunnelStatus.ERROR):
                recovered = self._status == TunnelStatus.ERROR
                self._status = TunnelStatus.CONNECTED
                self._last_error = ""
                self._retry_count = 0
                self._last_success = datetime.now()
                logger.info(
                    "Tunnel recovered" if recovered else "Tunnel connected",
                    tunnel=self.name,
                )

    def update_config(self, spec: TunnelSpec) -> None:
        """Swap in a new TunnelSpec, restarting a connected tunnel to apply it."""
        with self._lock:
            if spec == self._spec:
                return

            self._spec = spec
            logger.info("Tunnel configuration updated", tunnel=self.name)
            if self._status == TunnelStatus.CONNECTED:
                self._schedule_restart(0.0, self._scope)

    def set_error_status(self, message: str) -> None:
        """Force ``ERROR`` with an exhausted retry budget.

        Used when the configuration is known to be unusable, so the health
        loop does not try to resurrect the tunnel.
        """
        with self._lock:
            self._status = TunnelStatus.ERROR
            self._last_error = message
            self._retry_count = self._max_retries
            logger.error("Tunnel marked as failed", tunnel=self.name, error=message)

    def wait_for_pending_restart(self, timeout: float | None = None) -> None:
        """Block until a scheduled restart, if any, has run."""
        with self._lock:
            timer = self._restart_timer
        if timer is not None:
            timer.join(timeout)

    def _spawn(self) -> bool:
        self._status = TunnelStatus.CONNECTING
        self._last_error = ""
        self._discard_process()

        # every process gets its own scope
        self._scope.set()
        scope = self._scope = threading.Event()

        argv = build_ssh_command(self._spec, self._settings.ssh_binary)
        process = self._process_factory(
            argv, suppress_console=self._settings.suppress_console
        )
        try:
            process.start()
        except ProcessError as e:
            self._status = TunnelStatus.ERROR
            self._last_error = f"Failed to start ssh process: {e}"
            logger.error("Tunnel failed to start", tunnel=self.name, error=str(e))
            raise

        self._process = process
        watcher = threading.Thread(
            target=self._watch_process,
            args=(process, scope),
            name=f"tunnel-watch-{self.name}",
            daemon=True,
        )
        watcher.start()

        logger.info(
            "ssh process started",
            tunnel=self.name,
            pid=process.pid,
            connection=self._spec.connection_string,
        )
        return True

    def _probe(self) -> None:
        with socket.create_connection(
            (PROBE_HOST, self._spec.local_port), timeout=self._settings.probe_timeout
        ):
            pass

    def _on_probe_failure(self, error: OSError) -> None:
        if self._status not in (TunnelStatus.CONNECTED, TunnelStatus.CONNECTING):
            return

        self._retry_count += 1
        self._status = TunnelStatus.ERROR

        if self._retry_count >= self._max_retries:
            self._last_error = (
                f"Retry limit ({self._max_retries}) exceeded: "
                f"local port {self._spec.local_port} unreachable: {error}"
            )
            logger.error(
                "Tunnel giving up after repeated failures",
                tunnel=self.name,
                max_retries=self._max_retries,
                error=str(error),
            )
            return

        self._last_error = (
            f"Local port {self._spec.local_port} unreachable: {error} "
            f"(retry {self._retry_count}/{self._max_retries})"
        )
        logger.warning(
            "Tunnel probe failed, scheduling restart",
            tunnel=self.name,
            retry=self._retry_count,
            max_retries=self._max_retries,
            error=str(error),
        )
        self._schedule_restart(self._settings.restart_backoff, self._scope)

    def _schedule_restart(self, delay: float, scope: threading.Event) -> None:
        self._cancel_restart_timer()
        timer = threading.Timer(delay, self._run_scheduled_restart, args=(scope,))
        timer.name = f"tunnel-restart-{self.name}"
        timer.daemon = True
        self._restart_timer = timer
        timer.start()

    def _run_scheduled_restart(self, scope: threading.Event) -> None:
        try:
            self.restart(scope)
        except SSHTunnelsError as e:
            logger.error("Automatic restart failed", tunnel=self.name, error=str(e))

    def _cancel_restart_timer(self) -> None:
        if self._restart_timer is not None:
            self._restart_timer.cancel()

    def _discard_process(self) -> None:
        if self._process is not None:
            self._process.kill()
            self._process = None

    def _watch_process(self, process: SSHProcess, scope: threading.Event) -> None:
        while not scope.wait(self._settings.watch_interval):
            if not process.is_running():
                logger.warning(
                    "ssh process exited",
                    tunnel=self.name,
                    returncode=process.returncode,
                )
                return

        # Scope cancelled: the owner terminates the process, this only
        # guarantees it does not outlive the grace and drain periods.
        deadline = self._settings.stop_grace_period + self._settings.stop_drain_period
        if not process.wait(deadline):
            logger.warning("Killing abandoned ssh process", tunnel=self.name)
            process.kill()
