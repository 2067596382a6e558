"""Fleet supervision: registry, configuration reloads and health monitoring."""

import threading
from collections.abc import Callable, Iterable
from concurrent.futures import ThreadPoolExecutor
from datetime import datetime
from pathlib import Path
from types import TracebackType
from typing import Literal

from pydantic import BaseModel, ConfigDict, ValidationError

from .config import (
    DEFAULT_CHECK_INTERVAL,
    SupervisionSettings,
    TunnelsConfig,
    TunnelSpec,
    load_config,
)
from .exceptions import ConfigurationError, SSHTunnelsError
from .logging import get_logger
from .tunnel import Tunnel, TunnelStatus
from .utils import sanitize_log_data

logger = get_logger(__name__)

MAX_WORKERS = 16

ConfigLoader = Callable[[Path], TunnelsConfig]
TunnelFactory = Callable[..., Tunnel]


class TunnelStatusSnapshot(BaseModel):
    """Read-only view of one tunnel for presentation."""

    model_config = ConfigDict(frozen=True)

    name: str
    status: TunnelStatus
    spec: TunnelSpec
    last_error: str
    last_check: datetime | None
    connection: str


def _run_concurrently(
    action: str, tunnels: Iterable[Tunnel], fn: Callable[[Tunnel], object]
) -> bool:
    """Run fn once per tunnel on a thread pool and wait for all of them.

    Returns:
        True if no call raised
    """
    tunnels = list(tunnels)
    if not tunnels:
        return True

    success = True
    with ThreadPoolExecutor(
        max_workers=min(len(tunnels), MAX_WORKERS), thread_name_prefix=action
    ) as executor:
        futures = {executor.submit(fn, tunnel): tunnel for tunnel in tunnels}
        for future, tunnel in futures.items():
            try:
                future.result()
            except Exception as e:
                logger.error(f"Failed to {action} tunnel", tunnel=tunnel.name, error=str(e))
                success = False
    return success


class Supervisor:
    """Owns the tunnel registry and drives periodic health checks.

    The registry maps tunnel names to tunnels and keeps the configuration
    file order separately. A reload swaps both, together with the
    configuration snapshot, under the registry lock, so readers never see
    tunnels from two configuration generations.
    """

    def __init__(
        self,
        config_path: str | Path,
        settings: SupervisionSettings | None = None,
        loader: ConfigLoader = load_config,
        tunnel_factory: TunnelFactory = Tunnel,
    ):
        self._config_path = Path(config_path)
        self._settings = settings or SupervisionSettings()
        self._loader = loader
        self._tunnel_factory = tunnel_factory

        self._lock = threading.Lock()
        self._reload_lock = threading.Lock()
        self._tunnels: dict[str, Tunnel] = {}
        self._order: list[str] = []
        self._config: TunnelsConfig | None = None

        self._monitor_stop = threading.Event()
        self._monitor_thread: threading.Thread | None = None
        self._sweep_timer: threading.Timer | None = None
        self._starters: list[threading.Thread] = []

        logger.info("Supervisor initialized", config_path=str(self._config_path))

    @property
    def config_path(self) -> Path:
        return self._config_path

    def get_config(self) -> TunnelsConfig | None:
        with self._lock:
            return self._config

    def get_tunnel(self, name: str) -> Tunnel | None:
        with self._lock:
            return self._tunnels.get(name)

    def tunnels(self) -> list[Tunnel]:
        """Registered tunnels in configuration order."""
        with self._lock:
            return [self._tunnels[name] for name in self._order]

    def load_config(self) -> int:
        """Load the configuration and replace every registered tunnel.

        Invalid tunnel entries are logged and skipped.

        Returns:
            Number of tunnels registered

        Raises:
            ConfigurationError: If the configuration file cannot be loaded
        """
        config = self._loader(self._config_path)

        with self._reload_lock:
            tunnels, order, broken = self._build_generation(config)

            with self._lock:
                previous = [self._tunnels[name] for name in self._order]
                self._tunnels = tunnels
                self._order = order
                self._config = config

            # old forwards must release their local ports first
            self._stop_tunnels(previous)

            starters = []
            for name in order:
                tunnel = tunnels[name]
                if name in broken:
                    tunnel.set_error_status(broken[name])
                    continue
                starter = threading.Thread(
                    target=self._start_tunnel,
                    args=(tunnel,),
                    name=f"tunnel-start-{name}",
                    daemon=True,
                )
                starter.start()
                starters.append(starter)
            self._starters = starters

            self._schedule_sweep()

        logger.info(
            "Configuration loaded",
            tunnels=len(order),
            skipped=len(config.enabled_entries()) - len(order),
            check_interval=config.check_interval,
        )
        return len(order)

    def _build_generation(
        self, config: TunnelsConfig
    ) -> tuple[dict[str, Tunnel], list[str], dict[str, str]]:
        tunnels: dict[str, Tunnel] = {}
        order: list[str] = []
        broken: dict[str, str] = {}

        for index, entry in enumerate(config.enabled_entries()):
            try:
                spec = TunnelSpec.model_validate(entry)
            except ValidationError as e:
                logger.error(
                    "Invalid tunnel configuration, skipping",
                    tunnel=entry.get("name") or f"#{index}",
                    entry=sanitize_log_data(entry),
                    error=str(e),
                )
                continue

            if spec.name in tunnels:
                logger.error("Duplicate tunnel name, skipping", tunnel=spec.name)
                continue

            try:
                spec.check_key_file()
            except ConfigurationError as e:
                broken[spec.name] = str(e)

            tunnels[spec.name] = self._tunnel_factory(spec, self._settings)
            order.append(spec.name)

        return tunnels, order, broken

    def _start_tunnel(self, tunnel: Tunnel) -> None:
        try:
            tunnel.start()
        except SSHTunnelsError as e:
            logger.error("Failed to start tunnel", tunnel=tunnel.name, error=str(e))

    def _schedule_sweep(self) -> None:
        if self._sweep_timer is not None:
            self._sweep_timer.cancel()
        timer = threading.Timer(self._settings.reload_settle, self.check_all)
        timer.name = "tunnel-sweep"
        timer.daemon = True
        self._sweep_timer = timer
        timer.start()

    def wait_for_starts(self, timeout: float | None = None) -> None:
        """Block until the background starts of the last reload have run."""
        for starter in self._starters:
            starter.join(timeout)

    def wait_for_sweep(self, timeout: float | None = None) -> None:
        """Block until the post-reload health sweep has run."""
        timer = self._sweep_timer
        if timer is not None:
            timer.join(timeout)

    def start_all(self) -> bool:
        """Start every registered tunnel.

        Returns:
            True if all tunnels started
        """
        success = True
        for tunnel in self.tunnels():
            try:
                tunnel.start()
            except SSHTunnelsError as e:
                logger.error("Failed to start tunnel", tunnel=tunnel.name, error=str(e))
                success = False
        return success

    def stop_all(self) -> bool:
        """Stop every tunnel concurrently, then stop health monitoring.

        Returns:
            True if every tunnel stopped cleanly
        """
        with self._reload_lock:
            tunnels = self.tunnels()
            logger.info("Stopping all tunnels", count=len(tunnels))
            success = self._stop_tunnels(tunnels)
            self.stop_monitoring()

        logger.info("All tunnels stopped", success=success)
        return success

    def _stop_tunnels(self, tunnels: list[Tunnel]) -> bool:
        # caller holds _reload_lock, so no reload can start more tunnels
        self.wait_for_starts()
        return _run_concurrently("stop", tunnels, lambda t: t.stop())

    def check_all(self) -> None:
        """Probe every registered tunnel once."""
        _run_concurrently("check", self.tunnels(), lambda t: t.check_connection())

    def start_monitoring(self) -> None:
        """Start the periodic health check loop."""
        if self._monitor_thread is not None and self._monitor_thread.is_alive():
            return

        self._monitor_stop = threading.Event()
        self._monitor_thread = threading.Thread(
            target=self._monitor_loop,
            args=(self._monitor_stop,),
            name="tunnel-monitor",
            daemon=True,
        )
        self._monitor_thread.start()
        logger.info("Health monitoring started")

    def stop_monitoring(self, timeout: float | None = None) -> None:
        """Stop the health check loop and any pending reload sweep."""
        self._monitor_stop.set()
        if self._sweep_timer is not None:
            self._sweep_timer.cancel()

        thread = self._monitor_thread
        if thread is not None and thread is not threading.current_thread():
            thread.join(timeout)

    def _check_interval(self) -> float:
        config = self.get_config()
        if config is None:
            return float(DEFAULT_CHECK_INTERVAL)
        return config.check_interval_seconds

    def _monitor_loop(self, stop: threading.Event) -> None:
        while not stop.wait(self._check_interval()):
            try:
                self.check_all()
            except Exception as e:
                logger.error("Health check sweep failed", error=str(e))
        logger.info("Health monitoring stopped")

    def get_tunnel_statuses(self) -> list[TunnelStatusSnapshot]:
        """Status of every tunnel in configuration order."""
        return [
            TunnelStatusSnapshot(
                name=tunnel.name,
                status=tunnel.get_status(),
                spec=tunnel.spec,
                last_error=tunnel.get_last_error(),
                last_check=tunnel.get_last_check(),
                connection=tunnel.get_connection_string(),
            )
            for tunnel in self.tunnels()
        ]

    def get_healthy_count(self) -> int:
        return sum(1 for tunnel in self.tunnels() if tunnel.is_healthy())

    def get_total_count(self) -> int:
        with self._lock:
            return len(self._tunnels)

    def summary(self) -> str:
        """Fleet health summary, e.g. ``2/3 connected``."""
        return f"{self.get_healthy_count()}/{self.get_total_count()} connected"

    def __enter__(self) -> "Supervisor":
        """Load the configuration and start monitoring"""
        logger.debug("Entering Supervisor context")
        self.load_config()
        self.start_monitoring()
        return self

    def __exit__(
        self,
        exc_type: type[BaseException] | None,
        exc_val: BaseException | None,
        exc_tb: TracebackType | None,
    ) -> Literal[False]:
        """Stop all tunnels

        Returns:
            False to propagate any exception
        """
        logger.debug("Exiting Supervisor context")
        try:
            self.stop_all()
        except Exception as e:
            logger.error("Error during context exit", error=str(e))
        return False
