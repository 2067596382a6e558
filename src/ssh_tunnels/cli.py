"""Command line entry point running the supervisor headless."""

import argparse
import signal
import sys
import threading
from collections.abc import Sequence
from pathlib import Path
from types import FrameType

from pydantic import ValidationError

from .config import TunnelSpec, example_config, load_config
from .exceptions import ConfigurationError
from .logging import get_logger, setup_logging
from .supervisor import Supervisor
from .version import APP_FULL_NAME, __version__

logger = get_logger(__name__)

DEFAULT_CONFIG = "tunnels.conf"
DEFAULT_LOG_FILE = "tunnels.log"
STATUS_INTERVAL = 5.0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="ssh-tunnels",
        description="Keep a set of ssh local port forwards up.",
    )
    parser.add_argument(
        "config",
        nargs="?",
        default=DEFAULT_CONFIG,
        help=f"Path to the tunnels YAML file (default: {DEFAULT_CONFIG})",
    )
    parser.add_argument(
        "--log-file",
        default=DEFAULT_LOG_FILE,
        help=f"Log file, rotated at 1 MiB (default: {DEFAULT_LOG_FILE})",
    )
    parser.add_argument(
        "--log-level",
        default="INFO",
        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
        help="Log level (default: INFO)",
    )
    parser.add_argument("--json-logs", action="store_true", help="Emit JSON log lines")
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")

    group = parser.add_mutually_exclusive_group()
    group.add_argument(
        "--check", action="store_true", help="Validate the configuration and exit"
    )
    group.add_argument(
        "--dump-example-config",
        action="store_true",
        help="Print an example configuration and exit",
    )
    return parser


def check_config(config_path: Path) -> int:
    """Print a verdict for every enabled tunnel.

    Returns:
        0 if every enabled tunnel is usable, 2 otherwise
    """
    try:
        config = load_config(config_path)
    except ConfigurationError as e:
        print(f"Config error: {e}", file=sys.stderr)
        return 2

    ok = True
    for index, entry in enumerate(config.enabled_entries()):
        name = entry.get("name") or f"#{index}"
        try:
            spec = TunnelSpec.model_validate(entry)
            spec.check_key_file()
        except (ValidationError, ConfigurationError) as e:
            print(f"{name}: ERROR {e}")
            ok = False
        else:
            print(f"{name}: OK {spec.connection_string}")

    return 0 if ok else 2


def _reload(supervisor: Supervisor) -> None:
    try:
        supervisor.load_config()
    except ConfigurationError as e:
        logger.error("Failed to load configuration", error=str(e))


def run(config_path: Path, status_interval: float = STATUS_INTERVAL) -> int:
    """Run the supervisor until SIGINT or SIGTERM."""
    logger.info(f"=== {APP_FULL_NAME} started ===", config=str(config_path))

    supervisor = Supervisor(config_path)
    shutdown = threading.Event()
    reload_requested = threading.Event()

    def request_shutdown(signum: int, frame: FrameType | None) -> None:
        logger.info("Signal received, shutting down", signal=signum)
        shutdown.set()

    def request_reload(signum: int, frame: FrameType | None) -> None:
        logger.info("Signal received, reloading configuration", signal=signum)
        reload_requested.set()

    signal.signal(signal.SIGINT, request_shutdown)
    signal.signal(signal.SIGTERM, request_shutdown)
    if hasattr(signal, "SIGHUP"):
        signal.signal(signal.SIGHUP, request_reload)

    _reload(supervisor)
    supervisor.start_monitoring()

    last_summary = None
    while not shutdown.wait(status_interval):
        if reload_requested.is_set():
            reload_requested.clear()
            _reload(supervisor)

        summary = supervisor.summary()
        if summary != last_summary:
            logger.info("Tunnel status", summary=summary)
            for status in supervisor.get_tunnel_statuses():
                logger.debug(
                    "Tunnel status detail",
                    tunnel=status.name,
                    status=status.status.value,
                    error=status.last_error or None,
                )
            last_summary = summary

    supervisor.stop_all()
    logger.info(f"=== {APP_FULL_NAME} stopped ===")
    return 0


def main(argv: Sequence[str] | None = None) -> int:
    args = build_parser().parse_args(argv)

    if args.dump_example_config:
        print(example_config(), end="")
        return 0

    config_path = Path(args.config).resolve()

    if args.check:
        return check_config(config_path)

    setup_logging(
        level=args.log_level, json_format=args.json_logs, log_file=args.log_file
    )
    return run(config_path)
