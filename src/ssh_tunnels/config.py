"""Tunnel configuration models and YAML persistence."""

import os
import stat
import sys
from pathlib import Path
from typing import Any

import yaml
from pydantic import (
    BaseModel,
    ConfigDict,
    Field,
    TypeAdapter,
    ValidationError,
    field_validator,
    model_validator,
)

from .exceptions import ConfigurationError
from .logging import get_logger

logger = get_logger(__name__)

DEFAULT_SSH_PORT = 22
DEFAULT_CHECK_INTERVAL = 30

# same coercion as TunnelSpec.enabled, so "false", "no" and "off" are disabled
_ENABLED_FLAG = TypeAdapter(bool)


class TunnelSpec(BaseModel):
    """Connection parameters of one local port forward."""

    model_config = ConfigDict(frozen=True, str_strip_whitespace=True, extra="forbid")

    name: str = Field(min_length=1, description="Unique tunnel name")
    local_port: int = Field(ge=1, le=65535, description="Local port to listen on")
    remote_host: str = Field(min_length=1, description="Host reached from the ssh server")
    remote_port: int = Field(ge=1, le=65535, description="Port on the remote host")
    ssh_host: str = Field(min_length=1, description="SSH server hostname")
    ssh_port: int = Field(default=DEFAULT_SSH_PORT, ge=1, le=65535, description="SSH server port")
    ssh_user: str = Field(min_length=1, description="SSH login user")
    ssh_key_path: str | None = Field(default=None, description="Private key file")
    ssh_password: str | None = Field(default=None, repr=False, description="SSH password")
    enabled: bool = Field(default=False, description="Whether the tunnel is started")

    @field_validator("ssh_key_path", "ssh_password")
    @classmethod
    def empty_as_none(cls, v: str | None) -> str | None:
        """Treat blank credentials as absent."""
        return v or None

    @model_validator(mode="after")
    def validate_credentials(self) -> "TunnelSpec":
        """Require a key file; password-only authentication cannot be used with ssh -N."""
        if self.ssh_key_path is None and self.ssh_password is None:
            raise ValueError("either ssh_key_path or ssh_password is required")

        if self.ssh_key_path is None:
            raise ValueError(
                "password authentication is not supported by the ssh client invocation; "
                "configure ssh_key_path instead"
            )

        if self.ssh_password is not None:
            logger.warning(
                "ssh_password is ignored, key authentication is used",
                tunnel=self.name,
            )
        return self

    @property
    def connection_string(self) -> str:
        return (
            f"127.0.0.1:{self.local_port} -> {self.remote_host}:{self.remote_port} "
            f"(via {self.ssh_user}@{self.ssh_host}:{self.ssh_port})"
        )

    def check_key_file(self) -> None:
        """Pre-flight check of the private key file.

        Raises:
            ConfigurationError: If the key file is missing, unreadable or
                readable by other users
        """
        if self.ssh_key_path is None:
            return

        key_path = Path(self.ssh_key_path).expanduser()
        try:
            mode = key_path.stat().st_mode
        except FileNotFoundError:
            raise ConfigurationError(
                f"SSH key file does not exist: {self.ssh_key_path}"
            ) from None
        except OSError as e:
            raise ConfigurationError(
                f"SSH key file is not accessible: {self.ssh_key_path} ({e})"
            ) from e

        if sys.platform == "win32":
            if not os.access(key_path, os.R_OK):
                raise ConfigurationError(
                    f"SSH key file is not readable: {self.ssh_key_path}"
                )
        elif mode & 0o077:
            raise ConfigurationError(
                f"SSH key file permissions are too open: {self.ssh_key_path} "
                f"({stat.filemode(mode)}, expected 600)"
            )


class TunnelsConfig(BaseModel):
    """Contents of the tunnels configuration file.

    Tunnel entries are kept raw so a single malformed entry is reported and
    skipped instead of failing the whole file.
    """

    model_config = ConfigDict(extra="ignore")

    tunnels: list[dict[str, Any]] = Field(default_factory=list)
    check_interval: int = Field(
        default=DEFAULT_CHECK_INTERVAL, description="Health check interval in seconds"
    )

    @field_validator("tunnels", mode="before")
    @classmethod
    def none_as_empty(cls, v: Any) -> Any:
        return [] if v is None else v

    @field_validator("check_interval", mode="before")
    @classmethod
    def missing_check_interval(cls, v: Any) -> Any:
        if v is None or (isinstance(v, int | float) and v <= 0):
            return DEFAULT_CHECK_INTERVAL
        return v

    @field_validator("check_interval")
    @classmethod
    def positive_check_interval(cls, v: int) -> int:
        """Non-positive intervals given as strings, e.g. "-5"."""
        return DEFAULT_CHECK_INTERVAL if v <= 0 else v

    @property
    def check_interval_seconds(self) -> float:
        return float(self.check_interval)

    def enabled_entries(self) -> list[dict[str, Any]]:
        """Raw entries of enabled tunnels in file order."""
        return [entry for entry in self.tunnels if _is_enabled(entry)]


def _is_enabled(entry: dict[str, Any]) -> bool:
    try:
        return _ENABLED_FLAG.validate_python(entry.get("enabled") or False)
    except ValidationError:
        # full validation reports the bad value
        return True


class SupervisionSettings(BaseModel):
    """Timing and retry policy of the supervision engine."""

    model_config = ConfigDict(frozen=True)

    max_retries: int = Field(default=3, ge=1, description="Consecutive probe failures tolerated")
    probe_timeout: float = Field(default=5.0, gt=0, description="TCP probe timeout")
    restart_backoff: float = Field(default=2.0, ge=0, description="Delay before a scheduled restart")
    restart_settle: float = Field(default=1.0, ge=0, description="Delay between kill and respawn")
    stop_grace_period: float = Field(default=2.0, ge=0, description="Wait after terminate before kill")
    stop_drain_period: float = Field(default=1.0, ge=0, description="Wait for process table cleanup")
    reload_settle: float = Field(default=1.0, ge=0, description="Delay before the post-reload sweep")
    watch_interval: float = Field(default=1.0, gt=0, description="Process watcher poll interval")
    ssh_binary: str = Field(default="ssh", min_length=1, description="ssh client executable")
    suppress_console: bool = Field(default=True, description="Hide console windows on Windows")


def default_config() -> TunnelsConfig:
    """Configuration written when no configuration file exists."""
    return TunnelsConfig(tunnels=[], check_interval=DEFAULT_CHECK_INTERVAL)


def load_config(path: str | Path) -> TunnelsConfig:
    """Load the tunnels configuration file.

    A missing file is created with the default configuration.

    Args:
        path: Path of the YAML configuration file

    Returns:
        Parsed configuration

    Raises:
        ConfigurationError: If the file cannot be read or parsed
    """
    config_path = Path(path)

    if not config_path.exists():
        config = default_config()
        try:
            save_config(config, config_path)
        except OSError as e:
            raise ConfigurationError(f"Failed to create default config: {e}") from e
        logger.info("Created default configuration", path=str(config_path))
        return config

    try:
        with open(config_path, encoding="utf-8") as f:
            raw = yaml.safe_load(f) or {}
    except OSError as e:
        raise ConfigurationError(f"Failed to read config file: {e}") from e
    except yaml.YAMLError as e:
        raise ConfigurationError(f"Failed to parse config file: {e}") from e

    if not isinstance(raw, dict):
        raise ConfigurationError("Config file must contain a mapping")

    try:
        config = TunnelsConfig.model_validate(raw)
    except ValueError as e:
        raise ConfigurationError(f"Invalid config file: {e}") from e

    logger.debug(
        "Loaded configuration",
        path=str(config_path),
        tunnels=len(config.tunnels),
        check_interval=config.check_interval,
    )
    return config


def save_config(config: TunnelsConfig, path: str | Path) -> None:
    """Write the configuration as YAML, keeping key order."""
    data = config.model_dump()
    with open(path, "w", encoding="utf-8") as f:
        yaml.safe_dump(data, f, sort_keys=False, allow_unicode=True)


def example_config() -> str:
    """Example configuration file content."""
    example = {
        "check_interval": DEFAULT_CHECK_INTERVAL,
        "tunnels": [
            {
                "name": "web",
                "local_port": 8080,
                "remote_host": "db.internal",
                "remote_port": 5432,
                "ssh_host": "bastion",
                "ssh_port": DEFAULT_SSH_PORT,
                "ssh_user": "ops",
                "ssh_key_path": "~/.ssh/id_ed25519",
                "enabled": True,
            }
        ],
    }
    return yaml.safe_dump(example, sort_keys=False)
