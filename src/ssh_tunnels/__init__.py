"""SSH tunnel supervisor.

Supervises independently configured local port forwards, each backed by an
ssh client process, restarting them within a bounded retry budget.

Example:
    >>> from ssh_tunnels import Supervisor
    >>> with Supervisor("tunnels.conf") as supervisor:
    ...     print(supervisor.summary())
"""

from .config import (
    SupervisionSettings,
    TunnelsConfig,
    TunnelSpec,
    load_config,
    save_config,
)
from .exceptions import (
    BinaryNotFoundError,
    ConfigurationError,
    ProcessError,
    RetryLimitExceededError,
    SSHTunnelsError,
)
from .logging import get_logger, setup_logging
from .process import SSHProcess, build_ssh_command
from .supervisor import Supervisor, TunnelStatusSnapshot
from .tunnel import Tunnel, TunnelStatus
from .version import __version__

__all__ = [
    # Configuration
    "TunnelSpec",
    "TunnelsConfig",
    "SupervisionSettings",
    "load_config",
    "save_config",
    # Supervision
    "Tunnel",
    "TunnelStatus",
    "Supervisor",
    "TunnelStatusSnapshot",
    # Process
    "SSHProcess",
    "build_ssh_command",
    # Exceptions
    "SSHTunnelsError",
    "ConfigurationError",
    "ProcessError",
    "BinaryNotFoundError",
    "RetryLimitExceededError",
    # Logging
    "get_logger",
    "setup_logging",
    "__version__",
]
