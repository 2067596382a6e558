"""Custom exceptions for the SSH tunnel supervisor."""


class SSHTunnelsError(Exception):
    """Base exception for all tunnel supervisor errors."""

    pass


class ConfigurationError(SSHTunnelsError):
    """Raised when configuration is invalid or cannot be loaded."""

    pass


class ProcessError(SSHTunnelsError):
    """Raised when the ssh client process cannot be started."""

    pass


class BinaryNotFoundError(ProcessError):
    """Raised when the ssh client executable is not found."""

    pass


class RetryLimitExceededError(SSHTunnelsError):
    """Raised when a restart is refused because the retry budget is spent."""

    def __init__(self, name: str, max_retries: int):
        self.name = name
        self.max_retries = max_retries
        super().__init__(
            f"Tunnel '{name}' exceeded retry limit ({max_retries}); restart refused"
        )
