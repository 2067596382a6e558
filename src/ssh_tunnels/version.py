"""Application name and version."""

__version__ = "0.1.0"

APP_NAME = "Tunnels"
APP_FULL_NAME = f"{APP_NAME} v{__version__}"
