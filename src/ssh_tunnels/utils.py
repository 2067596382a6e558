"""Utility helpers shared across the supervisor."""

from typing import Any

SENSITIVE_FIELDS = {"password", "secret", "token", "passphrase"}


def mask_sensitive_data(
    value: str | None, mask_char: str = "*", show_chars: int = 0
) -> str:
    """Mask sensitive data for logging.

    Args:
        value: Sensitive string to mask (e.g., ssh password)
        mask_char: Character to use for masking
        show_chars: Number of characters to show at the end

    Returns:
        Masked string safe for logging
    """
    if not value:
        return "<None>"

    if len(value) <= show_chars:
        return mask_char * len(value)

    masked_length = len(value) - show_chars
    return mask_char * masked_length + value[len(value) - show_chars :]


def sanitize_log_data(data: dict[str, Any]) -> dict[str, Any]:
    """Sanitize dictionary data for safe logging by masking sensitive fields.

    Args:
        data: Dictionary potentially containing sensitive data

    Returns:
        Sanitized dictionary safe for logging
    """
    sanitized = {}
    for key, value in data.items():
        if any(field in key.lower() for field in SENSITIVE_FIELDS):
            sanitized[key] = mask_sensitive_data(str(value) if value else None)
        else:
            sanitized[key] = value

    return sanitized
