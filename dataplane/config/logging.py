"""
Logging setup for Dataplane.
"""
import logging
from typing import Any, Dict, Optional

from dataplane.config.settings import settings

SENSITIVE_KEYS = (
    "password",
    "token",
    "secret",
    "key",
    "private_key",
    "client_secret",
    "refresh_token",
    "access_token",
)

MASK = "***"


def configure_logging(level: Optional[str] = None) -> None:
    """Configure root logging from settings"""
    logging.basicConfig(
        level=getattr(logging, (level or settings.app.log_level).upper(), logging.INFO),
        format=settings.app.log_format,
    )
    if not settings.app.state_database_echo:
        logging.getLogger("sqlalchemy.engine").setLevel(logging.WARNING)


def _is_sensitive(key: str) -> bool:
    normalized = key.lower().replace("-", "_")
    compact = normalized.replace("_", "")
    return any(s in normalized or s.replace("_", "") in compact for s in SENSITIVE_KEYS)


def sanitize_for_logging(values: Dict[str, Any]) -> Dict[str, Any]:
    """Return a copy of a credential mapping with secret values masked."""
    sanitized: Dict[str, Any] = {}
    for key, value in values.items():
        if isinstance(value, dict):
            sanitized[key] = sanitize_for_logging(value)
        elif value is not None and _is_sensitive(str(key)):
            sanitized[key] = MASK
        else:
            sanitized[key] = value
    return sanitized
