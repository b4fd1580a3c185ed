"""
Configuration for Dataplane.
"""

from dataplane.config.settings import settings, Settings
from dataplane.config.logging import configure_logging, sanitize_for_logging

__all__ = ["settings", "Settings", "configure_logging", "sanitize_for_logging"]
