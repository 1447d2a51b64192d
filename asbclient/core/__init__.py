"""
Core infrastructure for asbclient: configuration and logging.
"""

from .config import ClientSettings, LoggingSettings, load_settings
from .logging_config import setup_logging

__all__ = ["ClientSettings", "LoggingSettings", "load_settings", "setup_logging"]
