"""Utility modules."""

from .config_loader import ConfigLoader, get_nested, load_config, parse_overrides, set_nested
from .logger import LoggerMixin, ProgressLogger, get_logger, setup_logger

__all__ = [
    "ConfigLoader",
    "load_config",
    "parse_overrides",
    "get_nested",
    "set_nested",
    "setup_logger",
    "get_logger",
    "LoggerMixin",
    "ProgressLogger",
]
