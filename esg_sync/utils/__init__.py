"""Utilities package initialization."""
from .config import (
    GlobalSettings,
    ensure_runtime_configuration,
    get_settings,
    load_yaml_config,
    validate_config,
)
from .logging import log_sync_outcome, setup_logger

__all__ = [
    "GlobalSettings",
    "ensure_runtime_configuration",
    "get_settings",
    "load_yaml_config",
    "validate_config",
    "log_sync_outcome",
    "setup_logger",
]
