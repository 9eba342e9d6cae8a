from __future__ import annotations

from .runtime import DatabaseConfig, RuntimeConfig
from .settings import AppConfig, Settings, load_config
from .sync import SyncLimitsConfig
from .terminology import TerminologyServerConfig

__all__ = [
    "AppConfig",
    "DatabaseConfig",
    "RuntimeConfig",
    "Settings",
    "SyncLimitsConfig",
    "TerminologyServerConfig",
    "load_config",
]
