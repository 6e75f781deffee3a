"""Configuration loading utilities for repomirror."""

from .settings import (
    DEFAULT_CONFIG_PATH,
    SecretStore,
    Settings,
    bootstrap_settings,
    load_settings,
    save_settings,
)

__all__ = [
    "DEFAULT_CONFIG_PATH",
    "SecretStore",
    "Settings",
    "bootstrap_settings",
    "load_settings",
    "save_settings",
]
