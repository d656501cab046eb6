"""Configuration loading and settings."""

from .models import (
    DeclarationOptions,
    EngineSettings,
    FleetSettings,
    LockSettings,
    RetrySettings,
)
from .parser import Config, ConfigValidationError, DEFAULT_CONFIG_FILE, STATE_PATH_ENV, parse_references

__all__ = [
    "Config",
    "ConfigValidationError",
    "DEFAULT_CONFIG_FILE",
    "DeclarationOptions",
    "EngineSettings",
    "FleetSettings",
    "LockSettings",
    "RetrySettings",
    "STATE_PATH_ENV",
    "parse_references",
]
