"""Configuration module for loading and validating application settings.

Settings are never loaded at import time. Entry points call
``load_settings_conf`` and pass the result to ``LedgerContext.from_settings``
and ``database.init_db`` explicitly.
"""
from .lib.load_settings_conf import (
    load_settings_conf,
    validate_settings,
    SettingsError,
    DEFAULTS,
    REQUIRED_SETTINGS,
    COMMITMENT_LEVELS,
)

__all__ = [
    'load_settings_conf',
    'validate_settings',
    'SettingsError',
    'DEFAULTS',
    'REQUIRED_SETTINGS',
    'COMMITMENT_LEVELS',
]
