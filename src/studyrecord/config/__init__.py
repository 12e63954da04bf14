"""Configuration package for studyrecord."""

from studyrecord.config.app_config import (
    AppConfig,
    DefaultsConfig,
    get_institution_policy,
    load_app_config,
)

__all__ = [
    "AppConfig",
    "DefaultsConfig",
    "get_institution_policy",
    "load_app_config",
]
