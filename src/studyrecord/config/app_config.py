"""Application configuration loader.

Loads centralized configuration from data/config/studyrecord_v1.yaml
(or the file named by $STUDYRECORD_CONFIG), falling back to built-in
defaults when no file exists.

Usage:
    from studyrecord.config.app_config import load_app_config, get_institution_policy

    config = load_app_config()
    policy = get_institution_policy("TUM")
"""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import structlog
import yaml

from studyrecord.core.policy import PolicyOverride

logger = structlog.get_logger(__name__)

# Config file path (relative to project root)
CONFIG_FILE = Path("data/config/studyrecord_v1.yaml")
CONFIG_ENV = "STUDYRECORD_CONFIG"


@dataclass
class DefaultsConfig:
    """Defaults for newly created courses and degrees."""

    grading_scheme: str = "german"
    institution: str = "default"


@dataclass
class AppConfig:
    """Application-wide configuration."""

    defaults: DefaultsConfig = field(default_factory=DefaultsConfig)
    institutions: dict[str, PolicyOverride] = field(default_factory=dict)
    paths: dict[str, str] = field(default_factory=dict)


# Module-level cache
_cached_config: AppConfig | None = None


def _get_defaults() -> dict[str, Any]:
    """Get default configuration values."""
    return {
        "defaults": {
            "grading_scheme": "german",
            "institution": "default",
        },
        "institutions": {},
        "paths": {
            "database": "db/studyrecord.db",
        },
    }


def _parse_config(data: dict[str, Any]) -> AppConfig:
    """Parse configuration dictionary into AppConfig object."""
    defaults_data = data.get("defaults") or {}
    defaults = DefaultsConfig(
        grading_scheme=defaults_data.get("grading_scheme", "german"),
        institution=defaults_data.get("institution", "default"),
    )

    institutions = {}
    for name, policy_data in (data.get("institutions") or {}).items():
        institutions[name] = PolicyOverride.from_dict(policy_data or {})

    paths = data.get("paths") or {}

    return AppConfig(defaults=defaults, institutions=institutions, paths=paths)


def _config_path() -> Path:
    env_path = os.environ.get(CONFIG_ENV)
    return Path(env_path) if env_path else CONFIG_FILE


def load_app_config(
    config_path: Path | None = None,
    force_reload: bool = False,
) -> AppConfig:
    """Load application config with fallback to defaults.

    Args:
        config_path: Explicit config file (bypasses the cache)
        force_reload: If True, ignore cached config and reload from file.

    Returns:
        AppConfig object with all settings.
    """
    global _cached_config

    if config_path is None and _cached_config is not None and not force_reload:
        return _cached_config

    path = config_path or _config_path()
    data: dict[str, Any]

    if path.exists():
        logger.debug("loading_app_config", source=str(path))
        data = yaml.safe_load(path.read_text(encoding="utf-8")) or {}
    else:
        logger.info("using_default_config")
        data = _get_defaults()

    config = _parse_config(data)
    if config_path is None:
        _cached_config = config
    return config


def get_institution_policy(institution: str) -> PolicyOverride | None:
    """Get the policy override configured for an institution.

    Args:
        institution: Institution name as used on courses (e.g., "TUM")

    Returns:
        PolicyOverride or None if the institution has no policy.
    """
    config = load_app_config()
    return config.institutions.get(institution)


def clear_config_cache() -> None:
    """Clear the configuration cache.

    Useful for testing or when config is modified at runtime.
    """
    global _cached_config
    _cached_config = None
