"""Tests for app configuration (F5).

Tests the configuration loading, institution policies, and fallbacks.
"""

from pathlib import Path

import pytest

from studyrecord.config.app_config import (
    CONFIG_ENV,
    AppConfig,
    DefaultsConfig,
    clear_config_cache,
    get_institution_policy,
    load_app_config,
)
from studyrecord.core.errors import ValidationError
from studyrecord.core.policy import ActiveAttemptStrategy, resolve_policy

SHIPPED_CONFIG = Path(__file__).resolve().parents[2] / "data" / "config" / "studyrecord_v1.yaml"


class TestLoadAppConfig:
    """Tests for load_app_config function."""

    def test_load_shipped_config(self):
        """Loads the studyrecord_v1.yaml shipped with the project."""
        config = load_app_config(SHIPPED_CONFIG)

        assert isinstance(config, AppConfig)
        assert config.defaults.grading_scheme == "german"
        assert config.defaults.institution == "TUM"
        assert set(config.institutions) == {"TUM", "LMU", "ETH"}
        assert config.paths["database"] == "db/studyrecord.db"

    def test_shipped_institution_policies(self):
        config = load_app_config(SHIPPED_CONFIG)

        lmu = resolve_policy(config.institutions["LMU"])
        assert lmu.max_attempts is None
        assert lmu.strategy == ActiveAttemptStrategy.BEST
        assert lmu.allow_retake_after_pass is True

        eth = resolve_policy(config.institutions["ETH"])
        assert eth.max_attempts == 2
        assert eth.strategy == ActiveAttemptStrategy.FIRST_PASSING

    def test_missing_file_falls_back_to_defaults(self, tmp_path):
        config = load_app_config(tmp_path / "missing.yaml")

        assert config.defaults == DefaultsConfig()
        assert config.institutions == {}

    def test_empty_file_uses_defaults(self, tmp_path):
        path = tmp_path / "empty.yaml"
        path.write_text("")

        config = load_app_config(path)

        assert config.defaults.grading_scheme == "german"
        assert config.institutions == {}

    def test_institution_without_fields(self, tmp_path):
        path = tmp_path / "config.yaml"
        path.write_text("institutions:\n  KIT:\n")

        config = load_app_config(path)

        assert config.institutions["KIT"].is_empty()

    def test_invalid_policy_rejected(self, tmp_path):
        path = tmp_path / "config.yaml"
        path.write_text("institutions:\n  KIT:\n    strategy: latest\n")

        with pytest.raises(ValidationError):
            load_app_config(path)


class TestConfigCache:
    """Tests for env-based loading and the module cache."""

    def test_env_var_selects_file(self, tmp_path, monkeypatch):
        path = tmp_path / "config.yaml"
        path.write_text("institutions:\n  KIT:\n    max_attempts: 4\n")
        monkeypatch.setenv(CONFIG_ENV, str(path))

        config = load_app_config(force_reload=True)

        assert config.institutions["KIT"].max_attempts == 4
        assert get_institution_policy("KIT").max_attempts == 4
        assert get_institution_policy("TUM") is None

    def test_config_is_cached(self):
        first = load_app_config()
        second = load_app_config()

        assert first is second

    def test_force_reload_and_clear(self):
        first = load_app_config()

        assert load_app_config(force_reload=True) is not first

        clear_config_cache()
        assert load_app_config() is not first

    def test_explicit_path_bypasses_cache(self, tmp_path):
        cached = load_app_config()

        explicit = load_app_config(tmp_path / "other.yaml")

        assert explicit is not cached
        assert load_app_config() is cached
