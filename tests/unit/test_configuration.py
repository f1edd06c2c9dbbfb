"""
Tests for configuration loading and source tracking.
"""

import logging

import pytest
import yaml

from orderly.config.properties import (
    DEFAULTS_PATH,
    ConfigurationProperties,
    get_config,
    log_config_sources,
    reload_config,
)


@pytest.fixture(autouse=True)
def clean_environment(monkeypatch):
    monkeypatch.delenv("ORDERLY_PROFILE", raising=False)
    yield
    reload_config()


def write_yaml(directory, name, text):
    path = directory / name
    path.write_text(text)
    return path


class TestDefaults:
    """Tests for the packaged defaults."""

    def test_packaged_defaults_parse(self):
        with open(DEFAULTS_PATH, "r", encoding="utf-8") as f:
            defaults = yaml.safe_load(f)

        assert defaults["database"]["url"] == "sqlite+aiosqlite:///:memory:"
        assert defaults["logging"]["format"].startswith("%(asctime)s")

    def test_default_values(self, tmp_path):
        config = ConfigurationProperties(base_dir=str(tmp_path))

        assert config.get("database.url") == "sqlite+aiosqlite:///:memory:"
        assert config.get_int("resilience.max_attempts") == 3
        assert config.get_bool("orders.strict_transitions") is True
        assert config.get_int("orders.page_size") == 20
        assert config.get_float("resilience.base_delay") == 0.1

    def test_missing_key_returns_default(self, tmp_path):
        config = ConfigurationProperties(base_dir=str(tmp_path))

        assert config.get("nothing.here") is None
        assert config.get("nothing.here", "fallback") == "fallback"
        assert config.get_int("nothing.here", 4) == 4

    def test_default_sources(self, tmp_path):
        sources = ConfigurationProperties(base_dir=str(tmp_path)).get_config_sources()

        assert sources["database.url"] == "default configuration"
        assert sources["logging.level"] == "default configuration"


class TestApplicationFiles:
    """Tests for application.yml and profile overrides."""

    def test_application_yml_overrides(self, tmp_path):
        write_yaml(
            tmp_path,
            "application.yml",
            """
resilience:
  max_attempts: 5
orders:
  strict_transitions: false
""",
        )

        config = ConfigurationProperties(base_dir=str(tmp_path))
        sources = config.get_config_sources()

        assert config.get_int("resilience.max_attempts") == 5
        assert config.get_bool("orders.strict_transitions") is False
        # siblings from defaults survive the merge
        assert config.get_float("resilience.base_delay") == 0.1
        assert sources["resilience.max_attempts"] == "application.yml"
        assert sources["resilience.base_delay"] == "default configuration"

    def test_profile_overrides_application(self, tmp_path):
        write_yaml(tmp_path, "application.yml", "cache:\n  ttl: 60\n  max_size: 100\n")
        write_yaml(tmp_path, "application-test.yml", "cache:\n  ttl: 5\n")

        config = ConfigurationProperties(profile="test", base_dir=str(tmp_path))

        assert config.profile == "test"
        assert config.get_int("cache.ttl") == 5
        assert config.get_int("cache.max_size") == 100
        assert config.get_config_sources()["cache.ttl"] == "application-test.yml"

    def test_profile_from_environment(self, tmp_path, monkeypatch):
        write_yaml(tmp_path, "application-ci.yml", "orders:\n  page_size: 3\n")
        monkeypatch.setenv("ORDERLY_PROFILE", "ci")

        config = ConfigurationProperties(base_dir=str(tmp_path))

        assert config.profile == "ci"
        assert config.get_int("orders.page_size") == 3

    def test_missing_profile_file_warns(self, tmp_path, caplog):
        with caplog.at_level(logging.WARNING, logger="orderly.config"):
            config = ConfigurationProperties(profile="ghost", base_dir=str(tmp_path))

        assert config.get_int("orders.page_size") == 20
        assert "application-ghost.yml" in caplog.text

    def test_load_from_file(self, tmp_path):
        extra = write_yaml(tmp_path, "extra.yml", "database:\n  url: sqlite+aiosqlite:///x.db\n")

        config = ConfigurationProperties(base_dir=str(tmp_path))
        config.load_from_file(str(extra))

        assert config.get("database.url") == "sqlite+aiosqlite:///x.db"
        assert config.get_config_sources()["database.url"] == "extra.yml"

    def test_empty_file(self, tmp_path):
        write_yaml(tmp_path, "application.yml", "")

        config = ConfigurationProperties(base_dir=str(tmp_path))

        assert config.get_int("cache.ttl") == 300


class TestEnvironmentFallback:
    """Environment variables fill in keys absent from every file."""

    def test_env_used_for_absent_key(self, tmp_path, monkeypatch):
        monkeypatch.setenv("ORDERLY_FEATURES_EXPRESS_DELIVERY", "true")
        monkeypatch.setenv("ORDERLY_FEATURES_MAX_RADIUS", "12")

        config = ConfigurationProperties(base_dir=str(tmp_path))

        assert config.get_bool("features.express_delivery") is True
        assert config.get_int("features.max_radius") == 12
        assert (
            config.get_config_sources()["features.max_radius"]
            == "environment variable (ORDERLY_FEATURES_MAX_RADIUS)"
        )

    def test_file_value_wins_over_env(self, tmp_path, monkeypatch):
        monkeypatch.setenv("ORDERLY_ORDERS_PAGE_SIZE", "99")

        config = ConfigurationProperties(base_dir=str(tmp_path))

        assert config.get_int("orders.page_size") == 20

    def test_bool_strings(self, tmp_path, monkeypatch):
        config = ConfigurationProperties(base_dir=str(tmp_path))
        for raw, expected in (("yes", True), ("off", False), ("1", True), ("no", False)):
            config.set("flags.value", raw)
            assert config.get_bool("flags.value") is expected


class TestOverrides:
    def test_set_creates_nested_keys(self, tmp_path):
        config = ConfigurationProperties(base_dir=str(tmp_path))
        config.set("orders.page_size", 50)
        config.set("custom.deep.value", "x")

        assert config.get_int("orders.page_size") == 50
        assert config.get("custom.deep.value") == "x"
        assert config.get_config_sources()["orders.page_size"] == "programmatic override"

    def test_as_dict_is_a_copy(self, tmp_path):
        config = ConfigurationProperties(base_dir=str(tmp_path))
        snapshot = config.as_dict()
        snapshot["orders"]["page_size"] = 1

        assert config.get_int("orders.page_size") == 20


class TestGlobalConfig:
    def test_get_config_is_cached(self):
        assert get_config() is get_config()

    def test_reload_replaces_instance(self):
        first = get_config()
        second = reload_config()

        assert first is not second
        assert get_config() is second


class TestLogConfigSources:
    def test_logs_defaults_only(self, tmp_path, caplog):
        config = ConfigurationProperties(base_dir=str(tmp_path))

        with caplog.at_level(logging.INFO, logger="orderly.config"):
            log_config_sources(config)

        assert "Using default configuration" in caplog.text

    def test_logs_overrides(self, tmp_path, caplog):
        write_yaml(tmp_path, "application.yml", "cache:\n  enabled: false\n")
        config = ConfigurationProperties(base_dir=str(tmp_path))

        with caplog.at_level(logging.INFO, logger="orderly.config"):
            log_config_sources(config)

        assert "cache.enabled <- application.yml" in caplog.text
        assert "database.url" not in caplog.text
