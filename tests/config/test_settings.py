"""Tests for environment settings (governance_config.settings)."""

import pytest

from governance_config.settings import (
    DEFAULT_DATABASE_URL,
    ENV_DATABASE_URL,
    ENV_DATABASE_URL_FALLBACK,
    ENV_DEFAULT_SLA_HOURS,
    ENV_ECHO,
    ENV_LOG_LEVEL,
    ENV_MAX_OVERFLOW,
    ENV_POOL_SIZE,
    ENV_REMINDER_RATIO,
    GovernanceSettings,
    load_settings,
)
from governance_kernel.exceptions import SettingsError


class TestDefaults:
    def test_empty_environment(self):
        settings = load_settings({})
        assert settings == GovernanceSettings()
        assert settings.database_url == DEFAULT_DATABASE_URL
        assert settings.default_sla_hours is None
        assert settings.reminder_ratio == 0.75

    def test_reads_os_environ_by_default(self, monkeypatch):
        monkeypatch.setenv(ENV_DATABASE_URL, "sqlite:///from-env.db")
        assert load_settings().database_url == "sqlite:///from-env.db"


class TestDatabaseUrl:
    def test_primary_wins_over_fallback(self):
        settings = load_settings({
            ENV_DATABASE_URL: "postgresql://primary/db",
            ENV_DATABASE_URL_FALLBACK: "postgresql://fallback/db",
        })
        assert settings.database_url == "postgresql://primary/db"

    def test_fallback_used(self):
        settings = load_settings({ENV_DATABASE_URL_FALLBACK: "postgresql://fallback/db"})
        assert settings.database_url == "postgresql://fallback/db"


class TestParsing:
    @pytest.mark.parametrize("raw,expected", [
        ("1", True), ("TRUE", True), ("on", True),
        ("0", False), ("no", False), ("", False),
    ])
    def test_echo(self, raw, expected):
        assert load_settings({ENV_ECHO: raw}).echo is expected

    def test_pool_settings(self):
        settings = load_settings({ENV_POOL_SIZE: "20", ENV_MAX_OVERFLOW: "0"})
        assert settings.pool_size == 20
        assert settings.max_overflow == 0

    def test_log_level_normalized(self):
        assert load_settings({ENV_LOG_LEVEL: " debug "}).log_level == "DEBUG"

    def test_sla_and_ratio(self):
        settings = load_settings({ENV_DEFAULT_SLA_HOURS: "72", ENV_REMINDER_RATIO: "0.5"})
        assert settings.default_sla_hours == 72
        assert settings.reminder_ratio == 0.5

    def test_blank_sla_means_none(self):
        assert load_settings({ENV_DEFAULT_SLA_HOURS: ""}).default_sla_hours is None


class TestInvalidValues:
    @pytest.mark.parametrize("env,name", [
        ({ENV_ECHO: "maybe"}, ENV_ECHO),
        ({ENV_POOL_SIZE: "zero"}, ENV_POOL_SIZE),
        ({ENV_POOL_SIZE: "0"}, ENV_POOL_SIZE),
        ({ENV_MAX_OVERFLOW: "-1"}, ENV_MAX_OVERFLOW),
        ({ENV_LOG_LEVEL: "VERBOSE"}, ENV_LOG_LEVEL),
        ({ENV_DEFAULT_SLA_HOURS: "0"}, ENV_DEFAULT_SLA_HOURS),
        ({ENV_REMINDER_RATIO: "1.5"}, ENV_REMINDER_RATIO),
        ({ENV_REMINDER_RATIO: "0"}, ENV_REMINDER_RATIO),
        ({ENV_REMINDER_RATIO: "half"}, ENV_REMINDER_RATIO),
    ])
    def test_raises_naming_the_variable(self, env, name):
        with pytest.raises(SettingsError) as exc_info:
            load_settings(env)
        assert exc_info.value.name == name
        assert name in str(exc_info.value)

    def test_settings_error_is_value_error(self):
        with pytest.raises(ValueError):
            load_settings({ENV_ECHO: "maybe"})
