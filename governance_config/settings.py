"""
Runtime settings (``governance_config.settings``).

Responsibility
--------------
Reads the handful of deployment settings the governance core needs from
the environment into one frozen ``GovernanceSettings``.  No other module
reads environment variables.

Invariants enforced
-------------------
* Every value is validated on load; an invalid value raises
  ``SettingsError`` (a ``ValueError``) naming the variable.
"""

from __future__ import annotations

import os
from dataclasses import dataclass
from typing import Mapping

from governance_kernel.exceptions import SettingsError

DEFAULT_DATABASE_URL = "sqlite://"

ENV_DATABASE_URL = "GOVERNANCE_DATABASE_URL"
ENV_DATABASE_URL_FALLBACK = "DATABASE_URL"
ENV_ECHO = "GOVERNANCE_DB_ECHO"
ENV_POOL_SIZE = "GOVERNANCE_DB_POOL_SIZE"
ENV_MAX_OVERFLOW = "GOVERNANCE_DB_MAX_OVERFLOW"
ENV_LOG_LEVEL = "GOVERNANCE_LOG_LEVEL"
ENV_DEFAULT_SLA_HOURS = "GOVERNANCE_DEFAULT_SLA_HOURS"
ENV_REMINDER_RATIO = "GOVERNANCE_REMINDER_RATIO"

_LOG_LEVELS = frozenset({"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"})
_TRUE = frozenset({"1", "true", "yes", "on"})
_FALSE = frozenset({"0", "false", "no", "off", ""})


@dataclass(frozen=True)
class GovernanceSettings:
    database_url: str = DEFAULT_DATABASE_URL
    echo: bool = False
    pool_size: int = 5
    max_overflow: int = 10
    log_level: str = "INFO"
    default_sla_hours: int | None = None
    reminder_ratio: float = 0.75


def _parse_bool(name: str, raw: str) -> bool:
    value = raw.strip().lower()
    if value in _TRUE:
        return True
    if value in _FALSE:
        return False
    raise SettingsError(name, raw, "expected a boolean")


def _parse_int(name: str, raw: str, minimum: int) -> int:
    try:
        value = int(raw)
    except ValueError:
        raise SettingsError(name, raw, "expected an integer") from None
    if value < minimum:
        raise SettingsError(name, raw, f"must be >= {minimum}")
    return value


def _parse_ratio(name: str, raw: str) -> float:
    try:
        value = float(raw)
    except ValueError:
        raise SettingsError(name, raw, "expected a number") from None
    if not 0 < value <= 1:
        raise SettingsError(name, raw, "must be in (0, 1]")
    return value


def load_settings(environ: Mapping[str, str] | None = None) -> GovernanceSettings:
    """Build settings from ``environ`` (defaults to ``os.environ``).

    Raises:
        SettingsError: A variable is set to an invalid value.
    """
    env = os.environ if environ is None else environ
    defaults = GovernanceSettings()

    database_url = (
        env.get(ENV_DATABASE_URL)
        or env.get(ENV_DATABASE_URL_FALLBACK)
        or defaults.database_url
    )

    log_level = env.get(ENV_LOG_LEVEL, defaults.log_level).strip().upper()
    if log_level not in _LOG_LEVELS:
        raise SettingsError(ENV_LOG_LEVEL, log_level, "unknown log level")

    sla_raw = env.get(ENV_DEFAULT_SLA_HOURS)

    return GovernanceSettings(
        database_url=database_url,
        echo=_parse_bool(ENV_ECHO, env[ENV_ECHO]) if ENV_ECHO in env else defaults.echo,
        pool_size=(
            _parse_int(ENV_POOL_SIZE, env[ENV_POOL_SIZE], 1)
            if ENV_POOL_SIZE in env else defaults.pool_size
        ),
        max_overflow=(
            _parse_int(ENV_MAX_OVERFLOW, env[ENV_MAX_OVERFLOW], 0)
            if ENV_MAX_OVERFLOW in env else defaults.max_overflow
        ),
        log_level=log_level,
        default_sla_hours=(
            _parse_int(ENV_DEFAULT_SLA_HOURS, sla_raw, 1) if sla_raw else None
        ),
        reminder_ratio=(
            _parse_ratio(ENV_REMINDER_RATIO, env[ENV_REMINDER_RATIO])
            if ENV_REMINDER_RATIO in env else defaults.reminder_ratio
        ),
    )
