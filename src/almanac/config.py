"""Client configuration loading and validation.

Reads almanac.toml from a config directory, parses all sections, and returns
a validated AlmanacConfig dataclass.
"""

from __future__ import annotations

import os
import re
import tomllib
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from almanac.calendars import CALENDAR_TYPE_CODE
from almanac.coordinates import is_replaceable_type_code
from almanac.network import DEFAULT_PUBLISH_TIMEOUT_SECONDS, DEFAULT_QUERY_TIMEOUT_SECONDS
from almanac.recurrence import WeeklySeedPolicy

CONFIG_FILENAME = "almanac.toml"
DEFAULT_CLIENT_NAME = "almanac"

# Matches ${VAR_NAME}; names are alphanumeric plus underscore.
_ENV_VAR_PATTERN = re.compile(r"\$\{([A-Za-z_][A-Za-z0-9_]*)\}")


class ConfigError(Exception):
    """Raised when client configuration is missing, malformed, or invalid."""


@dataclass
class LoggingConfig:
    """Logging configuration from [almanac.logging] section."""

    level: str = "INFO"
    format: str = "text"  # "text" or "json"
    log_root: str | None = None


@dataclass
class NetworkConfig:
    """Timeouts from [almanac.network], in seconds."""

    query_timeout_s: float = DEFAULT_QUERY_TIMEOUT_SECONDS
    publish_timeout_s: float = DEFAULT_PUBLISH_TIMEOUT_SECONDS


@dataclass
class RecurrenceSettings:
    weekly_seed_policy: WeeklySeedPolicy = WeeklySeedPolicy.keep


@dataclass
class CalendarSettings:
    type_code: int = CALENDAR_TYPE_CODE


@dataclass
class AlmanacConfig:
    """Parsed representation of almanac.toml.

    ``name`` identifies the client in log lines and, when ``client_tag`` is
    set, in the ``client`` attribute of every published record.
    """

    name: str = DEFAULT_CLIENT_NAME
    client_tag: bool = True
    logging: LoggingConfig = field(default_factory=LoggingConfig)
    network: NetworkConfig = field(default_factory=NetworkConfig)
    recurrence: RecurrenceSettings = field(default_factory=RecurrenceSettings)
    calendar: CalendarSettings = field(default_factory=CalendarSettings)

    @property
    def client_name(self) -> str | None:
        """Value for the ``client`` attribute, or ``None`` when tagging is off."""
        return self.name if self.client_tag else None


def resolve_env_vars(value: Any) -> Any:
    """Recursively resolve ``${VAR_NAME}`` references in config values.

    Walks dicts, lists, and strings.  Non-string leaf values (int, bool,
    float, None) are returned unchanged.

    Raises
    ------
    ConfigError
        If a referenced environment variable is not set.
    """
    if isinstance(value, dict):
        return {k: resolve_env_vars(v) for k, v in value.items()}

    if isinstance(value, list):
        return [resolve_env_vars(item) for item in value]

    if isinstance(value, str):
        return _resolve_string(value)

    return value


def _resolve_string(s: str) -> str:
    """Replace all ``${VAR_NAME}`` occurrences in *s* with env var values.

    Collects all missing variable names and reports them in a single error.
    """
    missing: list[str] = []

    def _replace(match: re.Match) -> str:
        var_name = match.group(1)
        env_value = os.environ.get(var_name)
        if env_value is None:
            missing.append(var_name)
            return match.group(0)
        return env_value

    result = _ENV_VAR_PATTERN.sub(_replace, s)

    if missing:
        vars_str = ", ".join(missing)
        raise ConfigError(
            f"Unresolved environment variable(s) in config value: {vars_str} (original: {s!r})"
        )

    return result


def _section(parent: dict[str, Any], key: str, path: str) -> dict[str, Any]:
    value = parent.get(key, {})
    if not isinstance(value, dict):
        raise ConfigError(f"{path} must be a table")
    return value


def _positive_seconds(section: dict[str, Any], key: str, default: float, path: str) -> float:
    raw = section.get(key, default)
    # bool is an int subclass; reject it explicitly.
    if isinstance(raw, bool) or not isinstance(raw, (int, float)):
        raise ConfigError(f"{path}.{key} must be a number")
    if raw <= 0:
        raise ConfigError(f"{path}.{key} must be positive, got {raw}")
    return float(raw)


def _parse_logging(section: dict[str, Any]) -> LoggingConfig:
    level = str(section.get("level", "INFO")).upper()
    fmt = str(section.get("format", "text")).lower()
    if fmt not in ("text", "json"):
        raise ConfigError(f"Invalid almanac.logging.format: {fmt!r}. Expected 'text' or 'json'.")
    log_root = section.get("log_root")
    if log_root is not None and not isinstance(log_root, str):
        raise ConfigError("almanac.logging.log_root must be a string when set")
    return LoggingConfig(level=level, format=fmt, log_root=log_root)


def _parse_recurrence(section: dict[str, Any]) -> RecurrenceSettings:
    raw = section.get("weekly_seed_policy", WeeklySeedPolicy.keep.value)
    try:
        policy = WeeklySeedPolicy(str(raw).lower())
    except ValueError as exc:
        choices = ", ".join(repr(p.value) for p in WeeklySeedPolicy)
        raise ConfigError(
            f"Invalid almanac.recurrence.weekly_seed_policy: {raw!r}. Expected one of {choices}."
        ) from exc
    return RecurrenceSettings(weekly_seed_policy=policy)


def _parse_calendar(section: dict[str, Any]) -> CalendarSettings:
    type_code = section.get("type_code", CALENDAR_TYPE_CODE)
    if isinstance(type_code, bool) or not isinstance(type_code, int):
        raise ConfigError("almanac.calendar.type_code must be an integer")
    if not is_replaceable_type_code(type_code):
        raise ConfigError(
            f"almanac.calendar.type_code must be a replaceable type code, got {type_code}"
        )
    return CalendarSettings(type_code=type_code)


def parse_config(data: dict[str, Any]) -> AlmanacConfig:
    """Validate an already-decoded TOML document."""
    data = resolve_env_vars(data)

    almanac_section = data.get("almanac", {})
    if not isinstance(almanac_section, dict):
        raise ConfigError("[almanac] must be a table")

    name = almanac_section.get("name", DEFAULT_CLIENT_NAME)
    if not isinstance(name, str) or not name.strip():
        raise ConfigError("almanac.name must be a non-empty string")

    client_tag = almanac_section.get("client_tag", True)
    if not isinstance(client_tag, bool):
        raise ConfigError("almanac.client_tag must be a boolean")

    network_section = _section(almanac_section, "network", "almanac.network")
    network = NetworkConfig(
        query_timeout_s=_positive_seconds(
            network_section, "query_timeout_s", DEFAULT_QUERY_TIMEOUT_SECONDS, "almanac.network"
        ),
        publish_timeout_s=_positive_seconds(
            network_section,
            "publish_timeout_s",
            DEFAULT_PUBLISH_TIMEOUT_SECONDS,
            "almanac.network",
        ),
    )

    return AlmanacConfig(
        name=name.strip(),
        client_tag=client_tag,
        logging=_parse_logging(_section(almanac_section, "logging", "almanac.logging")),
        network=network,
        recurrence=_parse_recurrence(
            _section(almanac_section, "recurrence", "almanac.recurrence")
        ),
        calendar=_parse_calendar(_section(almanac_section, "calendar", "almanac.calendar")),
    )


def load_config(config_dir: Path) -> AlmanacConfig:
    """Load and validate almanac.toml from *config_dir*.

    Raises
    ------
    ConfigError
        If the file is missing, contains invalid TOML, or holds invalid values.
    """
    toml_path = config_dir / CONFIG_FILENAME

    if not toml_path.exists():
        raise ConfigError(f"Config file not found: {toml_path}")

    try:
        data = tomllib.loads(toml_path.read_bytes().decode())
    except tomllib.TOMLDecodeError as exc:
        raise ConfigError(f"Invalid TOML in {toml_path}: {exc}") from exc

    return parse_config(data)
