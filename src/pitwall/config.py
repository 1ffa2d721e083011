"""pitwall configuration loading and validation.

Reads ``pitwall.toml``, resolves ``${VAR}`` references from the environment
and returns a validated PitwallConfig dataclass.
"""

from __future__ import annotations

import os
import re
import tomllib
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from pitwall.models import Series

# Pattern matching ${VAR_NAME}; supports alphanumeric + underscore variable names.
_ENV_VAR_PATTERN = re.compile(r"\$\{([A-Za-z_][A-Za-z0-9_]*)\}")
_SNOWFLAKE_PATTERN = re.compile(r"^[0-9]{1,20}$")


class ConfigError(Exception):
    """Raised when pitwall configuration is missing, malformed, or invalid."""


@dataclass
class LoggingConfig:
    """Logging configuration from [pitwall.logging] section."""

    level: str = "INFO"
    format: str = "text"  # "text" or "json"
    log_root: str | None = None


@dataclass
class SeriesConfig:
    """Where one series posts, from a [series.<NAME>] table."""

    series: Series
    channel_id: str
    role_id: str | None = None


@dataclass
class PitwallConfig:
    """Fully parsed pitwall.toml."""

    token: str
    series: list[SeriesConfig]
    db_name: str = "pitwall"
    poll_interval_seconds: float = 5.0
    calendar_interval_seconds: float = 300.0
    calendar_post_delay_seconds: float = 0.25
    shutdown_timeout_s: float = 30.0
    run_migrations: bool = True
    attachment: Path | None = None
    logging: LoggingConfig = field(default_factory=LoggingConfig)


def resolve_env_vars(value: Any) -> Any:
    """Recursively resolve ``${VAR_NAME}`` references in config values.

    Walks dicts, lists, and strings. Non-string leaf values are returned
    unchanged.

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
            return match.group(0)  # keep placeholder for error reporting
        return env_value

    result = _ENV_VAR_PATTERN.sub(_replace, s)

    if missing:
        vars_str = ", ".join(missing)
        raise ConfigError(f"Unresolved environment variable(s) in config value: {vars_str}")

    return result


def _positive_number(section: dict[str, Any], key: str, default: float) -> float:
    raw = section.get(key, default)
    if isinstance(raw, bool) or not isinstance(raw, int | float):
        raise ConfigError(f"pitwall.{key} must be a number, got {raw!r}")
    if raw <= 0:
        raise ConfigError(f"Invalid pitwall.{key}: {raw!r}. Must be positive.")
    return float(raw)


def _snowflake(value: Any, path: str) -> str:
    """Validate a Discord id; TOML integers are accepted and stringified."""
    if isinstance(value, bool) or not isinstance(value, str | int):
        raise ConfigError(f"{path} must be a Discord id string")
    text = str(value).strip()
    if _SNOWFLAKE_PATTERN.fullmatch(text) is None:
        raise ConfigError(f"Invalid {path}: {value!r}. Expected a numeric Discord id.")
    return text


def _parse_series(data: dict[str, Any]) -> list[SeriesConfig]:
    section = data.get("series")
    if not isinstance(section, dict) or not section:
        raise ConfigError("At least one [series.<NAME>] table is required")

    parsed: list[SeriesConfig] = []
    for name, entry in section.items():
        try:
            series = Series(name)
        except ValueError:
            allowed = ", ".join(s.value for s in Series)
            raise ConfigError(f"Unknown series {name!r}. Expected one of: {allowed}") from None
        if not isinstance(entry, dict):
            raise ConfigError(f"series.{name} must be a TOML table")
        if "channel" not in entry:
            raise ConfigError(f"Missing required field: series.{name}.channel")
        channel_id = _snowflake(entry["channel"], f"series.{name}.channel")
        role = entry.get("role")
        role_id = _snowflake(role, f"series.{name}.role") if role not in (None, "") else None
        parsed.append(SeriesConfig(series=series, channel_id=channel_id, role_id=role_id))
    return parsed


def load_config(config_path: Path) -> PitwallConfig:
    """Load and validate a pitwall.toml.

    Parameters
    ----------
    config_path:
        Path to the TOML file. A relative ``attachment`` path is resolved
        against the file's directory.

    Raises
    ------
    ConfigError
        If the file is missing, contains invalid TOML, or lacks required fields.
    """
    config_path = Path(config_path)
    if not config_path.exists():
        raise ConfigError(f"Config file not found: {config_path}")

    try:
        data = tomllib.loads(config_path.read_bytes().decode())
    except tomllib.TOMLDecodeError as exc:
        raise ConfigError(f"Invalid TOML in {config_path}: {exc}") from exc

    # --- Resolve env var references before any validation ---
    data = resolve_env_vars(data)

    pitwall_section = data.get("pitwall", {})
    if not isinstance(pitwall_section, dict):
        raise ConfigError("[pitwall] must be a TOML table")

    # --- [pitwall.discord] sub-section ---
    discord_section = pitwall_section.get("discord", {})
    token = str(discord_section.get("token", "")).strip()
    if not token:
        raise ConfigError("Missing required field: pitwall.discord.token")

    # --- [pitwall.db] sub-section ---
    db_section = pitwall_section.get("db", {})
    db_name = str(db_section.get("name", "pitwall")).strip()
    if not db_name:
        raise ConfigError("pitwall.db.name must be a non-empty string")

    # --- [pitwall.logging] sub-section ---
    logging_section = pitwall_section.get("logging", {})
    log_level = str(logging_section.get("level", "INFO")).upper()
    log_format = str(logging_section.get("format", "text")).lower()
    if log_format not in ("text", "json"):
        raise ConfigError(
            f"Invalid pitwall.logging.format: {log_format!r}. Expected 'text' or 'json'."
        )
    logging_config = LoggingConfig(
        level=log_level,
        format=log_format,
        log_root=logging_section.get("log_root"),
    )

    attachment: Path | None = None
    raw_attachment = pitwall_section.get("attachment")
    if raw_attachment:
        attachment = Path(raw_attachment)
        if not attachment.is_absolute():
            attachment = config_path.parent / attachment

    run_migrations = pitwall_section.get("run_migrations", True)
    if not isinstance(run_migrations, bool):
        raise ConfigError("pitwall.run_migrations must be a boolean")

    return PitwallConfig(
        token=token,
        series=_parse_series(data),
        db_name=db_name,
        poll_interval_seconds=_positive_number(pitwall_section, "poll_interval_seconds", 5.0),
        calendar_interval_seconds=_positive_number(
            pitwall_section, "calendar_interval_seconds", 300.0
        ),
        calendar_post_delay_seconds=_positive_number(
            pitwall_section, "calendar_post_delay_seconds", 0.25
        ),
        shutdown_timeout_s=_positive_number(pitwall_section, "shutdown_timeout_s", 30.0),
        run_migrations=run_migrations,
        attachment=attachment,
        logging=logging_config,
    )
