"""
INI configuration loading.
"""

import logging
from configparser import ConfigParser
from dataclasses import dataclass
from dataclasses import fields
from dataclasses import replace
from pathlib import Path

from termcal.models import DEFAULT_CONFIG
from termcal.models import ConfigError

logger = logging.getLogger(__name__)

CONFIG_SECTION = "termcal"


@dataclass(frozen=True)
class Settings:
    """Values read from ~/.config/termcal.conf, with defaults for everything optional."""

    client_id: str | None = None
    refresh_interval_minutes: int = 5
    debug: bool = False
    window_past_days: int = 31
    window_future_days: int = 92
    notifications: bool = True
    notify_minutes_before: int = 15
    redirect_port: int = 8080
    login_timeout_seconds: int = 300

    def require_client_id(self) -> str:
        if not self.client_id:
            raise ConfigError(
                f"No client_id configured. Add 'client_id = <app id>' to the "
                f"[{CONFIG_SECTION}] section of {DEFAULT_CONFIG}"
            )
        return self.client_id


_INT_KEYS = {
    "refresh_interval_minutes": 1,
    "window_past_days": 0,
    "window_future_days": 1,
    "notify_minutes_before": 0,
    "redirect_port": 0,
    "login_timeout_seconds": 1,
}
_BOOL_KEYS = ("debug", "notifications")


def load_settings(config_path: Path = DEFAULT_CONFIG, **overrides) -> Settings:
    """Read the config file (if any) and apply non-None keyword overrides."""
    values: dict[str, object] = {}
    if config_path.exists():
        parser = ConfigParser()
        parser.read(config_path)
        if CONFIG_SECTION in parser:
            values = _parse_section(parser, config_path)
        else:
            logger.debug(f"{config_path} has no [{CONFIG_SECTION}] section, using defaults")
    else:
        logger.debug(f"Config file {config_path} not found, using defaults")

    settings = Settings(**values)
    known = {f.name for f in fields(Settings)}
    applied = {k: v for k, v in overrides.items() if v is not None}
    unknown = set(applied) - known
    if unknown:
        raise TypeError(f"Unknown setting(s): {', '.join(sorted(unknown))}")
    return replace(settings, **applied)


def _parse_section(parser: ConfigParser, config_path: Path) -> dict[str, object]:
    section = parser[CONFIG_SECTION]
    values: dict[str, object] = {}

    client_id = section.get("client_id", "").strip()
    if client_id:
        values["client_id"] = client_id

    for key, minimum in _INT_KEYS.items():
        if key not in section:
            continue
        try:
            value = section.getint(key)
        except ValueError:
            raise ConfigError(
                f"{config_path}: '{key}' must be an integer, got {section[key]!r}"
            ) from None
        if value < minimum:
            raise ConfigError(f"{config_path}: '{key}' must be at least {minimum}")
        values[key] = value

    for key in _BOOL_KEYS:
        if key not in section:
            continue
        try:
            values[key] = section.getboolean(key)
        except ValueError:
            raise ConfigError(
                f"{config_path}: '{key}' must be true/false, got {section[key]!r}"
            ) from None

    return values
