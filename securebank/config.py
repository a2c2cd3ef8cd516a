"""Configuration management for the SecureBank service."""
from __future__ import annotations

import os
from dataclasses import dataclass, replace
from datetime import timedelta
from pathlib import Path
from typing import Any, Dict, Mapping, Optional

import yaml

_TRUE_VALUES = {"1", "true", "yes", "on"}
_FALSE_VALUES = {"0", "false", "no", "off"}

DEFAULT_SESSION_TTL = timedelta(hours=24)
DEFAULT_ADMIN_USERNAME = "admin"
DEFAULT_ADMIN_EMAIL = "admin@securebank.local"


def resolve_database_path(env_value: Optional[str]) -> Path:
    """Resolve the on-disk path for the application database."""

    if env_value:
        return Path(env_value).expanduser().resolve(strict=False)
    base_dir = Path(__file__).resolve().parent.parent / "data"
    return (base_dir / "securebank.sqlite3").resolve(strict=False)


def parse_flag(value: Any, *, key: str) -> bool:
    if isinstance(value, bool):
        return value
    lowered = str(value).strip().lower()
    if lowered in _TRUE_VALUES:
        return True
    if lowered in _FALSE_VALUES:
        return False
    raise ValueError(f"Invalid boolean value for {key}: {value!r}")


def _parse_hours(value: Any, *, key: str) -> timedelta:
    try:
        hours = float(value)
    except (TypeError, ValueError) as exc:
        raise ValueError(f"Invalid number of hours for {key}: {value!r}") from exc
    if hours <= 0:
        raise ValueError(f"{key} must be greater than zero")
    return timedelta(hours=hours)


@dataclass(frozen=True)
class Settings:
    """Runtime settings for the banking service."""

    database_path: Path
    session_ttl: timedelta = DEFAULT_SESSION_TTL
    admin_bypasses_lifecycle: bool = True
    allow_pending_sign_in: bool = False
    admin_username: str = DEFAULT_ADMIN_USERNAME
    admin_email: str = DEFAULT_ADMIN_EMAIL
    admin_password: Optional[str] = None
    secret: Optional[str] = None
    demo_headers: bool = True

    def with_overrides(self, **changes: Any) -> "Settings":
        return replace(self, **changes)


# Maps setting names to (environment variable, parser).
_FIELDS = {
    "database_path": ("BANK_DB_PATH", None),
    "session_ttl_hours": ("BANK_SESSION_TTL_HOURS", _parse_hours),
    "admin_bypasses_lifecycle": ("BANK_ADMIN_BYPASSES_LIFECYCLE", parse_flag),
    "allow_pending_sign_in": ("BANK_ALLOW_PENDING_SIGN_IN", parse_flag),
    "admin_username": ("BANK_ADMIN_USERNAME", None),
    "admin_email": ("BANK_ADMIN_EMAIL", None),
    "admin_password": ("BANK_ADMIN_PASSWORD", None),
    "secret": ("BANK_SECRET", None),
    "demo_headers": ("BANK_DEMO_HEADERS", parse_flag),
}


def _read_config_file(config_path: Path) -> Dict[str, Any]:
    with config_path.open("r", encoding="utf-8") as handle:
        raw = yaml.safe_load(handle) or {}
    if not isinstance(raw, dict):
        raise ValueError("Configuration file must contain a mapping")
    section = raw.get("securebank", raw)
    if not isinstance(section, dict):
        raise ValueError("The 'securebank' section must be a mapping")
    unknown = set(section) - set(_FIELDS)
    if unknown:
        raise ValueError(f"Unknown configuration keys: {', '.join(sorted(unknown))}")
    return dict(section)


def load_settings(
    config_path: Optional[Path] = None,
    environ: Optional[Mapping[str, str]] = None,
) -> Settings:
    """Build :class:`Settings` from an optional YAML file and the environment.

    Environment variables take precedence over values from the file.
    """

    env = os.environ if environ is None else environ

    if config_path is None and env.get("BANK_CONFIG"):
        config_path = Path(env["BANK_CONFIG"]).expanduser()

    values: Dict[str, Any] = {}
    if config_path is not None:
        values.update(_read_config_file(config_path))

    for key, (env_name, _) in _FIELDS.items():
        raw = env.get(env_name)
        if raw is not None and raw.strip():
            values[key] = raw.strip()

    kwargs: Dict[str, Any] = {}
    for key, value in values.items():
        _, parser = _FIELDS[key]
        if key == "session_ttl_hours":
            kwargs["session_ttl"] = _parse_hours(value, key=key)
        elif parser is not None:
            kwargs[key] = parser(value, key=key)
        elif key != "database_path":
            kwargs[key] = str(value)

    database_path = resolve_database_path(
        str(values["database_path"]) if values.get("database_path") else None
    )
    return Settings(database_path=database_path, **kwargs)


__all__ = [
    "DEFAULT_SESSION_TTL",
    "Settings",
    "load_settings",
    "parse_flag",
    "resolve_database_path",
]
