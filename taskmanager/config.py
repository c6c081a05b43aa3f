"""Configuration management for the task manager service."""
from __future__ import annotations

import os
from dataclasses import dataclass, field, replace
from pathlib import Path
from typing import Dict, Mapping, Optional, Tuple

import yaml

from .database import DEFAULT_POOL_SIZE, resolve_database_path

DEFAULT_JWT_SECRET = "dev_secret"
DEFAULT_PORT = 4000
MAX_BODY_BYTES = 1024 * 1024

_TRUE_VALUES = {"1", "true", "yes", "on"}
_FALSE_VALUES = {"0", "false", "no", "off"}


def _env_flag(value: Optional[str], default: bool) -> bool:
    if value is None:
        return default
    lowered = value.strip().lower()
    if lowered in _TRUE_VALUES:
        return True
    if lowered in _FALSE_VALUES:
        return False
    raise ValueError(f"Expected a boolean flag, got {value!r}")


def _parse_origins(value: object) -> Tuple[str, ...]:
    if isinstance(value, (list, tuple)):
        items = [str(item).strip() for item in value]
    else:
        items = [item.strip() for item in str(value).split(",")]
    origins = tuple(item for item in items if item)
    return origins or ("*",)


@dataclass(frozen=True)
class Settings:
    """Runtime settings for the API process."""

    database_path: Path = field(default_factory=lambda: resolve_database_path(None))
    pool_size: int = DEFAULT_POOL_SIZE
    host: str = "0.0.0.0"
    port: int = DEFAULT_PORT
    cors_origins: Tuple[str, ...] = ("*",)
    jwt_secret: str = DEFAULT_JWT_SECRET
    require_auth: bool = True
    max_body_bytes: int = MAX_BODY_BYTES

    @property
    def uses_default_secret(self) -> bool:
        return self.jwt_secret == DEFAULT_JWT_SECRET

    @staticmethod
    def from_dict(data: Mapping[str, object], base_path: Path | None = None) -> "Settings":
        """Create :class:`Settings` from the keys of a YAML configuration file."""

        settings = Settings()
        updates: Dict[str, object] = {}

        raw_path = data.get("database_path")
        if raw_path:
            candidate = Path(str(raw_path)).expanduser()
            if not candidate.is_absolute() and base_path is not None:
                candidate = base_path / candidate
            updates["database_path"] = candidate.resolve(strict=False)
        if data.get("pool_size") is not None:
            updates["pool_size"] = int(data["pool_size"])  # type: ignore[arg-type]
        if data.get("host"):
            updates["host"] = str(data["host"])
        if data.get("port") is not None:
            updates["port"] = int(data["port"])  # type: ignore[arg-type]
        if data.get("cors_origin") is not None:
            updates["cors_origins"] = _parse_origins(data["cors_origin"])
        if data.get("jwt_secret"):
            updates["jwt_secret"] = str(data["jwt_secret"])
        if data.get("require_auth") is not None:
            updates["require_auth"] = bool(data["require_auth"])

        return replace(settings, **updates)


def load_config_file(config_path: Path) -> Settings:
    """Load settings from a YAML file."""

    with config_path.open("r", encoding="utf-8") as handle:
        raw = yaml.safe_load(handle) or {}
    if not isinstance(raw, dict):
        raise ValueError("Configuration file must contain a mapping of settings")
    return Settings.from_dict(raw, base_path=config_path.parent)


def load_settings(environ: Mapping[str, str] | None = None) -> Settings:
    """Build settings from the optional ``TASKS_CONFIG`` file overlaid by environment variables."""

    env = os.environ if environ is None else environ

    config_file = env.get("TASKS_CONFIG")
    settings = load_config_file(Path(config_file).expanduser()) if config_file else Settings()

    updates: Dict[str, object] = {}
    if env.get("TASKS_DB_PATH"):
        updates["database_path"] = resolve_database_path(env["TASKS_DB_PATH"])
    if env.get("DB_POOL_LIMIT"):
        updates["pool_size"] = int(env["DB_POOL_LIMIT"])
    if env.get("HOST"):
        updates["host"] = env["HOST"].strip()
    if env.get("PORT"):
        updates["port"] = int(env["PORT"])
    if env.get("CORS_ORIGIN"):
        updates["cors_origins"] = _parse_origins(env["CORS_ORIGIN"])
    if env.get("JWT_SECRET"):
        updates["jwt_secret"] = env["JWT_SECRET"]
    if env.get("TASKS_REQUIRE_AUTH") is not None:
        updates["require_auth"] = _env_flag(env.get("TASKS_REQUIRE_AUTH"), settings.require_auth)

    settings = replace(settings, **updates)
    if settings.pool_size < 1:
        raise ValueError("DB_POOL_LIMIT must be at least 1")
    return settings


__all__ = ["DEFAULT_JWT_SECRET", "MAX_BODY_BYTES", "Settings", "load_config_file", "load_settings"]
