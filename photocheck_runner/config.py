from __future__ import annotations

import json
import os
from pathlib import Path
from typing import Any, Dict, Optional

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

try:
    import tomllib  # type: ignore[attr-defined]
except ModuleNotFoundError:  # pragma: no cover - Python < 3.11
    tomllib = None  # type: ignore[assignment]

CONFIG_ENV_VAR = "PHOTOCHECK_RUNNER_CONFIG"
SUPPORTED_CONFIG_EXTENSIONS = {".json", ".toml"}

ALLOWED_MIME_TYPES = ("image/jpeg", "image/png", "image/heic")

__all__ = [
    "ALLOWED_MIME_TYPES",
    "ValidationSettings",
    "load_validation_settings",
    "clear_validation_settings_cache",
]


class ValidationSettings(BaseSettings):
    """Thresholds used by the validation engine."""

    model_config = SettingsConfigDict(
        env_prefix="PHOTOCHECK_RUNNER_",
        env_file=".env",
        extra="ignore",
        case_sensitive=False,
    )

    max_upload_size_bytes: int = Field(default=8_000_000, ge=1)
    min_file_size_bytes: int = Field(default=51_200, ge=0)
    min_width: int = Field(default=400, ge=1)
    min_height: int = Field(default=400, ge=1)
    phash_threshold: int = Field(default=10, ge=0)
    blur_threshold: float = Field(default=10.0, ge=0)
    min_face_fraction: float = Field(default=0.1, ge=0, le=1)
    # 16x16 blocks -> 256 bit hash, 64 hex characters
    hash_size: int = Field(default=16, ge=2)
    hash_resolution: int = Field(default=256, ge=8)


_SETTINGS_CACHE: Dict[Optional[Path], ValidationSettings] = {}


def _resolve_config_path(config_path: Optional[Path | str]) -> Optional[Path]:
    if config_path is not None:
        return Path(config_path)
    env_value = os.getenv(CONFIG_ENV_VAR)
    if env_value:
        return Path(env_value)
    return None


def _load_config_file(path: Path) -> Dict[str, Any]:
    suffix = path.suffix.lower()
    if suffix == ".json":
        return json.loads(path.read_text(encoding="utf-8"))
    if suffix == ".toml":
        if tomllib is None:
            raise RuntimeError("TOML config support requires Python 3.11+.")
        return tomllib.loads(path.read_text(encoding="utf-8"))
    raise ValueError(
        f"Unsupported config format '{path.suffix}'. Supported: {sorted(SUPPORTED_CONFIG_EXTENSIONS)}"
    )


def load_validation_settings(
    config_path: Path | str | None = None,
    *,
    force_reload: bool = False,
) -> ValidationSettings:
    path = _resolve_config_path(config_path)
    cache_key = path.resolve() if path else None
    if not force_reload and cache_key in _SETTINGS_CACHE:
        return _SETTINGS_CACHE[cache_key]

    data: Dict[str, Any] = {}
    if path:
        if not path.is_file():
            raise FileNotFoundError(f"Validation config file not found: {path}")
        data = _load_config_file(path)

    settings = ValidationSettings(**data)
    _SETTINGS_CACHE[cache_key] = settings
    return settings


def clear_validation_settings_cache() -> None:
    _SETTINGS_CACHE.clear()
