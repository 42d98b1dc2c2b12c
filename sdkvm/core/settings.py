"""
Runtime settings for the SDK manager core.

Values come from, in increasing priority:
    built-in defaults
    an optional YAML or JSON settings file (SDKVM_SETTINGS_FILE)
    SDKVM_* environment variables

The core never reads the environment itself: callers build an `SdkSettings`
(usually via `SdkSettings.from_env()`) and pass it in.

Settings file format (YAML or JSON):
    cache_root: /data/sdkvm
    use_reference_cache: true
    reference_cache_path: /srv/git-cache/flutter.git
    download_attempts: 5
"""
from __future__ import annotations

import json
import logging
import os
from dataclasses import dataclass, fields, replace
from pathlib import Path
from typing import Any, Dict, Mapping, Optional

import yaml

from .errors import ConfigError

_log = logging.getLogger("sdkvm.settings")

DEFAULT_REMOTE_URL = "https://github.com/flutter/flutter.git"
DEFAULT_STORAGE_BASE_URL = "https://storage.googleapis.com/flutter_infra_release"
DEFAULT_RAW_CONTENT_BASE_URL = "https://raw.githubusercontent.com/flutter/flutter"
DEFAULT_REMOTE_NAME = "flutter"

_ENV_PREFIX = "SDKVM_"


def _default_cache_root() -> Path:
    return Path.home() / ".sdkvm"


@dataclass(frozen=True)
class SdkSettings:
    cache_root: Path = None  # type: ignore[assignment]
    remote_url: str = DEFAULT_REMOTE_URL
    storage_base_url: str = DEFAULT_STORAGE_BASE_URL
    raw_content_base_url: str = DEFAULT_RAW_CONTENT_BASE_URL
    use_reference_cache: bool = False
    reference_cache_path: Optional[Path] = None

    git_timeout: float = 1800.0
    download_timeout: float = 120.0
    catalog_timeout: float = 30.0
    catalog_ttl_seconds: int = 300

    lock_timeout: float = 600.0
    lock_stale_after: float = 3600.0

    download_attempts: int = 3
    download_backoff: float = 1.0
    max_workers: int = 4

    def __post_init__(self) -> None:
        root = self.cache_root if self.cache_root is not None else _default_cache_root()
        object.__setattr__(self, "cache_root", Path(root).expanduser())
        if self.reference_cache_path is not None:
            object.__setattr__(self, "reference_cache_path", Path(self.reference_cache_path).expanduser())
        if self.download_attempts < 1:
            raise ConfigError("download_attempts must be >= 1")
        if self.max_workers < 2:
            raise ConfigError("max_workers must be >= 2 (install runs two branches concurrently)")

    @property
    def reference_cache(self) -> Optional[Path]:
        if not self.use_reference_cache:
            return None
        return self.reference_cache_path

    def with_overrides(self, **overrides: Any) -> "SdkSettings":
        return replace(self, **overrides)

    @classmethod
    def from_mapping(cls, raw: Mapping[str, Any]) -> "SdkSettings":
        known = {f.name: f for f in fields(cls)}
        kwargs: Dict[str, Any] = {}
        for key, value in raw.items():
            f = known.get(key)
            if f is None:
                _log.warning("Ignoring unknown setting %r", key)
                continue
            kwargs[key] = _coerce(key, value, cls.__dataclass_fields__[key].default)
        return cls(**kwargs)

    @classmethod
    def from_env(cls, environ: Optional[Mapping[str, str]] = None) -> "SdkSettings":
        env = os.environ if environ is None else environ
        raw: Dict[str, Any] = {}

        settings_file = (env.get(f"{_ENV_PREFIX}SETTINGS_FILE") or "").strip()
        if settings_file:
            raw.update(load_settings_file(Path(settings_file)))

        for name in cls.__dataclass_fields__:
            v = env.get(f"{_ENV_PREFIX}{name.upper()}")
            if v is not None and v.strip() != "":
                raw[name] = v.strip()

        return cls.from_mapping(raw)


def _coerce(key: str, value: Any, default: Any) -> Any:
    if value is None:
        return None
    if key in ("cache_root", "reference_cache_path"):
        return Path(str(value))
    if isinstance(default, bool):
        if isinstance(value, bool):
            return value
        return str(value).strip().lower() in ("1", "true", "yes", "on")
    try:
        if isinstance(default, int):
            return int(value)
        if isinstance(default, float):
            return float(value)
    except (TypeError, ValueError) as exc:
        raise ConfigError(f"invalid value for {key}: {value!r}") from exc
    return str(value)


def load_settings_file(path: Path) -> Dict[str, Any]:
    """
    Load a flat settings mapping from a YAML or JSON file.

    A missing file is a configuration error: the caller asked for it explicitly.
    """
    if not path.exists():
        raise ConfigError(f"settings file not found: {path}")

    text = path.read_text(encoding="utf-8")
    try:
        data = json.loads(text)
    except json.JSONDecodeError:
        try:
            data = yaml.safe_load(text)
        except yaml.YAMLError as exc:
            raise ConfigError(f"failed to parse settings file {path}: {exc}") from exc

    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ConfigError(f"settings file {path} must be a mapping, got {type(data).__name__}")
    _log.info("Loaded %d setting(s) from %s", len(data), path)
    return data
