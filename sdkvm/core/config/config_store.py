"""
Project and global configuration.

Project config lives in the project root, written in two formats:

    .fvmrc                     {"flutter": "3.24.0", "flavors": {"production": "3.22.0"}}
    .fvm/fvm_config.json       {"flutterSdkVersion": "3.24.0", "flavors": {...}}   (legacy)

`.fvmrc` wins on read; the legacy file is only a fallback.

Global config lives at <cache-root>/config.json:

    {"global_version": "stable", "forks": [{"name": "acme", "url": "https://.../flutter.git"}]}
"""
from __future__ import annotations

import json
import logging
import os
import re
import threading
from pathlib import Path
from typing import Dict, List, Optional

from pydantic import BaseModel, Field, ValidationError

from sdkvm.core.errors import ConfigError
from sdkvm.core.paths import RESERVED_REMOTE_NAMES, CacheLayout
from sdkvm.core.settings import DEFAULT_REMOTE_NAME
from sdkvm.core.versions.models import Fork

_log = logging.getLogger("sdkvm.config")

PROJECT_CONFIG_FILE = ".fvmrc"
LEGACY_CONFIG_DIR = ".fvm"
LEGACY_CONFIG_FILE = "fvm_config.json"

_ALIAS = re.compile(r"^[A-Za-z0-9][A-Za-z0-9_\-]*$")


class ProjectConfig(BaseModel):
    flutter: str
    flavors: Optional[Dict[str, str]] = None

    def version_for(self, flavor: Optional[str] = None) -> str:
        if flavor:
            v = (self.flavors or {}).get(flavor)
            if v is None:
                raise ConfigError(f"flavor '{flavor}' is not configured", details={"flavor": flavor})
            return v
        return self.flutter


class LegacyProjectConfig(BaseModel):
    flutterSdkVersion: str
    flavors: Optional[Dict[str, str]] = None

    @staticmethod
    def from_project(cfg: ProjectConfig) -> "LegacyProjectConfig":
        return LegacyProjectConfig(flutterSdkVersion=cfg.flutter, flavors=cfg.flavors)

    def to_project(self) -> ProjectConfig:
        return ProjectConfig(flutter=self.flutterSdkVersion, flavors=self.flavors)


class ForkEntry(BaseModel):
    name: str
    url: str


class GlobalConfig(BaseModel):
    global_version: Optional[str] = None
    forks: List[ForkEntry] = Field(default_factory=list)

    def get_fork(self, alias: str) -> Optional[ForkEntry]:
        for f in self.forks:
            if f.name == alias:
                return f
        return None


def _write_json(path: Path, data: Dict) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    tmp = path.with_name(f".{path.name}.{os.getpid()}.tmp")
    tmp.write_text(json.dumps(data, indent=2) + "\n", encoding="utf-8")
    os.replace(tmp, path)


def _read_model(path: Path, model):
    try:
        return model.model_validate_json(path.read_text(encoding="utf-8"))
    except ValidationError as e:
        raise ConfigError(f"failed to parse {path}: {e}", details={"path": str(path)}) from e


class ConfigStore:
    def __init__(self, layout: CacheLayout):
        self.layout = layout
        self._lock = threading.Lock()

    # ----------------------------------------
    # Project config
    # ----------------------------------------
    def read_project_config(self, project_root: Path) -> Optional[ProjectConfig]:
        primary = project_root / PROJECT_CONFIG_FILE
        if primary.is_file():
            return _read_model(primary, ProjectConfig)
        legacy = project_root / LEGACY_CONFIG_DIR / LEGACY_CONFIG_FILE
        if legacy.is_file():
            _log.debug("Reading legacy project config %s", legacy)
            return _read_model(legacy, LegacyProjectConfig).to_project()
        return None

    def write_project_config(self, project_root: Path, cfg: ProjectConfig) -> None:
        _write_json(project_root / PROJECT_CONFIG_FILE, cfg.model_dump(exclude_none=True))
        _write_json(
            project_root / LEGACY_CONFIG_DIR / LEGACY_CONFIG_FILE,
            LegacyProjectConfig.from_project(cfg).model_dump(exclude_none=True),
        )
        _log.debug("Wrote project config to %s", project_root)

    @staticmethod
    def find_project_root(start: Optional[Path] = None) -> Optional[Path]:
        """Nearest directory (walking up from `start`) holding a project config."""
        current = (start or Path.cwd()).resolve()
        for d in (current, *current.parents):
            if (d / PROJECT_CONFIG_FILE).is_file() or (d / LEGACY_CONFIG_DIR / LEGACY_CONFIG_FILE).is_file():
                return d
        return None

    # ----------------------------------------
    # Global config
    # ----------------------------------------
    def read_global_config(self) -> GlobalConfig:
        p = self.layout.global_config_file
        if not p.is_file():
            return GlobalConfig()
        return _read_model(p, GlobalConfig)

    def write_global_config(self, cfg: GlobalConfig) -> None:
        _write_json(self.layout.global_config_file, cfg.model_dump())

    def list_forks(self) -> List[Fork]:
        return [Fork(alias=f.name, url=f.url) for f in self.read_global_config().forks]

    def fork_table(self) -> Dict[str, str]:
        return {f.alias: f.url for f in self.list_forks()}

    def get_fork(self, alias: str) -> Optional[Fork]:
        f = self.read_global_config().get_fork(alias)
        return Fork(alias=f.name, url=f.url) if f else None

    def add_fork(self, alias: str, url: str) -> Fork:
        alias = alias.strip()
        url = url.strip()
        if not _ALIAS.match(alias):
            raise ConfigError(f"invalid fork alias: {alias!r}", details={"alias": alias})
        if alias in RESERVED_REMOTE_NAMES or alias == DEFAULT_REMOTE_NAME:
            raise ConfigError(f"fork alias '{alias}' is reserved", details={"alias": alias})
        if not url.endswith(".git"):
            raise ConfigError("fork URL must end with .git", details={"alias": alias, "url": url})

        with self._lock:
            cfg = self.read_global_config()
            if cfg.get_fork(alias) is not None:
                raise ConfigError(f"fork '{alias}' already exists", details={"alias": alias})
            cfg.forks.append(ForkEntry(name=alias, url=url))
            self.write_global_config(cfg)
        _log.info("Added fork %s -> %s", alias, url)
        return Fork(alias=alias, url=url)

    def remove_fork(self, alias: str) -> bool:
        with self._lock:
            cfg = self.read_global_config()
            before = len(cfg.forks)
            cfg.forks = [f for f in cfg.forks if f.name != alias]
            if len(cfg.forks) == before:
                return False
            self.write_global_config(cfg)
        _log.info("Removed fork %s", alias)
        return True

    # ----------------------------------------
    # Global version
    # ----------------------------------------
    def get_global_version(self) -> Optional[str]:
        return self.read_global_config().global_version

    def set_global_version(self, version: str) -> None:
        with self._lock:
            cfg = self.read_global_config()
            cfg.global_version = version
            self.write_global_config(cfg)

    def unset_global_version(self) -> bool:
        with self._lock:
            cfg = self.read_global_config()
            if cfg.global_version is None:
                return False
            cfg.global_version = None
            self.write_global_config(cfg)
        return True
