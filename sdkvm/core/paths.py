# sdkvm/core/paths.py

from __future__ import annotations

import re
from dataclasses import dataclass
from pathlib import Path

from .errors import InvalidVersionError

# Names the SDK's own tooling probes inside a working tree.
ENGINE_CACHE_SUBDIR = ("bin", "cache")
ENGINE_LINK_NAME = "dart-sdk"
MARKER_FILES = ("engine.stamp", "engine-dart-sdk.stamp", "engine.realm")

# Directory names under shared/ that are not mirrors.
RESERVED_REMOTE_NAMES = frozenset({"engine", "locks"})

_SAFE_SEGMENT = re.compile(r"^[A-Za-z0-9][A-Za-z0-9._+\-]*$")


def _check_segment(segment: str) -> str:
    if not segment or segment in (".", "..") or not _SAFE_SEGMENT.match(segment):
        raise InvalidVersionError(f"unsafe path segment: {segment!r}")
    return segment


@dataclass(frozen=True)
class CacheLayout:
    """
    On-disk layout under the cache root:

      <root>/shared/<remote>/          bare mirror per remote
      <root>/shared/engine/<hash>/     deduplicated engine payloads
      <root>/shared/locks/             per-remote mirror locks
      <root>/versions/<version>/       working trees (forks: versions/<alias>/<version>)
      <root>/config.json               global config
    """

    root: Path

    @property
    def shared_dir(self) -> Path:
        return self.root / "shared"

    @property
    def engine_dir(self) -> Path:
        return self.shared_dir / "engine"

    @property
    def engine_staging_dir(self) -> Path:
        return self.engine_dir / ".staging"

    @property
    def engine_locks_dir(self) -> Path:
        return self.engine_dir / ".locks"

    @property
    def mirror_locks_dir(self) -> Path:
        return self.shared_dir / "locks"

    @property
    def versions_dir(self) -> Path:
        return self.root / "versions"

    @property
    def registry_file(self) -> Path:
        return self.shared_dir / "installations.json"

    @property
    def global_config_file(self) -> Path:
        return self.root / "config.json"

    def mirror_dir(self, remote_name: str) -> Path:
        if remote_name in RESERVED_REMOTE_NAMES:
            raise InvalidVersionError(f"reserved remote name: {remote_name!r}")
        return self.shared_dir / _check_segment(remote_name)

    def mirror_lock_file(self, remote_name: str) -> Path:
        return self.mirror_locks_dir / f"{_check_segment(remote_name)}.lock"

    def engine_hash_dir(self, engine_hash: str) -> Path:
        return self.engine_dir / _check_segment(engine_hash)

    def engine_lock_file(self, engine_hash: str) -> Path:
        return self.engine_locks_dir / f"{_check_segment(engine_hash)}.lock"

    def version_dir(self, name: str, fork: str | None = None) -> Path:
        if fork:
            return self.versions_dir / _check_segment(fork) / _check_segment(name)
        return self.versions_dir / _check_segment(name)


def engine_cache_dir(installation_path: Path) -> Path:
    return installation_path.joinpath(*ENGINE_CACHE_SUBDIR)


def engine_link_path(installation_path: Path) -> Path:
    return engine_cache_dir(installation_path) / ENGINE_LINK_NAME
