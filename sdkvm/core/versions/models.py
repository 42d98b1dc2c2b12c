from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Any, Dict, Optional


class VersionKind(str, Enum):
    COMMIT = "commit"
    RELEASE_TAG = "release-tag"
    CHANNEL = "channel"


@dataclass(frozen=True)
class Fork:
    alias: str
    url: str


@dataclass(frozen=True)
class Version:
    """
    A normalized version spec.

    `raw` is the version string without the fork prefix ("stable" for "acme/stable").
    `commit` is filled when the release catalog (or a full commit id) pins it;
    fork and branch specs are pinned later, by the mirror.
    """

    kind: VersionKind
    raw: str
    commit: Optional[str] = None
    fork: Optional[str] = None

    @property
    def is_fork_qualified(self) -> bool:
        return self.fork is not None

    @property
    def name(self) -> str:
        """Display/spec form, fork-qualified when applicable."""
        return f"{self.fork}/{self.raw}" if self.fork else self.raw

    @property
    def git_ref(self) -> str:
        if self.kind == VersionKind.RELEASE_TAG:
            return f"refs/tags/{self.raw}"
        if self.kind == VersionKind.CHANNEL:
            return self.commit or f"refs/heads/{self.raw}"
        return self.commit or self.raw

    @property
    def url_ref(self) -> str:
        """Ref usable in a raw-content URL."""
        return self.commit or self.raw

    def to_dict(self) -> Dict[str, Any]:
        return {
            "kind": self.kind.value,
            "raw": self.raw,
            "commit": self.commit,
            "fork": self.fork,
            "name": self.name,
        }


@dataclass(frozen=True)
class ReleaseInfo:
    hash: str
    channel: str
    version: str
    release_date: Optional[datetime] = None
    dart_sdk_version: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "hash": self.hash,
            "channel": self.channel,
            "version": self.version,
            "release_date": self.release_date.isoformat() if self.release_date else None,
            "dart_sdk_version": self.dart_sdk_version,
        }
