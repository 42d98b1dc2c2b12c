"""
Release catalog client.

Reads the SDK's published release index:

    <storage-base>/releases/releases_<os>.json

    {
      "current_release": {"stable": "<commit>", "beta": "<commit>", "dev": "<commit>"},
      "releases": [
        {"hash": "<commit>", "channel": "stable", "version": "3.24.0",
         "dart_sdk_version": "3.5.0", "release_date": "2024-08-06T..."},
        ...
      ]
    }

Releases are de-duplicated by commit hash (first occurrence wins, the index is
newest-first). The parsed index is cached in memory for `ttl_seconds`.
"""
from __future__ import annotations

import logging
import threading
import time
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional

import requests

from sdkvm.core.errors import CatalogError

from .models import ReleaseInfo

_log = logging.getLogger("sdkvm.catalog")

CHANNELS = ("stable", "beta", "dev")


def _parse_date(raw: Any) -> Optional[datetime]:
    if not raw:
        return None
    try:
        return datetime.fromisoformat(str(raw).replace("Z", "+00:00"))
    except ValueError:
        return None


@dataclass
class CatalogIndex:
    releases: List[ReleaseInfo] = field(default_factory=list)
    current: Dict[str, ReleaseInfo] = field(default_factory=dict)

    @staticmethod
    def from_json(data: Dict[str, Any]) -> "CatalogIndex":
        if not isinstance(data, dict) or not isinstance(data.get("releases"), list):
            raise CatalogError("release index has no 'releases' list")

        seen = set()
        releases: List[ReleaseInfo] = []
        for r in data["releases"]:
            if not isinstance(r, dict) or not r.get("hash") or not r.get("version"):
                continue
            if r["hash"] in seen:
                continue
            seen.add(r["hash"])
            releases.append(
                ReleaseInfo(
                    hash=str(r["hash"]),
                    channel=str(r.get("channel") or ""),
                    version=str(r["version"]),
                    release_date=_parse_date(r.get("release_date")),
                    dart_sdk_version=r.get("dart_sdk_version"),
                )
            )

        by_hash = {r.hash: r for r in releases}
        current: Dict[str, ReleaseInfo] = {}
        for channel, commit in (data.get("current_release") or {}).items():
            rel = by_hash.get(str(commit))
            if rel is not None:
                current[str(channel)] = rel
            else:
                _log.warning("current %s release %s not present in releases list", channel, commit)

        return CatalogIndex(releases=releases, current=current)


class ReleaseCatalog:
    def __init__(
        self,
        storage_base_url: str,
        os_name: str,
        *,
        session: Optional[requests.Session] = None,
        timeout: float = 30.0,
        ttl_seconds: int = 300,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.storage_base_url = storage_base_url.rstrip("/")
        self.os_name = os_name
        self.session = session or requests.Session()
        self.timeout = timeout
        self.ttl_seconds = ttl_seconds
        self._clock = clock
        self._lock = threading.Lock()
        self._index: Optional[CatalogIndex] = None
        self._loaded_at = 0.0
        self.fetches = 0

    @classmethod
    def preloaded(cls, data: Dict[str, Any], os_name: str = "linux") -> "ReleaseCatalog":
        """Catalog that never hits the network (fixtures, offline use)."""
        cat = cls("file://offline", os_name, ttl_seconds=0)
        cat._index = CatalogIndex.from_json(data)
        cat.ttl_seconds = -1
        return cat

    @property
    def url(self) -> str:
        return f"{self.storage_base_url}/releases/releases_{self.os_name}.json"

    def _is_expired(self) -> bool:
        if self._index is None:
            return True
        if self.ttl_seconds < 0:
            return False
        return (self._clock() - self._loaded_at) > self.ttl_seconds

    def index(self) -> CatalogIndex:
        with self._lock:
            if self._is_expired():
                self._index = self._fetch()
                self._loaded_at = self._clock()
            return self._index

    def invalidate(self) -> None:
        with self._lock:
            if self.ttl_seconds >= 0:
                self._index = None

    def _fetch(self) -> CatalogIndex:
        _log.debug("Fetching release index from %s", self.url)
        self.fetches += 1
        try:
            resp = self.session.get(self.url, timeout=self.timeout)
            resp.raise_for_status()
            data = resp.json()
        except requests.RequestException as e:
            raise CatalogError(f"failed to fetch release index: {e}", details={"url": self.url}) from e
        except ValueError as e:
            raise CatalogError(f"invalid release index JSON: {e}", details={"url": self.url}) from e
        idx = CatalogIndex.from_json(data)
        _log.info("Release index fetched: %d release(s)", len(idx.releases))
        return idx

    # ----------------------------------------
    # Queries
    # ----------------------------------------
    def list_releases(self, channel: Optional[str] = None) -> List[ReleaseInfo]:
        releases = self.index().releases
        if channel in (None, "", "all"):
            return list(releases)
        return [r for r in releases if r.channel == channel]

    def find(self, version: str) -> Optional[ReleaseInfo]:
        for r in self.index().releases:
            if r.version == version:
                return r
        return None

    def current(self, channel: str) -> Optional[ReleaseInfo]:
        return self.index().current.get(channel)
