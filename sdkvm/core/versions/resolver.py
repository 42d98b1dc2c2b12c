# sdkvm/core/versions/resolver.py

from __future__ import annotations

import logging
import re
from typing import Iterable, Mapping, Optional, Union

from sdkvm.core.errors import CatalogError, InvalidVersionError, UnknownForkError

from .catalog import CHANNELS, ReleaseCatalog
from .models import Fork, ReleaseInfo, Version, VersionKind

_log = logging.getLogger("sdkvm.versions")

# Catalog channels plus the development branches that are never in the catalog.
CHANNEL_NAMES = frozenset(CHANNELS) | {"main", "master"}

_FULL_COMMIT = re.compile(r"^[0-9a-f]{40}$")
_SHORT_COMMIT = re.compile(r"^[0-9a-f]{7,39}$")
_RELEASE_TAG = re.compile(r"^v?\d+\.\d+\.\d+(?:[-+.][0-9A-Za-z.+\-]+)?$")
_FORK_QUALIFIED = re.compile(r"^([A-Za-z0-9][A-Za-z0-9_\-]*)/([^/]+)$")

ForkTable = Union[Mapping[str, str], Iterable[Fork]]


def _fork_map(forks: Optional[ForkTable]) -> Mapping[str, str]:
    if forks is None:
        return {}
    if isinstance(forks, Mapping):
        return forks
    return {f.alias: f.url for f in forks}


class VersionResolver:
    """
    Classifies version specs:

      3.24.0 / v1.22.6+hotfix.1   release tag (validated against the catalog)
      stable / beta / dev         channel (pinned to the catalog's current commit)
      main / master               channel branch (pinned later by the mirror)
      <7-40 hex chars>            commit
      <alias>/<any of the above>  fork-qualified; the catalog is not consulted

    With `strict_catalog=False` an unreachable catalog degrades to unpinned
    tags and channels; git validates them when the working tree is created.
    """

    def __init__(self, catalog: Optional[ReleaseCatalog] = None, *, strict_catalog: bool = False):
        self.catalog = catalog
        self.strict_catalog = strict_catalog

    def resolve(self, spec: str, forks: Optional[ForkTable] = None) -> Version:
        s = (spec or "").strip()
        if not s:
            raise InvalidVersionError("empty version spec")

        if "/" in s:
            return self._resolve_fork(s, _fork_map(forks))

        if _FULL_COMMIT.match(s):
            return Version(kind=VersionKind.COMMIT, raw=s, commit=s)

        if s in CHANNEL_NAMES:
            rel = self._catalog_lookup(lambda c: c.current(s)) if s in CHANNELS else None
            return Version(kind=VersionKind.CHANNEL, raw=s, commit=rel.hash if rel else None)

        if _RELEASE_TAG.match(s):
            return self._resolve_tag(s)

        if _SHORT_COMMIT.match(s):
            return Version(kind=VersionKind.COMMIT, raw=s)

        raise InvalidVersionError(f"unrecognized version spec: {s}", details={"spec": s})

    def _resolve_fork(self, s: str, forks: Mapping[str, str]) -> Version:
        m = _FORK_QUALIFIED.match(s)
        if not m:
            raise InvalidVersionError(f"unrecognized version spec: {s}", details={"spec": s})
        alias, rest = m.group(1), m.group(2)
        if alias not in forks:
            raise UnknownForkError(
                f"fork '{alias}' is not registered",
                details={"alias": alias, "known": sorted(forks)},
            )

        if _FULL_COMMIT.match(rest):
            return Version(kind=VersionKind.COMMIT, raw=rest, commit=rest, fork=alias)
        if rest in CHANNEL_NAMES:
            return Version(kind=VersionKind.CHANNEL, raw=rest, fork=alias)
        if _RELEASE_TAG.match(rest):
            return Version(kind=VersionKind.RELEASE_TAG, raw=rest, fork=alias)
        if _SHORT_COMMIT.match(rest):
            return Version(kind=VersionKind.COMMIT, raw=rest, fork=alias)
        raise InvalidVersionError(f"unrecognized version spec: {s}", details={"spec": s, "fork": alias})

    def _resolve_tag(self, s: str) -> Version:
        if self.catalog is None:
            return Version(kind=VersionKind.RELEASE_TAG, raw=s)

        def _find(cat: ReleaseCatalog) -> Optional[ReleaseInfo]:
            rel = cat.find(s)
            if rel is None and s.startswith("v"):
                rel = cat.find(s[1:])
            if rel is None and not s.startswith("v"):
                rel = cat.find(f"v{s}")
            return rel

        try:
            rel = _find(self.catalog)
        except CatalogError:
            if self.strict_catalog:
                raise
            _log.warning("release catalog unavailable; resolving %s without it", s)
            return Version(kind=VersionKind.RELEASE_TAG, raw=s)

        if rel is None:
            raise InvalidVersionError(f"{s} is not a known release", details={"spec": s})
        return Version(kind=VersionKind.RELEASE_TAG, raw=rel.version, commit=rel.hash)

    def _catalog_lookup(self, fn) -> Optional[ReleaseInfo]:
        if self.catalog is None:
            return None
        try:
            return fn(self.catalog)
        except CatalogError:
            if self.strict_catalog:
                raise
            _log.warning("release catalog unavailable; channel left unpinned")
            return None
