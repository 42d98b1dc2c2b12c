from __future__ import annotations

import logging
import re
from pathlib import Path
from typing import Callable, Optional

import requests

from sdkvm.core.errors import DownloadError, ManifestUnavailableError
from sdkvm.core.git_ops.repository_store import Remote, RepositoryStore
from sdkvm.core.versions.models import Version

_log = logging.getLogger("sdkvm.engine")

ENGINE_MANIFEST_PATH = "bin/internal/engine.version"

_GITHUB_URL = re.compile(r"^(?:https://|git@)github\.com[/:]([^/]+)/([^/]+?)(?:\.git)?/?$")


def github_raw_base(url: str) -> Optional[str]:
    """https://github.com/o/r(.git) -> https://raw.githubusercontent.com/o/r"""
    m = _GITHUB_URL.match(url.strip())
    if not m:
        return None
    return f"https://raw.githubusercontent.com/{m.group(1)}/{m.group(2)}"


def read_tree_manifest(worktree: Path) -> Optional[str]:
    p = worktree / ENGINE_MANIFEST_PATH
    if not p.is_file():
        return None
    return p.read_text(encoding="utf-8")


class EngineManifestSource:
    """
    Reads a version's engine manifest without downloading the engine.

    Order: the local mirror (no network) when it already holds the ref, then
    the remote's raw-content URL. Remotes without a raw-content endpoint raise
    ManifestUnavailableError; the caller then reads it from the working tree.
    """

    def __init__(
        self,
        store: RepositoryStore,
        remote_for: Callable[[Version], Remote],
        *,
        raw_base_for: Optional[Callable[[Remote], Optional[str]]] = None,
        session: Optional[requests.Session] = None,
        timeout: float = 30.0,
    ):
        self.store = store
        self.remote_for = remote_for
        self.raw_base_for = raw_base_for or (lambda r: github_raw_base(r.url))
        self.session = session or requests.Session()
        self.timeout = timeout

    def read_engine_manifest(self, version: Version) -> str:
        remote = self.remote_for(version)

        text = self.store.read_file(remote, version.git_ref, ENGINE_MANIFEST_PATH)
        if text is not None:
            _log.debug("engine manifest for %s read from mirror %s", version.name, remote.name)
            return text

        base = self.raw_base_for(remote)
        if not base:
            raise ManifestUnavailableError(
                f"no raw-content endpoint for remote '{remote.name}'",
                details={"remote": remote.name, "version": version.name},
            )

        url = f"{base.rstrip('/')}/{version.url_ref}/{ENGINE_MANIFEST_PATH}"
        _log.debug("Fetching engine manifest from %s", url)
        try:
            resp = self.session.get(url, timeout=self.timeout)
        except requests.RequestException as e:
            raise DownloadError(f"failed to fetch engine manifest: {e}", details={"url": url}) from e
        if resp.status_code == 404:
            raise ManifestUnavailableError(
                f"engine manifest not found at {url}",
                details={"url": url, "version": version.name},
            )
        if resp.status_code >= 400:
            raise DownloadError(
                f"engine manifest fetch returned HTTP {resp.status_code}",
                details={"url": url, "status": resp.status_code},
            )
        return resp.text
