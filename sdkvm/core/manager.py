# sdkvm/core/manager.py

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Optional

import requests

from sdkvm.core.config.config_store import ConfigStore
from sdkvm.core.engine.cache import EngineCache
from sdkvm.core.engine.download import HttpDownloader
from sdkvm.core.engine.links import DirectoryLinkBackend, select_link_backend
from sdkvm.core.engine.manifest import EngineManifestSource, github_raw_base
from sdkvm.core.engine.platform import Platform
from sdkvm.core.events import EventBus
from sdkvm.core.git_ops.git_runner import GitRunner
from sdkvm.core.git_ops.repository_store import Remote, RepositoryStore
from sdkvm.core.install.orchestrator import InstallationOrchestrator
from sdkvm.core.install.registry import InstallationRegistry
from sdkvm.core.paths import CacheLayout
from sdkvm.core.settings import DEFAULT_REMOTE_NAME, DEFAULT_REMOTE_URL, SdkSettings
from sdkvm.core.versions.catalog import ReleaseCatalog
from sdkvm.core.versions.resolver import VersionResolver

_log = logging.getLogger("sdkvm.manager")


@dataclass
class SdkManager:
    settings: SdkSettings
    layout: CacheLayout
    platform: Platform
    events: EventBus
    store: RepositoryStore
    cache: EngineCache
    catalog: ReleaseCatalog
    resolver: VersionResolver
    config_store: ConfigStore
    registry: InstallationRegistry
    orchestrator: InstallationOrchestrator

    def close(self) -> None:
        self.orchestrator.close()


def build_manager(
    settings: Optional[SdkSettings] = None,
    *,
    platform: Optional[Platform] = None,
    events: Optional[EventBus] = None,
    runner: Optional[GitRunner] = None,
    downloader: Optional[HttpDownloader] = None,
    catalog: Optional[ReleaseCatalog] = None,
    link_backend: Optional[DirectoryLinkBackend] = None,
    session: Optional[requests.Session] = None,
) -> SdkManager:
    """
    Wire the core from explicit settings. Every collaborator can be swapped
    (tests pass fake downloaders, catalogs and counting git runners).
    """
    s = settings or SdkSettings.from_env()
    plat = platform or Platform.detect()
    bus = events or EventBus()
    http = session or requests.Session()
    layout = CacheLayout(s.cache_root)
    default_remote = Remote(name=DEFAULT_REMOTE_NAME, url=s.remote_url)

    store = RepositoryStore(
        layout,
        runner=runner,
        events=bus,
        git_timeout=s.git_timeout,
        lock_timeout=s.lock_timeout,
        lock_stale_after=s.lock_stale_after,
        reference_cache=s.reference_cache,
    )
    config_store = ConfigStore(layout)

    def _remote_for(version) -> Remote:
        return orchestrator.remote_for(version)

    def _raw_base_for(remote: Remote) -> Optional[str]:
        if remote.name == DEFAULT_REMOTE_NAME and remote.url == DEFAULT_REMOTE_URL:
            return s.raw_content_base_url
        return github_raw_base(remote.url)

    manifest_source = EngineManifestSource(
        store,
        _remote_for,
        raw_base_for=_raw_base_for,
        session=http,
        timeout=s.catalog_timeout,
    )
    cache = EngineCache(
        layout,
        platform=plat,
        storage_base_url=s.storage_base_url,
        manifest_source=manifest_source,
        downloader=downloader or HttpDownloader(session=http),
        link_backend=link_backend or select_link_backend(),
        events=bus,
        download_timeout=s.download_timeout,
        download_attempts=s.download_attempts,
        download_backoff=s.download_backoff,
        lock_timeout=s.lock_timeout,
        lock_stale_after=s.lock_stale_after,
    )
    cat = catalog or ReleaseCatalog(
        s.storage_base_url,
        plat.os,
        session=http,
        timeout=s.catalog_timeout,
        ttl_seconds=s.catalog_ttl_seconds,
    )
    resolver = VersionResolver(cat)
    registry = InstallationRegistry(
        layout.registry_file,
        lock_timeout=s.lock_timeout,
        lock_stale_after=s.lock_stale_after,
    )
    orchestrator = InstallationOrchestrator(
        layout=layout,
        store=store,
        cache=cache,
        resolver=resolver,
        config_store=config_store,
        registry=registry,
        default_remote=default_remote,
        events=bus,
        max_workers=s.max_workers,
    )
    _log.debug("SDK manager ready (cache root %s, platform %s)", layout.root, plat.id)

    return SdkManager(
        settings=s,
        layout=layout,
        platform=plat,
        events=bus,
        store=store,
        cache=cache,
        catalog=cat,
        resolver=resolver,
        config_store=config_store,
        registry=registry,
        orchestrator=orchestrator,
    )
