# sdkvm/core/engine/cache.py

from __future__ import annotations

import json
import logging
import os
import re
import shutil
import stat
import threading
import uuid
import zipfile
from contextlib import contextmanager
from dataclasses import dataclass, field
from pathlib import Path, PurePosixPath
from typing import Callable, Dict, Iterable, Iterator, List, Optional, Set, Tuple

from sdkvm.core.errors import (
    ConfigError,
    DownloadError,
    IntegrityError,
    LinkError,
    LockContentionError,
)
from sdkvm.core.events import EventBus, now_utc_iso
from sdkvm.core.locking import ExclusiveFileLock
from sdkvm.core.observability.metrics import record_cache_lookup, record_download
from sdkvm.core.paths import (
    MARKER_FILES,
    CacheLayout,
    engine_cache_dir,
    engine_link_path,
)
from sdkvm.core.retry import retry_call
from sdkvm.core.versions.models import Version

from .download import DownloadedFile, HttpDownloader
from .links import DirectoryLinkBackend, select_link_backend
from .manifest import EngineManifestSource
from .platform import Platform

_log = logging.getLogger("sdkvm.engine")

ENGINE_METADATA_FILE = ".sdkvm-engine.json"
ARCHIVE_ROOT = "dart-sdk/"

_ENGINE_HASH = re.compile(r"^[0-9a-f]{7,64}$")

# expected sha256 of an archive, when the distribution publishes one
ChecksumLookup = Callable[[str, Platform], Optional[str]]


@dataclass(frozen=True)
class Engine:
    platform: Platform
    hash: str
    path: Path


@dataclass
class EngineCleanupResult:
    removed_engines: List[str] = field(default_factory=list)
    failed_removals: List[Tuple[str, str]] = field(default_factory=list)  # (hash, reason)

    def to_dict(self) -> Dict[str, object]:
        return {
            "removed_engines": list(self.removed_engines),
            "failed_removals": [{"hash": h, "reason": r} for h, r in self.failed_removals],
        }


class EngineCache:
    """
    Content-addressed engine store shared by every installation.

      shared/engine/<hash>/            complete, verified payload (write-once)
      shared/engine/.staging/          in-flight downloads and extractions
      shared/engine/.locks/<hash>.lock per-hash cross-process lock

    A payload is published by a single directory rename after verification;
    a directory without a matching metadata file is never treated as an engine.
    """

    def __init__(
        self,
        layout: CacheLayout,
        *,
        platform: Platform,
        storage_base_url: str,
        manifest_source: Optional[EngineManifestSource] = None,
        downloader: Optional[HttpDownloader] = None,
        link_backend: Optional[DirectoryLinkBackend] = None,
        events: Optional[EventBus] = None,
        checksums: Optional[ChecksumLookup] = None,
        download_timeout: Optional[float] = 120.0,
        download_attempts: int = 3,
        download_backoff: float = 1.0,
        lock_timeout: float = 600.0,
        lock_stale_after: float = 3600.0,
    ):
        self.layout = layout
        self.platform = platform
        self.storage_base_url = storage_base_url.rstrip("/")
        self.manifest_source = manifest_source
        self.downloader = downloader or HttpDownloader()
        self.link_backend = link_backend or select_link_backend()
        self.events = events or EventBus()
        self.checksums = checksums
        self.download_timeout = download_timeout
        self.download_attempts = download_attempts
        self.download_backoff = download_backoff
        self.lock_timeout = lock_timeout
        self.lock_stale_after = lock_stale_after

        self._hash_locks: Dict[str, threading.Lock] = {}
        self._hash_locks_lock = threading.Lock()

    # ----------------------------------------
    # Keys / paths
    # ----------------------------------------
    def compute_hash(self, version: Version, platform: Optional[Platform] = None) -> str:
        """
        Cache key of the version's engine, taken from its engine manifest.

        The key is the engine revision; payloads differ per platform, but one
        cache only ever holds the host platform's payloads.
        """
        if self.manifest_source is None:
            raise IntegrityError("no engine manifest source configured")
        text = self.manifest_source.read_engine_manifest(version)
        return self.parse_manifest(text, version=version.name)

    @staticmethod
    def parse_manifest(text: Optional[str], *, version: str = "") -> str:
        h = (text or "").strip().lower()
        if not _ENGINE_HASH.match(h):
            raise IntegrityError(
                f"invalid engine manifest for {version or 'version'}: {h[:80]!r}",
                details={"version": version},
            )
        return h

    def engine_url(self, engine_hash: str, platform: Optional[Platform] = None) -> str:
        p = platform or self.platform
        return f"{self.storage_base_url}/flutter/{engine_hash}/dart-sdk-{p.engine_os}-{p.arch}.zip"

    def engine_path(self, engine_hash: str) -> Path:
        return self.layout.engine_hash_dir(engine_hash)

    def is_complete(self, engine_dir: Path, engine_hash: Optional[str] = None) -> bool:
        meta = engine_dir / ENGINE_METADATA_FILE
        if not engine_dir.is_dir() or not meta.is_file():
            return False
        try:
            data = json.loads(meta.read_text(encoding="utf-8"))
        except (OSError, json.JSONDecodeError):
            return False
        expected = engine_hash or engine_dir.name
        if not isinstance(data, dict) or data.get("hash") != expected:
            return False
        return data.get("platform", self.platform.id) == self.platform.id

    def list_engines(self) -> List[Engine]:
        root = self.layout.engine_dir
        if not root.is_dir():
            return []
        out = []
        for entry in sorted(root.iterdir()):
            if entry.name.startswith(".") or not self.is_complete(entry):
                continue
            out.append(Engine(platform=self.platform, hash=entry.name, path=entry))
        return out

    # ----------------------------------------
    # Locks
    # ----------------------------------------
    def _hash_lock(self, engine_hash: str) -> threading.Lock:
        with self._hash_locks_lock:
            return self._hash_locks.setdefault(engine_hash, threading.Lock())

    def _file_lock(self, engine_hash: str, timeout: Optional[float] = None) -> ExclusiveFileLock:
        return ExclusiveFileLock(
            self.layout.engine_lock_file(engine_hash),
            timeout=self.lock_timeout if timeout is None else timeout,
            stale_after=self.lock_stale_after,
            on_stale=lambda p, holder: self.events.emit(
                "LockBrokenStale", engine_hash, path=str(p), holder=holder
            ),
        )

    @contextmanager
    def _guard(self, engine_hash: str) -> Iterator[None]:
        with self._hash_lock(engine_hash):
            with self._file_lock(engine_hash):
                yield

    # ----------------------------------------
    # Ensure
    # ----------------------------------------
    def ensure_engine(self, engine_hash: str, platform: Optional[Platform] = None) -> Engine:
        """
        Return the cached engine, downloading and publishing it on a miss.

        Concurrent calls for one hash coalesce: later callers block on the
        per-hash guard and then observe the published directory as a hit.
        Payloads are keyed by hash alone, so only the host platform is served.
        """
        p = platform or self.platform
        if p != self.platform:
            raise ConfigError(
                f"engine cache holds {self.platform.id} payloads, not {p.id}",
                details={"platform": p.id, "host": self.platform.id},
            )
        final = self.engine_path(engine_hash)

        if self.is_complete(final, engine_hash):
            return self._hit(engine_hash, p, final)

        with self._guard(engine_hash):
            if self.is_complete(final, engine_hash):
                return self._hit(engine_hash, p, final)
            record_cache_lookup(False)
            if final.exists():
                _log.warning("Discarding incomplete engine directory %s", final)
                self._discard(final)
            self._download_and_publish(engine_hash, p, final)

        return Engine(platform=p, hash=engine_hash, path=final)

    def _hit(self, engine_hash: str, platform: Platform, final: Path) -> Engine:
        record_cache_lookup(True)
        self.events.emit("EngineCacheHit", engine_hash, path=str(final))
        return Engine(platform=platform, hash=engine_hash, path=final)

    def _download_and_publish(self, engine_hash: str, platform: Platform, final: Path) -> None:
        staging = self.layout.engine_staging_dir
        staging.mkdir(parents=True, exist_ok=True)
        token = uuid.uuid4().hex[:12]
        archive = staging / f"{engine_hash}-{token}.zip"
        extract_dir = staging / f"{engine_hash}-{token}"
        url = self.engine_url(engine_hash, platform)

        self.events.emit("EngineDownloadStarted", engine_hash, url=url)
        try:
            downloaded = self._download(url, archive, engine_hash)
            self._verify_checksum(engine_hash, platform, downloaded)
            self._extract(archive, extract_dir)
            (extract_dir / ENGINE_METADATA_FILE).write_text(
                json.dumps(
                    {
                        "hash": engine_hash,
                        "platform": platform.id,
                        "url": url,
                        "size": downloaded.size,
                        "sha256": downloaded.sha256,
                        "created_at": now_utc_iso(),
                    },
                    indent=2,
                    sort_keys=True,
                ),
                encoding="utf-8",
            )
            final.parent.mkdir(parents=True, exist_ok=True)
            os.rename(extract_dir, final)
        except IntegrityError:
            record_download("integrity_error")
            raise
        except DownloadError:
            record_download("error")
            raise
        except OSError as e:
            record_download("error")
            raise DownloadError(
                f"engine {engine_hash} could not be stored: {e}",
                retryable=False,
                details={"url": url, "hash": engine_hash, "errno": e.errno},
            ) from e
        finally:
            if archive.exists():
                archive.unlink()
            if extract_dir.exists():
                shutil.rmtree(extract_dir, ignore_errors=True)

        record_download("ok")
        _log.debug("Published engine %s at %s", engine_hash, final)
        self.events.emit("EnginePublished", engine_hash, path=str(final), size=downloaded.size)

    def _download(self, url: str, archive: Path, engine_hash: str) -> DownloadedFile:
        def _on_retry(attempt: int, exc: BaseException, wait: float) -> None:
            record_download("retry")
            self.events.emit("EngineDownloadRetry", engine_hash, attempt=attempt, error=str(exc), wait=wait)

        try:
            return retry_call(
                lambda: self.downloader.download(url, archive, timeout=self.download_timeout),
                exceptions=(DownloadError,),
                attempts=self.download_attempts,
                delay=self.download_backoff,
                should_retry=lambda e: getattr(e, "retryable", True),
                on_retry=_on_retry,
            )
        except DownloadError as e:
            raise DownloadError(
                f"engine {engine_hash} download failed after retries: {e}",
                retryable=False,
                details={"url": url, "hash": engine_hash, **e.details},
            ) from e

    def _verify_checksum(self, engine_hash: str, platform: Platform, downloaded: DownloadedFile) -> None:
        if self.checksums is None:
            return
        expected = self.checksums(engine_hash, platform)
        if expected and expected.lower() != downloaded.sha256:
            raise IntegrityError(
                f"sha256 mismatch for engine {engine_hash}",
                details={"expected": expected, "actual": downloaded.sha256},
            )

    @staticmethod
    def _extract(archive: Path, dest: Path) -> None:
        """Extract the `dart-sdk/` root of the archive into `dest`, keeping unix modes."""
        try:
            zf = zipfile.ZipFile(archive)
        except zipfile.BadZipFile as e:
            raise IntegrityError(f"engine archive is not a valid zip: {e}") from e

        with zf:
            bad = zf.testzip()
            if bad is not None:
                raise IntegrityError(f"engine archive member failed CRC check: {bad}")

            dest.mkdir(parents=True, exist_ok=True)
            root = dest.resolve()
            extracted = 0
            for info in zf.infolist():
                if not info.filename.startswith(ARCHIVE_ROOT):
                    continue
                rel = info.filename[len(ARCHIVE_ROOT):]
                if not rel:
                    continue
                rel_path = PurePosixPath(rel)
                if rel_path.is_absolute() or ".." in rel_path.parts:
                    raise IntegrityError(f"unsafe path in engine archive: {info.filename}")
                out = dest.joinpath(*rel_path.parts)
                if not out.resolve().is_relative_to(root):
                    raise IntegrityError(f"unsafe path in engine archive: {info.filename}")

                mode = (info.external_attr >> 16) & 0o7777
                if info.is_dir():
                    out.mkdir(parents=True, exist_ok=True)
                    continue
                out.parent.mkdir(parents=True, exist_ok=True)
                with zf.open(info) as src, open(out, "wb") as dst:
                    shutil.copyfileobj(src, dst)
                if mode and os.name == "posix":
                    os.chmod(out, stat.S_IMODE(mode))
                extracted += 1

        if extracted == 0:
            raise IntegrityError(f"engine archive has no {ARCHIVE_ROOT} entries")

    def _discard(self, path: Path) -> None:
        trash = self.layout.engine_staging_dir / f"trash-{path.name}-{uuid.uuid4().hex[:8]}"
        trash.parent.mkdir(parents=True, exist_ok=True)
        os.rename(path, trash)
        shutil.rmtree(trash, ignore_errors=True)

    # ----------------------------------------
    # Links / markers
    # ----------------------------------------
    def linked_hash(self, installation_path: Path) -> Optional[str]:
        """Hash of the engine the installation's link resolves to, if it is ours."""
        target = self.link_backend.read_link(engine_link_path(installation_path))
        if target is None:
            return None
        try:
            if target.resolve().parent != self.layout.engine_dir.resolve():
                return None
        except OSError:
            return None
        return target.name

    def stamped_hash(self, installation_path: Path) -> Optional[str]:
        p = engine_cache_dir(installation_path) / MARKER_FILES[0]
        try:
            return p.read_text(encoding="utf-8").strip() or None
        except OSError:
            return None

    def is_ready(self, installation_path: Path) -> bool:
        cache_dir = engine_cache_dir(installation_path)
        if not all((cache_dir / m).is_file() for m in MARKER_FILES):
            return False
        h = self.linked_hash(installation_path)
        if h is None or self.stamped_hash(installation_path) != h:
            return False
        return self.is_complete(self.engine_path(h), h)

    def invalidate_markers(self, installation_path: Path) -> bool:
        cache_dir = engine_cache_dir(installation_path)
        removed = False
        for m in MARKER_FILES:
            p = cache_dir / m
            if p.exists():
                p.unlink()
                removed = True
        if removed:
            self.events.emit("MarkersInvalidated", str(installation_path))
        return removed

    def unlink(self, installation_path: Path) -> bool:
        """Drop markers, then the engine link. The engine itself stays cached."""
        self.invalidate_markers(installation_path)
        return self.link_backend.remove_link(engine_link_path(installation_path))

    def publish_link(self, installation_path: Path, engine_dir: Path) -> None:
        """
        Link `<installation>/bin/cache/dart-sdk` to `engine_dir`, then write the
        markers. Markers are removed before any link change and written only
        after the link is confirmed to resolve to a complete engine.
        """
        engine_hash = engine_dir.name
        link = engine_link_path(installation_path)

        with self._guard(engine_hash):
            if not self.is_complete(engine_dir, engine_hash):
                raise LinkError(
                    f"engine {engine_hash} is not a complete cached engine",
                    details={"engine_dir": str(engine_dir), "reason": "engine_missing"},
                )

            if not self.link_backend.points_to(link, engine_dir):
                self.invalidate_markers(installation_path)
                self.link_backend.publish_directory_link(engine_dir, link)

            if not self.link_backend.points_to(link, engine_dir):
                raise LinkError(
                    f"link {link} does not resolve to {engine_dir}",
                    details={"link": str(link), "engine_dir": str(engine_dir)},
                )

            self._write_markers(installation_path, engine_hash)

        self.events.emit("EngineLinked", str(installation_path), hash=engine_hash, link=str(link))

    @staticmethod
    def _write_markers(installation_path: Path, engine_hash: str) -> None:
        cache_dir = engine_cache_dir(installation_path)
        contents = {
            "engine.stamp": engine_hash,
            "engine-dart-sdk.stamp": engine_hash,
            "engine.realm": "",
        }
        for name in MARKER_FILES:
            tmp = cache_dir / f".{name}.tmp"
            tmp.write_text(contents[name], encoding="utf-8")
            os.replace(tmp, cache_dir / name)

    # ----------------------------------------
    # Cleanup
    # ----------------------------------------
    def referenced_hashes(self, live_installations: Iterable[Path]) -> Set[str]:
        live: Set[str] = set()
        for p in live_installations:
            h = self.linked_hash(p)
            if h:
                live.add(h)
        return live

    def cleanup_unused(self, live_installations: Iterable[Path]) -> EngineCleanupResult:
        """
        Remove every cached engine no live installation links to.

        Individual failures (including engines locked by an in-flight install)
        are reported and skipped.
        """
        live_paths = list(live_installations)
        result = EngineCleanupResult()
        root = self.layout.engine_dir
        if not root.is_dir():
            return result

        live = self.referenced_hashes(live_paths)
        _log.debug("%d engine hash(es) in use", len(live))

        for entry in sorted(root.iterdir()):
            if entry.name.startswith(".") or not entry.is_dir() or entry.is_symlink():
                continue
            h = entry.name
            if h in live:
                continue
            try:
                self._remove_unused(h, entry, live_paths)
            except LockContentionError:
                reason = "engine is locked by an in-flight operation"
                result.failed_removals.append((h, reason))
                self.events.emit("EngineRemovalFailed", h, reason=reason)
                continue
            except _StillReferenced:
                continue
            except OSError as e:
                _log.warning("Failed to remove engine %s: %s", h, e)
                result.failed_removals.append((h, str(e)))
                self.events.emit("EngineRemovalFailed", h, reason=str(e))
                continue
            result.removed_engines.append(h)
            self.events.emit("EngineRemoved", h)

        return result

    def _remove_unused(self, engine_hash: str, entry: Path, live_paths: List[Path]) -> None:
        lock = self._hash_lock(engine_hash)
        if not lock.acquire(blocking=False):
            raise LockContentionError(f"engine {engine_hash} is busy")
        try:
            with self._file_lock(engine_hash, timeout=0):
                # A link may have been published since the live set was computed.
                if engine_hash in self.referenced_hashes(live_paths):
                    raise _StillReferenced(engine_hash)
                self._discard(entry)
        finally:
            lock.release()


class _StillReferenced(Exception):
    pass
