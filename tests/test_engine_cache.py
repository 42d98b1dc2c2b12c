import errno
import json
import os
import stat
import threading
import time

import pytest

from sdkvm.core.engine.cache import ENGINE_METADATA_FILE, EngineCache
from sdkvm.core.engine.links import SymlinkBackend
from sdkvm.core.engine.platform import Platform
from sdkvm.core.errors import ConfigError, DownloadError, IntegrityError, LinkError
from sdkvm.core.events import EventBus
from sdkvm.core.locking import ExclusiveFileLock
from sdkvm.core.observability.metrics import snapshot_named
from sdkvm.core.paths import MARKER_FILES, CacheLayout, engine_cache_dir, engine_link_path
from sdkvm.core.versions.models import Version, VersionKind

pytestmark = pytest.mark.skipif(os.name != "posix", reason="uses the symlink backend")

LINUX = Platform(os="linux", arch="x64")


class _Manifests:
    def __init__(self, table):
        self.table = table

    def read_engine_manifest(self, version):
        return self.table[version.raw]


@pytest.fixture()
def layout(tmp_path):
    return CacheLayout(tmp_path / "cache")


@pytest.fixture()
def cache(layout, downloader, recorder):
    bus = EventBus()
    bus.subscribe(recorder)
    return EngineCache(
        layout,
        platform=LINUX,
        storage_base_url="https://storage.example.com/infra/",
        manifest_source=_Manifests({"3.24.0": "abcd1234\n", "bad": "<html>oops</html>"}),
        downloader=downloader,
        link_backend=SymlinkBackend(),
        events=bus,
        download_backoff=0.0,
        lock_timeout=10,
    )


def _tree(layout, name):
    p = layout.version_dir(name)
    p.mkdir(parents=True)
    return p


def test_engine_url_per_platform(cache):
    assert cache.engine_url("abcd1234") == (
        "https://storage.example.com/infra/flutter/abcd1234/dart-sdk-linux-x64.zip"
    )
    assert cache.engine_url("abcd1234", Platform(os="macos", arch="arm64")).endswith("dart-sdk-darwin-arm64.zip")


def test_compute_hash_from_manifest(cache):
    assert cache.compute_hash(Version(kind=VersionKind.RELEASE_TAG, raw="3.24.0")) == "abcd1234"
    with pytest.raises(IntegrityError):
        cache.compute_hash(Version(kind=VersionKind.RELEASE_TAG, raw="bad"))


def test_miss_then_hit(cache, downloader, layout, recorder):
    e1 = cache.ensure_engine("abcd1234")
    assert e1.path == layout.engine_dir / "abcd1234"
    assert (e1.path / "version").read_text().strip() == "abcd1234"
    assert stat.S_IMODE((e1.path / "bin" / "dart").stat().st_mode) == 0o755
    meta = json.loads((e1.path / ENGINE_METADATA_FILE).read_text())
    assert meta["hash"] == "abcd1234" and meta["platform"] == "linux-x64"
    assert list(layout.engine_staging_dir.iterdir()) == []

    e2 = cache.ensure_engine("abcd1234")
    assert e2 == e1
    assert downloader.calls["abcd1234"] == 1
    assert len(recorder.of_type("EnginePublished")) == 1
    assert len(recorder.of_type("EngineCacheHit")) == 1
    snap = snapshot_named()
    assert snap["engine_cache_miss"] == 1
    assert snap["engine_cache_hit"] == 1


def test_same_hash_requests_coalesce(cache, downloader):
    downloader.gate = threading.Event()
    results = []

    def _get():
        results.append(cache.ensure_engine("abcd1234"))

    threads = [threading.Thread(target=_get) for _ in range(4)]
    for t in threads:
        t.start()
    assert downloader.started.wait(timeout=5)
    time.sleep(0.1)
    downloader.gate.set()
    for t in threads:
        t.join(timeout=10)

    assert len(results) == 4
    assert len({r.path for r in results}) == 1
    assert downloader.calls["abcd1234"] == 1


def test_distinct_hashes_download_in_parallel(cache, downloader):
    downloader.gate = threading.Event()
    threads = [threading.Thread(target=cache.ensure_engine, args=(h,)) for h in ("abcd1234", "ef567890")]
    for t in threads:
        t.start()

    deadline = time.monotonic() + 5
    while downloader.total < 2 and time.monotonic() < deadline:
        time.sleep(0.01)
    # both downloads are in flight before either is released
    assert downloader.total == 2
    downloader.gate.set()
    for t in threads:
        t.join(timeout=10)
    assert {e.hash for e in cache.list_engines()} == {"abcd1234", "ef567890"}


def test_transient_failures_are_retried(cache, downloader, recorder):
    downloader.failures["abcd1234"] = 2
    cache.ensure_engine("abcd1234")
    assert downloader.calls["abcd1234"] == 3
    assert [e.payload["attempt"] for e in recorder.of_type("EngineDownloadRetry")] == [1, 2]


def test_retry_exhaustion_leaves_nothing_behind(cache, downloader, layout):
    downloader.failures["abcd1234"] = 10
    with pytest.raises(DownloadError) as ei:
        cache.ensure_engine("abcd1234")
    assert ei.value.retryable is False
    assert downloader.calls["abcd1234"] == 3
    assert not (layout.engine_dir / "abcd1234").exists()
    assert list(layout.engine_staging_dir.iterdir()) == []


def test_permanent_errors_are_not_retried(cache, downloader):
    downloader.missing.add("abcd1234")
    with pytest.raises(DownloadError):
        cache.ensure_engine("abcd1234")
    assert downloader.calls["abcd1234"] == 1


def test_local_write_failure_is_a_typed_error(cache, downloader, layout, monkeypatch):
    def _disk_full(url, dest, *, timeout=None):
        downloader.calls["abcd1234"] += 1
        raise OSError(errno.ENOSPC, "No space left on device")

    monkeypatch.setattr(downloader, "download", _disk_full)
    with pytest.raises(DownloadError) as ei:
        cache.ensure_engine("abcd1234")
    assert ei.value.retryable is False
    assert ei.value.details["errno"] == errno.ENOSPC
    assert downloader.calls["abcd1234"] == 1
    assert not (layout.engine_dir / "abcd1234").exists()
    assert list(layout.engine_staging_dir.iterdir()) == []


def test_foreign_platform_is_rejected(cache, downloader):
    with pytest.raises(ConfigError):
        cache.ensure_engine("abcd1234", Platform(os="macos", arch="arm64"))
    assert downloader.total == 0

    e = cache.ensure_engine("abcd1234", LINUX)
    assert e.platform == LINUX


def test_payload_of_another_platform_is_not_complete(cache, layout):
    e = cache.ensure_engine("abcd1234")
    meta = e.path / ENGINE_METADATA_FILE
    data = json.loads(meta.read_text())
    data["platform"] = "darwin-arm64"
    meta.write_text(json.dumps(data))
    assert not cache.is_complete(e.path)
    assert cache.list_engines() == []


def test_corrupt_archive_is_discarded_without_retry(cache, downloader, layout):
    downloader.corrupt.add("abcd1234")
    with pytest.raises(IntegrityError):
        cache.ensure_engine("abcd1234")
    assert downloader.calls["abcd1234"] == 1
    assert not (layout.engine_dir / "abcd1234").exists()
    assert list(layout.engine_staging_dir.iterdir()) == []


def test_checksum_mismatch(cache, downloader, layout):
    cache.checksums = lambda h, p: "0" * 64
    with pytest.raises(IntegrityError) as ei:
        cache.ensure_engine("abcd1234")
    assert ei.value.details["expected"] == "0" * 64
    assert not (layout.engine_dir / "abcd1234").exists()


def test_incomplete_engine_directory_is_replaced(cache, downloader, layout):
    partial = layout.engine_dir / "abcd1234"
    partial.mkdir(parents=True)
    (partial / "junk").write_text("x")
    assert not cache.is_complete(partial)

    e = cache.ensure_engine("abcd1234")
    assert cache.is_complete(e.path)
    assert not (e.path / "junk").exists()
    assert downloader.calls["abcd1234"] == 1


def test_publish_link_writes_markers_after_link(cache, layout):
    tree = _tree(layout, "3.24.0")
    engine = cache.ensure_engine("abcd1234")
    cache.publish_link(tree, engine.path)

    link = engine_link_path(tree)
    assert link.is_symlink()
    assert link.resolve() == engine.path.resolve()
    cdir = engine_cache_dir(tree)
    assert (cdir / "engine.stamp").read_text() == "abcd1234"
    assert (cdir / "engine-dart-sdk.stamp").read_text() == "abcd1234"
    assert (cdir / "engine.realm").read_text() == ""
    assert cache.is_ready(tree)
    assert cache.linked_hash(tree) == "abcd1234"


def test_link_to_incomplete_engine_fails_without_markers(cache, layout):
    tree = _tree(layout, "3.24.0")
    missing = layout.engine_dir / "abcd1234"
    missing.mkdir(parents=True)

    with pytest.raises(LinkError) as ei:
        cache.publish_link(tree, missing)
    assert ei.value.details["reason"] == "engine_missing"
    assert not any((engine_cache_dir(tree) / m).exists() for m in MARKER_FILES)
    assert not cache.is_ready(tree)


def test_relink_replaces_markers(cache, layout, recorder):
    tree = _tree(layout, "3.24.0")
    a = cache.ensure_engine("abcd1234")
    b = cache.ensure_engine("ef567890")
    cache.publish_link(tree, a.path)
    cache.publish_link(tree, b.path)

    assert cache.linked_hash(tree) == "ef567890"
    assert cache.stamped_hash(tree) == "ef567890"
    assert len(recorder.of_type("MarkersInvalidated")) == 1


def test_removed_engine_makes_tree_not_ready(cache, layout):
    tree = _tree(layout, "3.24.0")
    e = cache.ensure_engine("abcd1234")
    cache.publish_link(tree, e.path)
    (e.path / ENGINE_METADATA_FILE).unlink()
    assert not cache.is_ready(tree)


def test_interrupted_download_never_writes_markers(cache, downloader, layout):
    tree = _tree(layout, "3.24.0")
    downloader.failures["abcd1234"] = 10
    with pytest.raises(DownloadError):
        cache.ensure_engine("abcd1234")
    assert not any((engine_cache_dir(tree) / m).exists() for m in MARKER_FILES)
    assert cache.linked_hash(tree) is None


def test_cleanup_removes_only_unreferenced(cache, layout, recorder):
    a = cache.ensure_engine("abcd1234")
    cache.ensure_engine("ef567890")
    t1 = _tree(layout, "3.24.0")
    t2 = _tree(layout, "3.27.0")
    cache.publish_link(t1, a.path)
    cache.publish_link(t2, a.path)

    result = cache.cleanup_unused([t1, t2])
    assert result.removed_engines == ["ef567890"]
    assert result.failed_removals == []
    assert a.path.is_dir()

    # one reference left: still kept
    cache.unlink(t1)
    assert cache.cleanup_unused([t2]).removed_engines == []
    cache.unlink(t2)
    assert cache.cleanup_unused([]).removed_engines == ["abcd1234"]
    assert cache.list_engines() == []
    assert [e.subject for e in recorder.of_type("EngineRemoved")] == ["ef567890", "abcd1234"]


def test_cleanup_skips_locked_engine(cache, layout):
    cache.ensure_engine("abcd1234")
    cache.ensure_engine("ef567890")

    with ExclusiveFileLock(layout.engine_lock_file("abcd1234"), timeout=1):
        result = cache.cleanup_unused([])

    assert result.removed_engines == ["ef567890"]
    assert [h for h, _ in result.failed_removals] == ["abcd1234"]
    assert (layout.engine_dir / "abcd1234").is_dir()
    assert result.to_dict()["failed_removals"][0]["hash"] == "abcd1234"


def test_platform_detection():
    assert Platform.detect("linux", "x86_64") == LINUX
    assert Platform.detect("darwin", "arm64").id == "darwin-arm64"
    assert Platform.detect("win32", "AMD64") == Platform(os="windows", arch="x64")
    with pytest.raises(ConfigError):
        Platform.detect("sunos5", "sparc")
