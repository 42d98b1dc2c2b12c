import hashlib
import io
import os
import re
import shutil
import subprocess
import threading
import zipfile
from collections import Counter
from pathlib import Path
from typing import Dict, List, Optional

import pytest
from fastapi.testclient import TestClient

from sdkvm.api.deps import get_manager
from sdkvm.api.main import app
from sdkvm.core.engine.download import DownloadedFile
from sdkvm.core.engine.platform import Platform
from sdkvm.core.errors import DownloadError
from sdkvm.core.events import EventBus, EventRecorder
from sdkvm.core.git_ops.git_runner import GitRunner
from sdkvm.core.manager import build_manager
from sdkvm.core.observability.metrics import reset_metrics
from sdkvm.core.settings import SdkSettings
from sdkvm.core.versions.catalog import ReleaseCatalog

HASH_A = "abcd1234"
HASH_B = "ef567890"

_GIT_ENV = {
    "GIT_AUTHOR_NAME": "sdkvm-tests",
    "GIT_AUTHOR_EMAIL": "tests@example.invalid",
    "GIT_COMMITTER_NAME": "sdkvm-tests",
    "GIT_COMMITTER_EMAIL": "tests@example.invalid",
    "GIT_CONFIG_NOSYSTEM": "1",
}


def git(cwd: Path, *args: str) -> str:
    env = {**os.environ, **_GIT_ENV}
    r = subprocess.run(
        ["git", "-c", "commit.gpgsign=false", "-c", "tag.gpgsign=false", *args],
        cwd=str(cwd),
        env=env,
        check=True,
        capture_output=True,
        text=True,
    )
    return r.stdout.strip()


def _commit(repo: Path, engine_hash: str, note: str) -> str:
    manifest = repo / "bin" / "internal" / "engine.version"
    manifest.parent.mkdir(parents=True, exist_ok=True)
    manifest.write_text(engine_hash + "\n", encoding="utf-8")
    (repo / "README.md").write_text(note + "\n", encoding="utf-8")
    git(repo, "add", ".")
    git(repo, "commit", "-q", "-m", note)
    return git(repo, "rev-parse", "HEAD")


@pytest.fixture(autouse=True)
def _reset_named_counters():
    reset_metrics()
    yield


@pytest.fixture(autouse=True)
def _isolated_env(monkeypatch):
    for k in list(os.environ):
        if k.startswith("SDKVM_"):
            monkeypatch.delenv(k, raising=False)


@pytest.fixture()
def upstream(tmp_path: Path) -> Dict[str, str]:
    """
    Local stand-in for the SDK repository:

      3.24.0  engine abcd1234
      3.27.0  engine abcd1234   (same engine as 3.24.0)
      3.29.0  engine ef567890   (also `stable` and `main`)
    """
    if shutil.which("git") is None:
        pytest.skip("git not available")

    repo = tmp_path / "upstream"
    repo.mkdir()
    git(repo, "init", "-q")
    git(repo, "symbolic-ref", "HEAD", "refs/heads/main")

    c1 = _commit(repo, HASH_A, "release 3.24.0")
    git(repo, "tag", "3.24.0")
    c2 = _commit(repo, HASH_A, "release 3.27.0")
    git(repo, "tag", "3.27.0")
    c3 = _commit(repo, HASH_B, "release 3.29.0")
    git(repo, "tag", "3.29.0")
    git(repo, "branch", "stable")

    return {"path": str(repo), "3.24.0": c1, "3.27.0": c2, "3.29.0": c3}


def add_release(upstream: Dict[str, str], tag: str, engine_hash: str) -> str:
    repo = Path(upstream["path"])
    c = _commit(repo, engine_hash, f"release {tag}")
    git(repo, "tag", tag)
    upstream[tag] = c
    return c


def catalog_data(upstream: Dict[str, str]) -> dict:
    releases = [
        {"hash": upstream["3.29.0"], "channel": "stable", "version": "3.29.0", "dart_sdk_version": "3.7.0",
         "release_date": "2025-02-12T00:00:00Z"},
        {"hash": upstream["3.27.0"], "channel": "stable", "version": "3.27.0", "dart_sdk_version": "3.6.0",
         "release_date": "2024-12-11T00:00:00Z"},
        {"hash": upstream["3.24.0"], "channel": "stable", "version": "3.24.0", "dart_sdk_version": "3.5.0",
         "release_date": "2024-08-06T00:00:00Z"},
        # duplicate entry for the same commit: dropped
        {"hash": upstream["3.24.0"], "channel": "beta", "version": "3.24.0-0.2.pre"},
    ]
    return {
        "current_release": {"stable": upstream["3.29.0"], "beta": upstream["3.24.0"]},
        "releases": releases,
    }


class CountingGitRunner(GitRunner):
    """GitRunner that records every invocation."""

    def __init__(self):
        super().__init__()
        self.calls: List[List[str]] = []
        self._lock = threading.Lock()

    def run(self, args, **kwargs):
        with self._lock:
            self.calls.append(list(args))
        return super().run(args, **kwargs)

    def count(self, op: str) -> int:
        with self._lock:
            return sum(1 for c in self.calls if c and c[0] == op)

    def reset(self) -> None:
        with self._lock:
            self.calls.clear()


def build_engine_zip(engine_hash: str) -> bytes:
    buf = io.BytesIO()
    with zipfile.ZipFile(buf, "w", zipfile.ZIP_DEFLATED) as zf:
        d = zipfile.ZipInfo("dart-sdk/bin/")
        d.external_attr = (0o40755 << 16) | 0x10
        zf.writestr(d, b"")
        exe = zipfile.ZipInfo("dart-sdk/bin/dart")
        exe.external_attr = 0o100755 << 16
        zf.writestr(exe, b"#!/bin/sh\necho dart\n")
        zf.writestr("dart-sdk/version", engine_hash + "\n")
    return buf.getvalue()


class FakeDownloader:
    """
    Stands in for HttpDownloader: serves engine archives built in memory.

    `failures[hash]`   number of retryable failures before success
    `missing`          hashes answered with a permanent (404-like) error
    `corrupt`          hashes served as a truncated archive
    `gate`             when set, downloads block until it is released
    """

    _URL_HASH = re.compile(r"/flutter/([0-9a-f]+)/dart-sdk-")

    def __init__(self):
        self.calls: Counter = Counter()
        self.failures: Counter = Counter()
        self.missing = set()
        self.corrupt = set()
        self.gate: Optional[threading.Event] = None
        self.started = threading.Event()
        self._lock = threading.Lock()

    @property
    def total(self) -> int:
        with self._lock:
            return sum(self.calls.values())

    def download(self, url: str, dest: Path, *, timeout=None) -> DownloadedFile:
        m = self._URL_HASH.search(url)
        assert m, url
        h = m.group(1)
        with self._lock:
            self.calls[h] += 1
        self.started.set()
        if self.gate is not None:
            self.gate.wait(timeout=10)

        if h in self.missing:
            raise DownloadError(f"HTTP 404 for {url}", retryable=False, details={"status": 404})
        with self._lock:
            if self.failures[h] > 0:
                self.failures[h] -= 1
                raise DownloadError(f"connection reset while fetching {url}")

        data = build_engine_zip(h)
        if h in self.corrupt:
            data = data[: len(data) // 2]
        dest.parent.mkdir(parents=True, exist_ok=True)
        dest.write_bytes(data)
        return DownloadedFile(path=dest, size=len(data), sha256=hashlib.sha256(data).hexdigest())


@pytest.fixture()
def downloader() -> FakeDownloader:
    return FakeDownloader()


@pytest.fixture()
def runner() -> CountingGitRunner:
    return CountingGitRunner()


@pytest.fixture()
def recorder() -> EventRecorder:
    return EventRecorder()


@pytest.fixture()
def settings(tmp_path: Path, upstream) -> SdkSettings:
    return SdkSettings(
        cache_root=tmp_path / "cache",
        remote_url=upstream["path"],
        git_timeout=60,
        download_backoff=0.0,
        lock_timeout=10,
        max_workers=4,
    )


@pytest.fixture()
def manager(settings, upstream, runner, downloader, recorder):
    bus = EventBus()
    bus.subscribe(recorder)
    m = build_manager(
        settings,
        platform=Platform(os="linux", arch="x64"),
        events=bus,
        runner=runner,
        downloader=downloader,
        catalog=ReleaseCatalog.preloaded(catalog_data(upstream), "linux"),
    )
    yield m
    m.close()


@pytest.fixture()
def orchestrator(manager):
    return manager.orchestrator


@pytest.fixture()
def client(manager):
    app.dependency_overrides[get_manager] = lambda: manager
    try:
        yield TestClient(app)
    finally:
        app.dependency_overrides.pop(get_manager, None)
