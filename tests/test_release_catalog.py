import pytest
import requests

from sdkvm.core.errors import CatalogError
from sdkvm.core.versions.catalog import CatalogIndex, ReleaseCatalog

INDEX = {
    "current_release": {"stable": "c" * 40, "beta": "b" * 40, "dev": "f" * 40},
    "releases": [
        {"hash": "b" * 40, "channel": "beta", "version": "3.28.0-0.1.pre", "release_date": "2025-01-10T00:00:00Z"},
        {"hash": "c" * 40, "channel": "stable", "version": "3.27.0", "dart_sdk_version": "3.6.0"},
        {"hash": "c" * 40, "channel": "beta", "version": "3.27.0-0.3.pre"},
        {"hash": "a" * 40, "channel": "stable", "version": "3.24.0"},
        {"channel": "stable"},
    ],
}


class _Resp:
    def __init__(self, payload, status=200):
        self._payload = payload
        self.status_code = status

    def raise_for_status(self):
        if self.status_code >= 400:
            raise requests.HTTPError(f"HTTP {self.status_code}")

    def json(self):
        if isinstance(self._payload, Exception):
            raise self._payload
        return self._payload


class _Session:
    def __init__(self, resp):
        self.resp = resp
        self.urls = []

    def get(self, url, timeout=None):
        self.urls.append(url)
        return self.resp


def test_index_dedupes_by_hash_and_skips_incomplete_entries():
    idx = CatalogIndex.from_json(INDEX)
    assert [r.version for r in idx.releases] == ["3.28.0-0.1.pre", "3.27.0", "3.24.0"]
    assert idx.current["stable"].version == "3.27.0"
    # dev commit is not in the list
    assert "dev" not in idx.current
    assert idx.releases[0].release_date is not None


def test_catalog_queries():
    cat = ReleaseCatalog.preloaded(INDEX, "macos")
    assert cat.find("3.24.0").hash == "a" * 40
    assert cat.find("0.0.1") is None
    assert [r.version for r in cat.list_releases("stable")] == ["3.27.0", "3.24.0"]
    assert len(cat.list_releases()) == 3
    assert cat.current("beta").channel == "beta"


def test_fetch_url_and_ttl_cache():
    now = [0.0]
    session = _Session(_Resp(INDEX))
    cat = ReleaseCatalog(
        "https://storage.example.com/base/",
        "linux",
        session=session,
        ttl_seconds=60,
        clock=lambda: now[0],
    )
    assert cat.url == "https://storage.example.com/base/releases/releases_linux.json"

    cat.find("3.24.0")
    cat.list_releases()
    assert cat.fetches == 1

    now[0] = 61.0
    cat.current("stable")
    assert cat.fetches == 2

    cat.invalidate()
    cat.current("stable")
    assert cat.fetches == 3
    assert session.urls == [cat.url] * 3


@pytest.mark.parametrize(
    "resp",
    [
        _Resp({}, status=503),
        _Resp(ValueError("not json")),
        _Resp({"releases": "nope"}),
    ],
)
def test_fetch_failures_raise_catalog_error(resp):
    cat = ReleaseCatalog("https://storage.example.com", "linux", session=_Session(resp))
    with pytest.raises(CatalogError):
        cat.list_releases()
