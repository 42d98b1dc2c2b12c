import hashlib

import pytest
import requests

from sdkvm.core.engine.download import HttpDownloader
from sdkvm.core.errors import DownloadError, IntegrityError


class _Response:
    def __init__(self, status_code=200, body=b"", headers=None):
        self.status_code = status_code
        self.body = body
        self.headers = headers if headers is not None else {"Content-Length": str(len(body))}

    def __enter__(self):
        return self

    def __exit__(self, *exc):
        return False

    def iter_content(self, chunk_size):
        for i in range(0, len(self.body), chunk_size):
            yield self.body[i:i + chunk_size]


class _Session:
    def __init__(self, response=None, error=None):
        self.headers = {}
        self.response = response
        self.error = error

    def get(self, url, stream=False, timeout=None):
        if self.error is not None:
            raise self.error
        return self.response


def test_streams_and_hashes(tmp_path):
    body = b"x" * 200_000
    d = HttpDownloader(session=_Session(_Response(body=body)), chunk_size=4096)
    out = d.download("https://h/e.zip", tmp_path / "sub" / "e.zip")

    assert out.size == len(body)
    assert out.sha256 == hashlib.sha256(body).hexdigest()
    assert (tmp_path / "sub" / "e.zip").read_bytes() == body


def test_http_errors_classified(tmp_path):
    d = HttpDownloader(session=_Session(_Response(status_code=404)))
    with pytest.raises(DownloadError) as ei:
        d.download("https://h/e.zip", tmp_path / "e.zip")
    assert ei.value.retryable is False

    d = HttpDownloader(session=_Session(_Response(status_code=503)))
    with pytest.raises(DownloadError) as ei:
        d.download("https://h/e.zip", tmp_path / "e.zip")
    assert ei.value.retryable is True


def test_connection_errors_are_retryable(tmp_path):
    d = HttpDownloader(session=_Session(error=requests.ConnectionError("reset")))
    with pytest.raises(DownloadError) as ei:
        d.download("https://h/e.zip", tmp_path / "e.zip")
    assert ei.value.retryable is True


def test_local_write_failure_is_not_retryable(tmp_path):
    dest = tmp_path / "e.zip"
    dest.mkdir()  # opening a directory for writing fails
    d = HttpDownloader(session=_Session(_Response(body=b"data")))
    with pytest.raises(DownloadError) as ei:
        d.download("https://h/e.zip", dest)
    assert ei.value.retryable is False
    assert ei.value.details["path"] == str(dest)


def test_short_body_is_an_integrity_error(tmp_path):
    resp = _Response(body=b"abc", headers={"Content-Length": "10"})
    d = HttpDownloader(session=_Session(resp))
    with pytest.raises(IntegrityError):
        d.download("https://h/e.zip", tmp_path / "e.zip")
