# sdkvm/core/engine/download.py

from __future__ import annotations

import hashlib
import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

import requests

from sdkvm.core.errors import DownloadError, IntegrityError

_log = logging.getLogger("sdkvm.engine")

USER_AGENT = "sdkvm"

# Status codes a retry cannot change.
_PERMANENT_STATUSES = {400, 401, 403, 404, 410}


@dataclass(frozen=True)
class DownloadedFile:
    path: Path
    size: int
    sha256: str
    expected_size: Optional[int] = None


def sha256_file(path: Path) -> str:
    h = hashlib.sha256()
    with open(path, "rb") as f:
        for chunk in iter(lambda: f.read(1 << 16), b""):
            h.update(chunk)
    return h.hexdigest()


class HttpDownloader:
    """Streams a URL to a local file, hashing as it goes."""

    def __init__(self, session: Optional[requests.Session] = None, chunk_size: int = 1 << 16):
        self.session = session or requests.Session()
        self.session.headers["User-Agent"] = USER_AGENT
        self.chunk_size = chunk_size

    def download(self, url: str, dest: Path, *, timeout: Optional[float] = None) -> DownloadedFile:
        """
        Download `url` into `dest` (overwritten).

        Raises:
            DownloadError: network failure, HTTP error status or local write failure.
            IntegrityError: received byte count differs from Content-Length.
        """
        _log.debug("Downloading %s -> %s", url, dest)
        dest.parent.mkdir(parents=True, exist_ok=True)
        sha = hashlib.sha256()
        size = 0
        try:
            with self.session.get(url, stream=True, timeout=timeout) as resp:
                if resp.status_code >= 400:
                    raise DownloadError(
                        f"GET {url} returned HTTP {resp.status_code}",
                        retryable=resp.status_code not in _PERMANENT_STATUSES,
                        details={"url": url, "status": resp.status_code},
                    )
                header = resp.headers.get("Content-Length")
                expected = int(header) if header and header.isdigit() else None

                with open(dest, "wb") as out:
                    for chunk in resp.iter_content(chunk_size=self.chunk_size):
                        if not chunk:
                            continue
                        out.write(chunk)
                        sha.update(chunk)
                        size += len(chunk)
        except requests.RequestException as e:
            raise DownloadError(f"GET {url} failed: {e}", details={"url": url}) from e
        except OSError as e:
            # local write failure (disk full, permissions): retrying will not help
            raise DownloadError(
                f"could not write {dest}: {e}",
                retryable=False,
                details={"url": url, "path": str(dest), "errno": e.errno},
            ) from e

        if expected is not None and size != expected:
            raise IntegrityError(
                f"size mismatch for {url}: expected {expected} bytes, got {size}",
                details={"url": url, "expected_size": expected, "size": size},
            )
        _log.debug("Downloaded %s (%d bytes)", url, size)
        return DownloadedFile(path=dest, size=size, sha256=sha.hexdigest(), expected_size=expected)
