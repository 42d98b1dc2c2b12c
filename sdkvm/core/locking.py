from __future__ import annotations

import json
import logging
import os
import socket
import time
from pathlib import Path
from typing import Any, Callable, Dict, Optional

from .errors import LockContentionError

try:
    import fcntl as _fcntl
    _HAS_FCNTL = True
except ImportError:
    _HAS_FCNTL = False

_log = logging.getLogger("sdkvm.locking")

StaleCallback = Callable[[Path, Dict[str, Any]], None]


def _holder_info() -> Dict[str, Any]:
    return {"pid": os.getpid(), "host": socket.gethostname(), "acquired_at": time.time()}


def _pid_alive(pid: int) -> bool:
    if os.name != "posix":
        # No safe signal-0 probe here; age decides.
        return True
    try:
        os.kill(pid, 0)
    except ProcessLookupError:
        return False
    except PermissionError:
        return True
    return True


class ExclusiveFileLock:
    """Cross-process exclusive lock on `path`, acquired with a timeout.

    Backends:
      flock     fcntl.flock on the lock file. The kernel drops the lock when the
                holder dies, so a crashed holder never wedges the lock.
      sentinel  exclusive-create of the lock file. A crashed holder leaves the
                file behind; it is broken when the recorded pid is gone on this
                host, or when it is older than `stale_after` seconds.

    `auto` picks flock where available. Holder metadata (pid, host, timestamp)
    is written into the lock file in both modes.
    """

    def __init__(
        self,
        path: Path,
        *,
        timeout: float,
        stale_after: float = 3600.0,
        poll_interval: float = 0.05,
        backend: str = "auto",
        on_stale: Optional[StaleCallback] = None,
    ):
        if backend == "auto":
            backend = "flock" if _HAS_FCNTL else "sentinel"
        if backend == "flock" and not _HAS_FCNTL:
            raise ValueError("flock backend is not available on this platform")
        if backend not in ("flock", "sentinel"):
            raise ValueError(f"unknown lock backend: {backend}")

        self.path = path
        self.timeout = timeout
        self.stale_after = stale_after
        self.poll_interval = poll_interval
        self.backend = backend
        self._on_stale = on_stale
        self._fh = None
        self._holder: Optional[Dict[str, Any]] = None
        self._held = False

    @property
    def held(self) -> bool:
        return self._held

    def acquire(self) -> "ExclusiveFileLock":
        if self._held:
            raise RuntimeError(f"lock already held by this object: {self.path}")
        self.path.parent.mkdir(parents=True, exist_ok=True)
        deadline = time.monotonic() + max(0.0, self.timeout)

        if self.backend == "flock":
            self._acquire_flock(deadline)
        else:
            self._acquire_sentinel(deadline)
        self._held = True
        return self

    def release(self) -> None:
        if not self._held:
            return
        try:
            if self.backend == "flock":
                fh = self._fh
                self._fh = None
                if fh is not None:
                    try:
                        fh.seek(0)
                        fh.truncate()
                        _fcntl.flock(fh, _fcntl.LOCK_UN)
                    finally:
                        fh.close()
            else:
                current = read_holder(self.path)
                if current != self._holder:
                    # broken as stale and taken over; the file is no longer ours
                    _log.warning("lock %s changed hands before release; now held by %s", self.path, current or "nobody")
                else:
                    try:
                        self.path.unlink()
                    except FileNotFoundError:
                        _log.warning("lock file vanished before release: %s", self.path)
        finally:
            self._held = False
            self._holder = None

    def __enter__(self) -> "ExclusiveFileLock":
        return self.acquire()

    def __exit__(self, exc_type, exc, tb) -> None:
        self.release()

    # ----------------------------------------
    # flock
    # ----------------------------------------
    def _acquire_flock(self, deadline: float) -> None:
        fh = open(self.path, "a+", encoding="utf-8")
        try:
            while True:
                try:
                    _fcntl.flock(fh, _fcntl.LOCK_EX | _fcntl.LOCK_NB)
                    break
                except (BlockingIOError, PermissionError):
                    if time.monotonic() >= deadline:
                        raise LockContentionError(
                            f"timed out waiting for lock {self.path}",
                            details={"path": str(self.path), "holder": read_holder(self.path)},
                        )
                    time.sleep(self.poll_interval)
            fh.seek(0)
            fh.truncate()
            fh.write(json.dumps(_holder_info()))
            fh.flush()
        except BaseException:
            fh.close()
            raise
        self._fh = fh

    # ----------------------------------------
    # sentinel
    # ----------------------------------------
    def _acquire_sentinel(self, deadline: float) -> None:
        while True:
            try:
                fd = os.open(str(self.path), os.O_CREAT | os.O_EXCL | os.O_WRONLY, 0o644)
            except FileExistsError:
                holder = read_holder(self.path)
                if self._is_stale(holder):
                    self._break_stale(holder)
                    continue
                if time.monotonic() >= deadline:
                    raise LockContentionError(
                        f"timed out waiting for lock {self.path}",
                        details={"path": str(self.path), "holder": holder},
                    )
                time.sleep(self.poll_interval)
                continue
            holder = _holder_info()
            with os.fdopen(fd, "w", encoding="utf-8") as fh:
                fh.write(json.dumps(holder))
            self._holder = holder
            return

    def _is_stale(self, holder: Dict[str, Any]) -> bool:
        acquired_at = holder.get("acquired_at")
        if not isinstance(acquired_at, (int, float)):
            # Unreadable or half-written: fall back to the file's age.
            try:
                acquired_at = self.path.stat().st_mtime
            except FileNotFoundError:
                return False
        if time.time() - float(acquired_at) > self.stale_after:
            return True
        pid = holder.get("pid")
        if holder.get("host") == socket.gethostname() and isinstance(pid, int):
            return not _pid_alive(pid)
        return False

    def _break_stale(self, holder: Dict[str, Any]) -> None:
        _log.warning("Breaking stale lock %s held by %s", self.path, holder or "unknown holder")
        try:
            self.path.unlink()
        except FileNotFoundError:
            return
        if self._on_stale is not None:
            self._on_stale(self.path, holder)


def read_holder(path: Path) -> Dict[str, Any]:
    try:
        raw = path.read_text(encoding="utf-8").strip()
    except OSError:
        return {}
    if not raw:
        return {}
    try:
        data = json.loads(raw)
    except json.JSONDecodeError:
        return {}
    return data if isinstance(data, dict) else {}
