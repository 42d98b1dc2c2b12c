from __future__ import annotations

import json
import logging
import os
import threading
from contextlib import contextmanager
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, Iterator, List, Optional

from sdkvm.core.events import now_utc_iso
from sdkvm.core.locking import ExclusiveFileLock

from .models import InstallState
from .state_machine import ensure_transition

_log = logging.getLogger("sdkvm.install")


def record_key(version_name: str, flavor: Optional[str]) -> str:
    return f"{version_name}#{flavor}" if flavor else version_name


@dataclass
class InstallRecord:
    version: str
    path: str
    state: InstallState
    created_ts: str
    updated_ts: str
    flavor: Optional[str] = None
    commit: Optional[str] = None
    engine_hash: Optional[str] = None
    last_error: Optional[str] = None
    meta: Dict[str, Any] = field(default_factory=dict)

    @property
    def key(self) -> str:
        return record_key(self.version, self.flavor)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "version": self.version,
            "flavor": self.flavor,
            "path": self.path,
            "state": self.state.value,
            "commit": self.commit,
            "engine_hash": self.engine_hash,
            "last_error": self.last_error,
            "created_ts": self.created_ts,
            "updated_ts": self.updated_ts,
            "meta": dict(self.meta),
        }

    @staticmethod
    def from_dict(d: Dict[str, Any]) -> "InstallRecord":
        return InstallRecord(
            version=str(d["version"]),
            flavor=d.get("flavor"),
            path=str(d["path"]),
            state=InstallState(d.get("state", InstallState.ABSENT.value)),
            commit=d.get("commit"),
            engine_hash=d.get("engine_hash"),
            last_error=d.get("last_error"),
            created_ts=str(d.get("created_ts") or now_utc_iso()),
            updated_ts=str(d.get("updated_ts") or now_utc_iso()),
            meta=dict(d.get("meta") or {}),
        )


class InstallationRegistry:
    """File-backed installation registry.

    Path: <cache-root>/shared/installations.json
    One record per (version, flavor). Read-modify-write cycles run under a
    cross-process lock and the file is replaced atomically.
    """

    def __init__(self, path: Path, *, lock_timeout: float = 600.0, lock_stale_after: float = 3600.0):
        self.path = path
        self.lock_timeout = lock_timeout
        self.lock_stale_after = lock_stale_after
        self._lock = threading.RLock()

    @property
    def lock_path(self) -> Path:
        return self.path.with_name(self.path.name + ".lock")

    @contextmanager
    def _locked(self) -> Iterator[None]:
        with self._lock:
            with ExclusiveFileLock(self.lock_path, timeout=self.lock_timeout, stale_after=self.lock_stale_after):
                yield

    def _load(self) -> Dict[str, Dict[str, Any]]:
        if not self.path.exists():
            return {}
        try:
            obj = json.loads(self.path.read_text(encoding="utf-8"))
        except json.JSONDecodeError:
            _log.warning("Installation registry %s is not valid JSON; starting empty", self.path)
            return {}
        recs = obj.get("installations") if isinstance(obj, dict) else None
        return recs if isinstance(recs, dict) else {}

    def _save(self, recs: Dict[str, Dict[str, Any]]) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        tmp = self.path.with_name(f".{self.path.name}.{os.getpid()}.tmp")
        tmp.write_text(
            json.dumps({"kind": "installations", "installations": recs}, indent=2, sort_keys=True),
            encoding="utf-8",
        )
        os.replace(tmp, self.path)

    # ----------------------------------------
    # Queries
    # ----------------------------------------
    def get(self, version_name: str, flavor: Optional[str] = None) -> Optional[InstallRecord]:
        with self._locked():
            d = self._load().get(record_key(version_name, flavor))
        return InstallRecord.from_dict(d) if d else None

    def list(self) -> List[InstallRecord]:
        with self._locked():
            recs = self._load()
        return [InstallRecord.from_dict(d) for _, d in sorted(recs.items())]

    def for_version(self, version_name: str) -> List[InstallRecord]:
        return [r for r in self.list() if r.version == version_name]

    # ----------------------------------------
    # Mutations
    # ----------------------------------------
    def transition(
        self,
        version_name: str,
        flavor: Optional[str],
        dst: InstallState,
        *,
        path: Path,
        **fields: Any,
    ) -> InstallRecord:
        """Move a record to `dst`, creating it in ABSENT first when missing."""
        with self._locked():
            recs = self._load()
            key = record_key(version_name, flavor)
            now = now_utc_iso()
            d = recs.get(key)
            if d is None:
                rec = InstallRecord(
                    version=version_name,
                    flavor=flavor,
                    path=str(path),
                    state=InstallState.ABSENT,
                    created_ts=now,
                    updated_ts=now,
                )
            else:
                rec = InstallRecord.from_dict(d)

            ensure_transition(rec.state, dst)
            rec.state = dst
            rec.path = str(path)
            rec.updated_ts = now
            for k, v in fields.items():
                if not hasattr(rec, k):
                    raise AttributeError(f"unknown install record field: {k}")
                setattr(rec, k, v)
            if dst != InstallState.ERROR:
                rec.last_error = fields.get("last_error")

            recs[key] = rec.to_dict()
            self._save(recs)
        return rec

    def remove_version(self, version_name: str) -> List[InstallRecord]:
        """Drop every record (all flavors) of a version."""
        with self._locked():
            recs = self._load()
            dropped = [InstallRecord.from_dict(d) for d in recs.values() if d.get("version") == version_name]
            if dropped:
                for r in dropped:
                    recs.pop(r.key, None)
                self._save(recs)
        return dropped
