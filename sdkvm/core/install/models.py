from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any, Dict, List, Optional

from sdkvm.core.engine.cache import EngineCleanupResult
from sdkvm.core.versions.models import Version


class InstallState(str, Enum):
    ABSENT = "absent"
    RESOLVING = "resolving"
    WORKTREE_READY = "worktree_ready"
    ENGINE_READY = "engine_ready"
    LINKED = "linked"
    READY = "ready"
    ERROR = "error"


@dataclass(frozen=True)
class Installation:
    path: Path
    version: Version
    engine_hash: Optional[str]
    flavor: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "path": str(self.path),
            "version": self.version.to_dict(),
            "engine_hash": self.engine_hash,
            "flavor": self.flavor,
        }


@dataclass(frozen=True)
class InstallOptions:
    flavor: Optional[str] = None
    # fetch the mirror before resolving the ref
    update: bool = False
    timeout: Optional[float] = None


@dataclass
class RemovalResult:
    version: str
    path: Path
    removed: bool
    engine_hash: Optional[str] = None
    records_removed: List[Optional[str]] = field(default_factory=list)  # flavors
    cleanup: Optional[EngineCleanupResult] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "version": self.version,
            "path": str(self.path),
            "removed": self.removed,
            "engine_hash": self.engine_hash,
            "records_removed": list(self.records_removed),
            "cleanup": self.cleanup.to_dict() if self.cleanup else None,
        }
