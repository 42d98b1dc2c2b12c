from __future__ import annotations

import logging
import threading
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Literal, Optional


EventType = Literal[
    "VersionResolved",
    "MirrorCloned",
    "MirrorFetched",
    "MirrorFetchSuperseded",
    "WorktreeCreated",
    "WorktreeUpdated",
    "WorktreeReused",
    "WorktreeRemoved",
    "EngineCacheHit",
    "EngineDownloadStarted",
    "EngineDownloadRetry",
    "EnginePublished",
    "EngineLinked",
    "EngineRemoved",
    "EngineRemovalFailed",
    "MarkersInvalidated",
    "InstallStateChanged",
    "InstallCompleted",
    "InstallFailed",
    "LockBrokenStale",
    "ProjectVersionSet",
    "CacheDestroyed",
]

_log = logging.getLogger("sdkvm.events")


def now_utc_iso() -> str:
    return datetime.now(timezone.utc).replace(microsecond=0).isoformat().replace("+00:00", "Z")


@dataclass(frozen=True)
class DiagnosticEvent:
    event_type: EventType
    ts: str
    subject: str
    payload: Dict[str, Any] = field(default_factory=dict)

    @staticmethod
    def mk(
        event_type: EventType,
        subject: str,
        payload: Optional[Dict[str, Any]] = None,
    ) -> "DiagnosticEvent":
        return DiagnosticEvent(
            event_type=event_type,
            ts=now_utc_iso(),
            subject=subject,
            payload=payload or {},
        )


Subscriber = Callable[[DiagnosticEvent], None]


class EventBus:
    """Structured diagnostics channel.

    The core publishes; renderers subscribe. A failing subscriber is logged and
    never breaks the publishing operation.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._subscribers: List[Subscriber] = []

    def subscribe(self, fn: Subscriber) -> Callable[[], None]:
        with self._lock:
            self._subscribers.append(fn)

        def _unsubscribe() -> None:
            with self._lock:
                if fn in self._subscribers:
                    self._subscribers.remove(fn)

        return _unsubscribe

    def publish(self, event: DiagnosticEvent) -> None:
        with self._lock:
            subs = list(self._subscribers)
        for fn in subs:
            try:
                fn(event)
            except Exception:
                _log.exception("event subscriber failed for %s", event.event_type)

    def emit(self, event_type: EventType, subject: str, **payload: Any) -> DiagnosticEvent:
        ev = DiagnosticEvent.mk(event_type, subject, payload)
        self.publish(ev)
        return ev


class EventRecorder:
    """Subscriber that keeps every event; used by tests and the API layer."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self.events: List[DiagnosticEvent] = []

    def __call__(self, event: DiagnosticEvent) -> None:
        with self._lock:
            self.events.append(event)

    def of_type(self, event_type: str) -> List[DiagnosticEvent]:
        with self._lock:
            return [e for e in self.events if e.event_type == event_type]
