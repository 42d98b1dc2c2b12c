from __future__ import annotations

import logging
import threading
from typing import Optional

from sdkvm.core.events import DiagnosticEvent
from sdkvm.core.manager import SdkManager, build_manager
from sdkvm.core.settings import SdkSettings

_log = logging.getLogger("sdkvm.events")

_MANAGER: Optional[SdkManager] = None
_MANAGER_LOCK = threading.Lock()


def log_event(event: DiagnosticEvent) -> None:
    _log.debug("%s %s %s", event.event_type, event.subject, event.payload)


def get_manager() -> SdkManager:
    """
    Process-wide manager for the HTTP surface, built from SDKVM_* settings on
    first use. Tests replace it through `app.dependency_overrides`.
    """
    global _MANAGER
    with _MANAGER_LOCK:
        if _MANAGER is None:
            _MANAGER = build_manager(SdkSettings.from_env())
            _MANAGER.events.subscribe(log_event)
        return _MANAGER
