from __future__ import annotations

from collections import Counter
from threading import Lock
from typing import Dict

from prometheus_client import Counter as PromCounter
from prometheus_client import Histogram

# Named counters (in-process snapshot, mirrors the Prometheus series below)
_NAMED = Counter()
_NAMED_LOCK = Lock()

GIT_OPERATIONS_TOTAL = PromCounter(
    "sdkvm_git_operations_total",
    "Git subprocess invocations against shared mirrors",
    ["op", "outcome"],
)

ENGINE_CACHE_LOOKUPS_TOTAL = PromCounter(
    "sdkvm_engine_cache_lookups_total",
    "Engine cache lookups",
    ["result"],
)

ENGINE_DOWNLOADS_TOTAL = PromCounter(
    "sdkvm_engine_downloads_total",
    "Engine payload download attempts",
    ["outcome"],
)

INSTALLS_TOTAL = PromCounter(
    "sdkvm_installs_total",
    "Install calls by outcome",
    ["outcome"],
)

INSTALL_DURATION_SECONDS = Histogram(
    "sdkvm_install_duration_seconds",
    "Wall time of install() calls",
)


def reset_metrics() -> None:
    """
    Test helper: clears the named counters to avoid cross-test leakage.
    Prometheus series are process-global and are left alone.
    """
    with _NAMED_LOCK:
        _NAMED.clear()


def inc_named(name: str, value: int = 1) -> None:
    if not name:
        return
    with _NAMED_LOCK:
        _NAMED[name] += int(value)


def snapshot_named() -> Dict[str, int]:
    with _NAMED_LOCK:
        return dict(_NAMED)


def record_git_op(op: str, ok: bool) -> None:
    outcome = "ok" if ok else "error"
    GIT_OPERATIONS_TOTAL.labels(op=op, outcome=outcome).inc()
    inc_named(f"git_{op}_{outcome}")


def record_cache_lookup(hit: bool) -> None:
    result = "hit" if hit else "miss"
    ENGINE_CACHE_LOOKUPS_TOTAL.labels(result=result).inc()
    inc_named(f"engine_cache_{result}")


def record_download(outcome: str) -> None:
    ENGINE_DOWNLOADS_TOTAL.labels(outcome=outcome).inc()
    inc_named(f"engine_download_{outcome}")


def record_install(outcome: str, seconds: float) -> None:
    INSTALLS_TOTAL.labels(outcome=outcome).inc()
    INSTALL_DURATION_SECONDS.observe(seconds)
    inc_named(f"install_{outcome}")
