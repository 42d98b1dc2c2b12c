from __future__ import annotations

import os
import shutil
import uuid

from fastapi import APIRouter, Depends
from starlette.responses import JSONResponse

from sdkvm.api.deps import get_manager
from sdkvm.core.manager import SdkManager
from sdkvm.core.observability.metrics import inc_named, snapshot_named

router = APIRouter()


@router.get("/health/live")
async def live():
    inc_named("health_live")
    return {"status": "ok"}


@router.get("/health/ready")
def ready(manager: SdkManager = Depends(get_manager)):
    """
    Ready when installs could run: git on PATH and the cache root writable.
    """
    inc_named("health_ready")
    problems: list[str] = []

    if shutil.which(manager.store.runner.executable) is None:
        problems.append(f"missing_executable:{manager.store.runner.executable}")

    root = manager.layout.root
    try:
        root.mkdir(parents=True, exist_ok=True)
        probe = root / f".ready-{uuid.uuid4().hex[:8]}.tmp"
        probe.write_text("ok", encoding="utf-8")
        os.remove(probe)
    except OSError as e:
        problems.append(f"cache_root_not_writable:{root} err={type(e).__name__}")

    if problems:
        return JSONResponse(
            status_code=503,
            content={"status": "not_ready", "problems": problems},
        )

    return {
        "status": "ready",
        "cache_root": str(root),
        "platform": manager.platform.id,
        "counters": snapshot_named(),
    }
