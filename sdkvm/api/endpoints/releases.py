from __future__ import annotations

from typing import Any, Dict, Optional

from fastapi import APIRouter, Depends, HTTPException

from sdkvm.api.deps import get_manager
from sdkvm.core.manager import SdkManager
from sdkvm.core.versions.catalog import CHANNELS

router = APIRouter(prefix="/api/v1/releases", tags=["releases"])


@router.get("")
def list_releases(
    channel: Optional[str] = None,
    limit: int = 0,
    manager: SdkManager = Depends(get_manager),
) -> Dict[str, Any]:
    if channel not in (None, "", "all") and channel not in CHANNELS:
        raise HTTPException(status_code=400, detail=f"unknown channel: {channel}")

    releases = manager.catalog.list_releases(channel)
    if limit > 0:
        releases = releases[:limit]
    current = {c: manager.catalog.current(c) for c in CHANNELS}
    return {
        "os": manager.catalog.os_name,
        "current": {c: r.to_dict() for c, r in current.items() if r is not None},
        "releases": [r.to_dict() for r in releases],
    }
