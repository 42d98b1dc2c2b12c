from __future__ import annotations

from typing import Any, Dict

from fastapi import APIRouter, Depends

from sdkvm.api.deps import get_manager
from sdkvm.core.manager import SdkManager

router = APIRouter(prefix="/api/v1/engines", tags=["engines"])


@router.get("")
def list_engines(manager: SdkManager = Depends(get_manager)) -> Dict[str, Any]:
    live = manager.cache.referenced_hashes(i.path for i in manager.orchestrator.list_installed())
    return {
        "platform": manager.platform.id,
        "engines": [
            {"hash": e.hash, "path": str(e.path), "in_use": e.hash in live}
            for e in manager.cache.list_engines()
        ],
    }


@router.post("/cleanup")
def cleanup_engines(manager: SdkManager = Depends(get_manager)) -> Dict[str, Any]:
    return manager.orchestrator.cleanup_unused().to_dict()
