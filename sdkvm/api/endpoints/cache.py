from __future__ import annotations

from typing import Any, Dict

from fastapi import APIRouter, Depends

from sdkvm.api.deps import get_manager
from sdkvm.core.errors import ConfigError
from sdkvm.core.manager import SdkManager

router = APIRouter(prefix="/api/v1", tags=["cache"])


@router.post("/mirrors/{remote}/reclone")
def reclone_mirror(remote: str, manager: SdkManager = Depends(get_manager)) -> Dict[str, Any]:
    path = manager.orchestrator.reclone_mirror(remote)
    return {"remote": remote, "path": str(path)}


@router.delete("/cache")
def destroy_cache(confirm: bool = False, manager: SdkManager = Depends(get_manager)) -> Dict[str, Any]:
    if not confirm:
        raise ConfigError("destroying the cache requires confirm=true")
    return {"root": str(manager.layout.root), "destroyed": manager.orchestrator.destroy()}
