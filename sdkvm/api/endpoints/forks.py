from __future__ import annotations

from typing import Any, Dict

from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel, Field

from sdkvm.api.deps import get_manager
from sdkvm.core.manager import SdkManager

router = APIRouter(prefix="/api/v1/forks", tags=["forks"])


class ForkAddRequest(BaseModel):
    alias: str
    url: str = Field(..., description="Git URL of the fork, ending in .git")


@router.get("")
def list_forks(manager: SdkManager = Depends(get_manager)) -> Dict[str, Any]:
    return {"forks": [{"alias": f.alias, "url": f.url} for f in manager.config_store.list_forks()]}


@router.post("", status_code=201)
def add_fork(req: ForkAddRequest, manager: SdkManager = Depends(get_manager)) -> Dict[str, Any]:
    fork = manager.config_store.add_fork(req.alias, req.url)
    return {"alias": fork.alias, "url": fork.url}


@router.delete("/{alias}")
def remove_fork(alias: str, manager: SdkManager = Depends(get_manager)) -> Dict[str, Any]:
    if not manager.config_store.remove_fork(alias):
        raise HTTPException(status_code=404, detail=f"fork not found: {alias}")
    return {"alias": alias, "removed": True}
