from __future__ import annotations

from pathlib import Path
from typing import Any, Dict, Optional

from fastapi import APIRouter, Depends
from pydantic import BaseModel, Field

from sdkvm.api.deps import get_manager
from sdkvm.core.install.models import InstallOptions
from sdkvm.core.manager import SdkManager

router = APIRouter(prefix="/api/v1", tags=["installs"])


class InstallRequest(BaseModel):
    version: str = Field(..., description="Release tag, channel, commit or <fork>/<version>")
    flavor: Optional[str] = None
    update: bool = False
    timeout: Optional[float] = Field(default=None, gt=0)


class GlobalVersionRequest(BaseModel):
    version: str


@router.get("/installs")
def list_installs(manager: SdkManager = Depends(get_manager)) -> Dict[str, Any]:
    installs = manager.orchestrator.list_installed()
    return {
        "installs": [i.to_dict() for i in installs],
        "records": [r.to_dict() for r in manager.registry.list()],
    }


@router.post("/installs")
def install(req: InstallRequest, manager: SdkManager = Depends(get_manager)) -> Dict[str, Any]:
    inst = manager.orchestrator.install(
        req.version,
        InstallOptions(flavor=req.flavor, update=req.update, timeout=req.timeout),
    )
    return inst.to_dict()


@router.get("/installs/{version:path}/state")
def install_state(
    version: str,
    flavor: Optional[str] = None,
    manager: SdkManager = Depends(get_manager),
) -> Dict[str, Any]:
    state = manager.orchestrator.state_of(version, flavor)
    return {"version": version, "flavor": flavor, "state": state.value}


@router.delete("/installs/{version:path}")
def remove_install(
    version: str,
    cleanup: bool = False,
    manager: SdkManager = Depends(get_manager),
) -> Dict[str, Any]:
    return manager.orchestrator.remove(version, cleanup=cleanup).to_dict()


@router.get("/global")
def get_global(manager: SdkManager = Depends(get_manager)) -> Dict[str, Any]:
    return {"version": manager.orchestrator.get_global_version()}


@router.put("/global")
def set_global(req: GlobalVersionRequest, manager: SdkManager = Depends(get_manager)) -> Dict[str, Any]:
    inst = manager.orchestrator.set_global_version(req.version)
    return {"version": inst.version.name, "path": str(inst.path)}


@router.delete("/global")
def unset_global(manager: SdkManager = Depends(get_manager)) -> Dict[str, Any]:
    return {"unset": manager.orchestrator.unset_global_version()}


class ProjectRequest(BaseModel):
    project_dir: str
    flavor: Optional[str] = None


class UseRequest(ProjectRequest):
    version: str


@router.post("/projects/ensure")
def ensure_project(req: ProjectRequest, manager: SdkManager = Depends(get_manager)) -> Dict[str, Any]:
    return manager.orchestrator.ensure_project(Path(req.project_dir), flavor=req.flavor).to_dict()


@router.post("/projects/use")
def use_version(req: UseRequest, manager: SdkManager = Depends(get_manager)) -> Dict[str, Any]:
    inst = manager.orchestrator.use_version(req.version, Path(req.project_dir), flavor=req.flavor)
    return inst.to_dict()
