"""
Projects API - CRUD for projects plus per-project artifact listings.

Every route requires the HTTP API key (see `api.auth.require_api_key`).
Storage errors propagate and are mapped to status codes by the app.
"""

from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Depends, Query, Response, status

from storage import NotFoundError, get_storage
from storage.records import (
    Artifact,
    ArtifactCreate,
    ArtifactDraft,
    ArtifactSummary,
    Project,
    ProjectCreate,
    ProjectUpdate,
)

from .auth import require_api_key

router = APIRouter(
    prefix="/projects",
    tags=["projects"],
    dependencies=[Depends(require_api_key)],
)


@router.get("", response_model=List[Project])
async def list_projects(
    status_filter: Optional[str] = Query(default=None, alias="status"),
    limit: int = Query(default=20, ge=1, le=100),
    offset: int = Query(default=0, ge=0),
):
    storage = await get_storage()
    return await storage.projects.list(
        {"status": status_filter, "limit": limit, "offset": offset}
    )


@router.post("", response_model=Project, status_code=status.HTTP_201_CREATED)
async def create_project(body: ProjectCreate):
    storage = await get_storage()
    return await storage.projects.create(body)


@router.get("/by-name/{name}", response_model=Project)
async def get_project_by_name(name: str):
    """Case-insensitive lookup."""
    storage = await get_storage()
    project = await storage.projects.get_by_name(name)
    if project is None:
        raise NotFoundError("Project", name)
    return project


@router.get("/{project_id}", response_model=Project)
async def get_project(project_id: str):
    storage = await get_storage()
    project = await storage.projects.get(project_id)
    if project is None:
        raise NotFoundError("Project", project_id)
    return project


@router.patch("/{project_id}", response_model=Project)
async def update_project(project_id: str, body: ProjectUpdate):
    storage = await get_storage()
    return await storage.projects.update(project_id, body)


@router.delete("/{project_id}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_project(project_id: str):
    storage = await get_storage()
    await storage.projects.delete(project_id)
    return Response(status_code=status.HTTP_204_NO_CONTENT)


@router.get("/{project_id}/count")
async def count_project_artifacts(project_id: str) -> Dict[str, Any]:
    storage = await get_storage()
    count = await storage.projects.count_artifacts(project_id)
    return {"project_id": project_id, "count": count}


@router.get("/{project_id}/artifacts", response_model=List[ArtifactSummary])
async def list_project_artifacts(
    project_id: str,
    artifact_type: Optional[str] = Query(default=None, alias="type"),
    priority: Optional[str] = None,
    limit: int = Query(default=50, ge=1, le=100),
    offset: int = Query(default=0, ge=0),
    include_archived: bool = False,
):
    storage = await get_storage()
    return await storage.artifacts.list(
        project_id,
        {
            "type": artifact_type,
            "priority": priority,
            "limit": limit,
            "offset": offset,
            "include_archived": include_archived,
        },
    )


@router.post(
    "/{project_id}/artifacts",
    response_model=Artifact,
    status_code=status.HTTP_201_CREATED,
)
async def create_project_artifact(project_id: str, body: ArtifactDraft):
    storage = await get_storage()
    return await storage.artifacts.create(
        ArtifactCreate(project_id=project_id, **body.model_dump())
    )


@router.get("/{project_id}/archived", response_model=List[ArtifactSummary])
async def list_project_archived(
    project_id: str, limit: int = Query(default=20, ge=1, le=100)
):
    storage = await get_storage()
    return await storage.artifacts.list_archived(project_id, limit)
