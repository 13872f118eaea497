"""
Artifacts API - single-artifact reads and the versioned mutations
(update, archive, restore, rollback), version history and search.
"""

from typing import List, Optional

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel

from storage import NotFoundError, ValidationError, get_storage
from storage.records import (
    Artifact,
    ArtifactUpdate,
    ArtifactVersion,
    ArtifactVersionSummary,
    SearchResult,
)

from .auth import require_api_key

router = APIRouter(tags=["artifacts"], dependencies=[Depends(require_api_key)])


class RollbackRequest(BaseModel):
    version_id: str


@router.get("/artifacts/{artifact_id}", response_model=Artifact)
async def get_artifact(artifact_id: str):
    storage = await get_storage()
    artifact = await storage.artifacts.get(artifact_id)
    if artifact is None:
        raise NotFoundError("Artifact", artifact_id)
    return artifact


@router.patch("/artifacts/{artifact_id}", response_model=Artifact)
async def update_artifact(artifact_id: str, body: ArtifactUpdate):
    storage = await get_storage()
    return await storage.artifacts.update(artifact_id, body)


@router.post("/artifacts/{artifact_id}/archive", response_model=Artifact)
async def archive_artifact(artifact_id: str):
    storage = await get_storage()
    return await storage.artifacts.archive(artifact_id)


@router.post("/artifacts/{artifact_id}/restore", response_model=Artifact)
async def restore_artifact(artifact_id: str):
    storage = await get_storage()
    return await storage.artifacts.restore(artifact_id)


@router.get("/artifacts/{artifact_id}/versions", response_model=List[ArtifactVersionSummary])
async def list_artifact_versions(
    artifact_id: str, limit: int = Query(default=10, ge=1, le=100)
):
    storage = await get_storage()
    return await storage.artifacts.get_versions(artifact_id, limit)


@router.post("/artifacts/{artifact_id}/rollback", response_model=Artifact)
async def rollback_artifact(artifact_id: str, body: RollbackRequest):
    storage = await get_storage()
    return await storage.artifacts.rollback(artifact_id, body.version_id)


@router.get("/versions/{version_id}", response_model=ArtifactVersion)
async def get_artifact_version(version_id: str):
    storage = await get_storage()
    version = await storage.artifacts.get_version(version_id)
    if version is None:
        raise NotFoundError("Version", version_id)
    return version


@router.get("/search", response_model=List[SearchResult])
async def search_artifacts(
    q: str = Query(default=""),
    project_id: Optional[str] = None,
    limit: int = Query(default=20, ge=1, le=100),
):
    if not q.strip():
        raise ValidationError("Search query cannot be empty", field="q")
    storage = await get_storage()
    return await storage.search(q, {"project_id": project_id, "limit": limit})
