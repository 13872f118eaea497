"""
Storage contract implemented by the embedded and hosted backends.

Callers depend on these protocols only; the concrete adapter is chosen at
startup from settings (see `storage.factory`).
"""

from typing import Any, List, Mapping, Optional, Protocol, Union, runtime_checkable

from .records import (
    Artifact,
    ArtifactCreate,
    ArtifactListOptions,
    ArtifactSummary,
    ArtifactUpdate,
    ArtifactVersion,
    ArtifactVersionSummary,
    Project,
    ProjectCreate,
    ProjectListOptions,
    ProjectUpdate,
    SearchOptions,
    SearchResult,
)

InputData = Mapping[str, Any]


@runtime_checkable
class ProjectStore(Protocol):
    async def create(self, data: Union[ProjectCreate, InputData]) -> Project: ...

    async def get(self, project_id: str) -> Optional[Project]: ...

    async def get_by_name(self, name: str) -> Optional[Project]: ...

    async def list(
        self, options: Union[ProjectListOptions, InputData, None] = None
    ) -> List[Project]: ...

    async def update(
        self, project_id: str, data: Union[ProjectUpdate, InputData]
    ) -> Project: ...

    async def delete(self, project_id: str) -> None: ...

    async def count_artifacts(self, project_id: str) -> int: ...


@runtime_checkable
class ArtifactStore(Protocol):
    async def create(self, data: Union[ArtifactCreate, InputData]) -> Artifact: ...

    async def get(self, artifact_id: str) -> Optional[Artifact]: ...

    async def get_by_title(self, project_id: str, title: str) -> Optional[Artifact]: ...

    async def list(
        self,
        project_id: str,
        options: Union[ArtifactListOptions, InputData, None] = None,
    ) -> List[ArtifactSummary]: ...

    async def list_archived(
        self, project_id: str, limit: int = 20
    ) -> List[ArtifactSummary]: ...

    async def update(
        self, artifact_id: str, data: Union[ArtifactUpdate, InputData]
    ) -> Artifact: ...

    async def archive(self, artifact_id: str) -> Artifact: ...

    async def restore(self, artifact_id: str) -> Artifact: ...

    async def get_versions(
        self, artifact_id: str, limit: int = 10
    ) -> List[ArtifactVersionSummary]: ...

    async def get_version(self, version_id: str) -> Optional[ArtifactVersion]: ...

    async def rollback(self, artifact_id: str, version_id: str) -> Artifact: ...


@runtime_checkable
class StorageAdapter(Protocol):
    projects: ProjectStore
    artifacts: ArtifactStore

    async def initialize(self) -> None: ...

    async def close(self) -> None: ...

    async def search(
        self, query: str, options: Union[SearchOptions, InputData, None] = None
    ) -> List[SearchResult]: ...
