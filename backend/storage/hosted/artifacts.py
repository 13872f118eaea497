"""
Tenant-scoped artifact store for the hosted backend.

Artifacts have no tenant column, so every read and write first joins to
the owning project and checks its `user_id`. A mismatch is reported as
NotFound. The version state machine is the same as the embedded store's:
snapshot-then-mutate in one transaction, archive without a version bump.
"""

import logging
from typing import Any, Dict, List, Optional, Union

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from ..errors import ConflictError, NotFoundError
from ..interface import InputData
from ..records import (
    Artifact,
    ArtifactCreate,
    ArtifactListOptions,
    ArtifactSummary,
    ArtifactUpdate,
    ArtifactVersion,
    ArtifactVersionSummary,
    ChangeSource,
    Priority,
    clamp_limit,
    coerce_input,
)
from ..session import session_scope
from ..utils import generate_id, to_iso, utc_now
from .projects import TenantResolver, find_owned_project, require_owned_project
from .tables import ArtifactRow, ArtifactVersionRow, ProjectRow

logger = logging.getLogger(__name__)


def to_artifact(row: ArtifactRow) -> Artifact:
    return Artifact(
        id=row.id,
        project_id=row.project_id,
        title=row.title,
        artifact_type=row.artifact_type,
        content=row.content,
        summary=row.summary,
        priority=row.priority,
        tags=list(row.tags or []),
        version=row.version,
        archived_at=to_iso(row.archived_at),
        created_at=to_iso(row.created_at),
        updated_at=to_iso(row.updated_at),
    )


def to_version(row: ArtifactVersionRow) -> ArtifactVersion:
    return ArtifactVersion(
        id=row.id,
        artifact_id=row.artifact_id,
        version=row.version,
        title=row.title,
        content=row.content,
        summary=row.summary,
        priority=row.priority,
        change_source=row.change_source,
        created_at=to_iso(row.created_at),
    )


class HostedArtifactStore:
    def __init__(self, session_factory: async_sessionmaker, tenant: TenantResolver):
        self._session_factory = session_factory
        self._tenant = tenant

    @staticmethod
    def _owned_artifacts(user_id: str):
        return (
            select(ArtifactRow)
            .join(ProjectRow, ProjectRow.id == ArtifactRow.project_id)
            .where(ProjectRow.user_id == user_id)
        )

    async def _find_artifact(
        self, session: AsyncSession, user_id: str, artifact_id: str
    ) -> Optional[ArtifactRow]:
        result = await session.execute(
            self._owned_artifacts(user_id).where(ArtifactRow.id == artifact_id)
        )
        return result.scalars().first()

    async def _require_artifact(
        self, session: AsyncSession, user_id: str, artifact_id: str
    ) -> ArtifactRow:
        row = await self._find_artifact(session, user_id, artifact_id)
        if row is None:
            raise NotFoundError("Artifact", artifact_id)
        return row

    async def _find_version(
        self, session: AsyncSession, user_id: str, version_id: str
    ) -> Optional[ArtifactVersionRow]:
        result = await session.execute(
            select(ArtifactVersionRow)
            .join(ArtifactRow, ArtifactRow.id == ArtifactVersionRow.artifact_id)
            .join(ProjectRow, ProjectRow.id == ArtifactRow.project_id)
            .where(ArtifactVersionRow.id == version_id)
            .where(ProjectRow.user_id == user_id)
        )
        return result.scalars().first()

    @staticmethod
    async def _find_by_title(
        session: AsyncSession, project_id: str, title: str
    ) -> Optional[ArtifactRow]:
        result = await session.execute(
            select(ArtifactRow)
            .where(ArtifactRow.project_id == project_id)
            .where(func.lower(ArtifactRow.title) == func.lower(title.strip()))
        )
        return result.scalars().first()

    async def _ensure_title_free(
        self, session: AsyncSession, project_id: str, title: str, artifact_id: str
    ) -> None:
        clash = await self._find_by_title(session, project_id, title)
        if clash is not None and clash.id != artifact_id:
            raise ConflictError(f"Artifact '{title}' already exists in this project")

    @staticmethod
    def _snapshot(session: AsyncSession, row: ArtifactRow, change_source: ChangeSource) -> None:
        session.add(
            ArtifactVersionRow(
                id=generate_id(),
                artifact_id=row.id,
                version=row.version,
                title=row.title,
                content=row.content,
                summary=row.summary,
                priority=row.priority,
                change_source=change_source.value,
                created_at=utc_now(),
            )
        )
        logger.debug("Snapshot artifact %s v%s (%s)", row.id, row.version, change_source.value)

    async def get(self, artifact_id: str) -> Optional[Artifact]:
        user_id = self._tenant()
        async with session_scope(self._session_factory) as session:
            row = await self._find_artifact(session, user_id, artifact_id)
            return to_artifact(row) if row is not None else None

    async def get_by_title(self, project_id: str, title: str) -> Optional[Artifact]:
        user_id = self._tenant()
        async with session_scope(self._session_factory) as session:
            if await find_owned_project(session, user_id, project_id) is None:
                return None
            row = await self._find_by_title(session, project_id, title)
            return to_artifact(row) if row is not None else None

    async def list(
        self,
        project_id: str,
        options: Union[ArtifactListOptions, InputData, None] = None,
    ) -> List[ArtifactSummary]:
        opts = coerce_input(ArtifactListOptions, options)
        stmt = select(ArtifactRow).where(ArtifactRow.project_id == project_id)
        if not opts.include_archived:
            stmt = stmt.where(ArtifactRow.archived_at.is_(None))
        if opts.artifact_type is not None:
            stmt = stmt.where(ArtifactRow.artifact_type == opts.artifact_type.value)
        if opts.priority is not None:
            stmt = stmt.where(ArtifactRow.priority == opts.priority.value)
        stmt = (
            stmt.order_by(
                (ArtifactRow.priority == Priority.core.value).desc(),
                ArtifactRow.updated_at.desc(),
            )
            .limit(clamp_limit(opts.limit, 50))
            .offset(opts.offset)
        )
        user_id = self._tenant()
        async with session_scope(self._session_factory) as session:
            await require_owned_project(session, user_id, project_id)
            result = await session.execute(stmt)
            return [
                ArtifactSummary.from_artifact(to_artifact(row))
                for row in result.scalars().all()
            ]

    async def list_archived(self, project_id: str, limit: int = 20) -> List[ArtifactSummary]:
        user_id = self._tenant()
        async with session_scope(self._session_factory) as session:
            await require_owned_project(session, user_id, project_id)
            result = await session.execute(
                select(ArtifactRow)
                .where(ArtifactRow.project_id == project_id)
                .where(ArtifactRow.archived_at.is_not(None))
                .order_by(ArtifactRow.archived_at.desc())
                .limit(clamp_limit(limit, 20))
            )
            return [
                ArtifactSummary.from_artifact(to_artifact(row))
                for row in result.scalars().all()
            ]

    async def get_versions(self, artifact_id: str, limit: int = 10) -> List[ArtifactVersionSummary]:
        user_id = self._tenant()
        async with session_scope(self._session_factory) as session:
            await self._require_artifact(session, user_id, artifact_id)
            result = await session.execute(
                select(ArtifactVersionRow)
                .where(ArtifactVersionRow.artifact_id == artifact_id)
                .order_by(
                    ArtifactVersionRow.version.desc(),
                    ArtifactVersionRow.created_at.desc(),
                )
                .limit(clamp_limit(limit, 10))
            )
            return [
                ArtifactVersionSummary.from_version(to_version(row))
                for row in result.scalars().all()
            ]

    async def get_version(self, version_id: str) -> Optional[ArtifactVersion]:
        user_id = self._tenant()
        async with session_scope(self._session_factory) as session:
            row = await self._find_version(session, user_id, version_id)
            return to_version(row) if row is not None else None

    async def create(self, data: Union[ArtifactCreate, InputData]) -> Artifact:
        payload = coerce_input(ArtifactCreate, data)
        user_id = self._tenant()
        async with session_scope(self._session_factory) as session:
            await require_owned_project(session, user_id, payload.project_id)
            if await self._find_by_title(session, payload.project_id, payload.title):
                raise ConflictError(
                    f"Artifact '{payload.title}' already exists in this project"
                )
            timestamp = utc_now()
            row = ArtifactRow(
                id=generate_id(),
                project_id=payload.project_id,
                title=payload.title,
                artifact_type=payload.artifact_type.value,
                content=payload.content,
                summary=payload.summary,
                priority=payload.priority.value,
                tags=list(payload.tags),
                version=1,
                created_at=timestamp,
                updated_at=timestamp,
            )
            session.add(row)
            await session.flush()
            return to_artifact(row)

    async def update(self, artifact_id: str, data: Union[ArtifactUpdate, InputData]) -> Artifact:
        patch = coerce_input(ArtifactUpdate, data)
        user_id = self._tenant()
        async with session_scope(self._session_factory) as session:
            row = await self._require_artifact(session, user_id, artifact_id)

            changes: Dict[str, Any] = {}
            for name, value in patch.supplied().items():
                if isinstance(value, Priority):
                    value = value.value
                if getattr(row, name) != value:
                    changes[name] = value
            if not changes:
                return to_artifact(row)

            if "title" in changes and changes["title"].lower() != row.title.lower():
                await self._ensure_title_free(session, row.project_id, changes["title"], row.id)

            self._snapshot(session, row, ChangeSource.update)
            for name, value in changes.items():
                setattr(row, name, list(value) if name == "tags" else value)
            row.version = row.version + 1
            row.updated_at = utc_now()
            await session.flush()
            return to_artifact(row)

    async def archive(self, artifact_id: str) -> Artifact:
        user_id = self._tenant()
        async with session_scope(self._session_factory) as session:
            row = await self._require_artifact(session, user_id, artifact_id)
            if row.archived_at is not None:
                return to_artifact(row)
            self._snapshot(session, row, ChangeSource.archive)
            timestamp = utc_now()
            row.archived_at = timestamp
            row.updated_at = timestamp
            await session.flush()
            return to_artifact(row)

    async def restore(self, artifact_id: str) -> Artifact:
        user_id = self._tenant()
        async with session_scope(self._session_factory) as session:
            row = await self._require_artifact(session, user_id, artifact_id)
            if row.archived_at is None:
                return to_artifact(row)
            self._snapshot(session, row, ChangeSource.restore)
            row.archived_at = None
            row.version = row.version + 1
            row.updated_at = utc_now()
            await session.flush()
            return to_artifact(row)

    async def rollback(self, artifact_id: str, version_id: str) -> Artifact:
        user_id = self._tenant()
        async with session_scope(self._session_factory) as session:
            row = await self._require_artifact(session, user_id, artifact_id)
            target = await self._find_version(session, user_id, version_id)
            if target is None or target.artifact_id != artifact_id:
                raise NotFoundError("Version", version_id)

            if target.title.lower() != row.title.lower():
                await self._ensure_title_free(session, row.project_id, target.title, row.id)

            self._snapshot(session, row, ChangeSource.rollback)
            row.title = target.title
            row.content = target.content
            row.summary = target.summary
            row.priority = target.priority or row.priority
            row.version = row.version + 1
            row.updated_at = utc_now()
            await session.flush()
            return to_artifact(row)
