"""Tenant-scoped project store for the hosted backend."""

import logging
from typing import Callable, List, Optional, Union

from sqlalchemy import delete, func, select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from ..errors import ConflictError, NotFoundError
from ..interface import InputData
from ..records import (
    Project,
    ProjectCreate,
    ProjectListOptions,
    ProjectUpdate,
    clamp_limit,
    coerce_input,
)
from ..session import session_scope
from ..utils import generate_id, to_iso, utc_now
from .tables import ArtifactRow, ArtifactVersionRow, ProjectRow

logger = logging.getLogger(__name__)

TenantResolver = Callable[[], str]


def to_project(row: ProjectRow) -> Project:
    return Project(
        id=row.id,
        name=row.name,
        description=row.description,
        tags=list(row.tags or []),
        status=row.status,
        config=dict(row.config or {}),
        created_at=to_iso(row.created_at),
        updated_at=to_iso(row.updated_at),
    )


async def find_owned_project(
    session: AsyncSession, user_id: str, project_id: str
) -> Optional[ProjectRow]:
    result = await session.execute(
        select(ProjectRow)
        .where(ProjectRow.id == project_id)
        .where(ProjectRow.user_id == user_id)
    )
    return result.scalars().first()


async def require_owned_project(
    session: AsyncSession, user_id: str, project_id: str
) -> ProjectRow:
    """Another tenant's project is reported as missing, never as forbidden."""
    row = await find_owned_project(session, user_id, project_id)
    if row is None:
        raise NotFoundError("Project", project_id)
    return row


async def find_project_by_name(
    session: AsyncSession, user_id: str, name: str
) -> Optional[ProjectRow]:
    result = await session.execute(
        select(ProjectRow)
        .where(ProjectRow.user_id == user_id)
        .where(func.lower(ProjectRow.name) == func.lower(name.strip()))
    )
    return result.scalars().first()


class HostedProjectStore:
    def __init__(self, session_factory: async_sessionmaker, tenant: TenantResolver):
        self._session_factory = session_factory
        self._tenant = tenant

    async def create(self, data: Union[ProjectCreate, InputData]) -> Project:
        payload = coerce_input(ProjectCreate, data)
        user_id = self._tenant()
        async with session_scope(self._session_factory) as session:
            if await find_project_by_name(session, user_id, payload.name) is not None:
                raise ConflictError(f"Project '{payload.name}' already exists")
            timestamp = utc_now()
            row = ProjectRow(
                id=generate_id(),
                user_id=user_id,
                name=payload.name,
                description=payload.description,
                tags=list(payload.tags),
                status=payload.status.value,
                config=dict(payload.config),
                created_at=timestamp,
                updated_at=timestamp,
            )
            session.add(row)
            await session.flush()
            return to_project(row)

    async def get(self, project_id: str) -> Optional[Project]:
        user_id = self._tenant()
        async with session_scope(self._session_factory) as session:
            row = await find_owned_project(session, user_id, project_id)
            return to_project(row) if row is not None else None

    async def get_by_name(self, name: str) -> Optional[Project]:
        user_id = self._tenant()
        async with session_scope(self._session_factory) as session:
            row = await find_project_by_name(session, user_id, name)
            return to_project(row) if row is not None else None

    async def list(
        self, options: Union[ProjectListOptions, InputData, None] = None
    ) -> List[Project]:
        opts = coerce_input(ProjectListOptions, options)
        stmt = select(ProjectRow).where(ProjectRow.user_id == self._tenant())
        if opts.status is not None:
            stmt = stmt.where(ProjectRow.status == opts.status.value)
        stmt = (
            stmt.order_by(ProjectRow.updated_at.desc())
            .limit(clamp_limit(opts.limit, 20))
            .offset(opts.offset)
        )
        async with session_scope(self._session_factory) as session:
            result = await session.execute(stmt)
            return [to_project(row) for row in result.scalars().all()]

    async def update(
        self, project_id: str, data: Union[ProjectUpdate, InputData]
    ) -> Project:
        patch = coerce_input(ProjectUpdate, data)
        user_id = self._tenant()
        async with session_scope(self._session_factory) as session:
            row = await require_owned_project(session, user_id, project_id)
            fields = patch.model_fields_set
            if not fields:
                return to_project(row)

            if "name" in fields and patch.name is not None:
                if patch.name.lower() != row.name.lower():
                    clash = await find_project_by_name(session, user_id, patch.name)
                    if clash is not None and clash.id != row.id:
                        raise ConflictError(f"Project '{patch.name}' already exists")
                row.name = patch.name
            if "description" in fields:
                row.description = patch.description
            if "tags" in fields and patch.tags is not None:
                row.tags = list(patch.tags)
            if "status" in fields and patch.status is not None:
                row.status = patch.status.value
            if "config" in fields and patch.config is not None:
                row.config = {**(row.config or {}), **patch.config}
            row.updated_at = utc_now()
            await session.flush()
            return to_project(row)

    async def delete(self, project_id: str) -> None:
        user_id = self._tenant()
        async with session_scope(self._session_factory) as session:
            await require_owned_project(session, user_id, project_id)
            artifact_ids = select(ArtifactRow.id).where(ArtifactRow.project_id == project_id)
            await session.execute(
                delete(ArtifactVersionRow)
                .where(ArtifactVersionRow.artifact_id.in_(artifact_ids))
                .execution_options(synchronize_session=False)
            )
            await session.execute(delete(ArtifactRow).where(ArtifactRow.project_id == project_id))
            await session.execute(delete(ProjectRow).where(ProjectRow.id == project_id))
            logger.debug("Deleted project %s for tenant %s", project_id, user_id)

    async def count_artifacts(self, project_id: str) -> int:
        user_id = self._tenant()
        async with session_scope(self._session_factory) as session:
            await require_owned_project(session, user_id, project_id)
            result = await session.execute(
                select(func.count())
                .select_from(ArtifactRow)
                .where(ArtifactRow.project_id == project_id)
                .where(ArtifactRow.archived_at.is_(None))
            )
            return int(result.scalar_one())
