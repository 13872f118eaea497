"""Project store for the embedded backend."""

import logging
from typing import List, Optional, Union

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
from ..utils import generate_id, utc_now_iso
from .tables import ArtifactRow, ProjectRow

logger = logging.getLogger(__name__)


def to_project(row: ProjectRow) -> Project:
    return Project(
        id=row.id,
        name=row.name,
        description=row.description,
        tags=list(row.tags or []),
        status=row.status,
        config=dict(row.config or {}),
        created_at=row.created_at,
        updated_at=row.updated_at,
    )


async def find_project_by_name(
    session: AsyncSession, name: str
) -> Optional[ProjectRow]:
    # Names are stored stripped, under the NOCASE collation of the UNIQUE constraint.
    result = await session.execute(
        select(ProjectRow).where(ProjectRow.name.collate("NOCASE") == name.strip())
    )
    return result.scalars().first()


async def require_project(session: AsyncSession, project_id: str) -> ProjectRow:
    row = await session.get(ProjectRow, project_id)
    if row is None:
        raise NotFoundError("Project", project_id)
    return row


class SQLiteProjectStore:
    """Projects in the embedded database. Names are unique case-insensitively."""

    def __init__(self, session_factory: async_sessionmaker):
        self._session_factory = session_factory

    async def create(self, data: Union[ProjectCreate, InputData]) -> Project:
        payload = coerce_input(ProjectCreate, data)
        async with session_scope(self._session_factory) as session:
            if await find_project_by_name(session, payload.name) is not None:
                raise ConflictError(f"Project '{payload.name}' already exists")
            timestamp = utc_now_iso()
            row = ProjectRow(
                id=generate_id(),
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
            logger.debug("Created project %s", row.id)
            return to_project(row)

    async def get(self, project_id: str) -> Optional[Project]:
        async with session_scope(self._session_factory) as session:
            row = await session.get(ProjectRow, project_id)
            return to_project(row) if row is not None else None

    async def get_by_name(self, name: str) -> Optional[Project]:
        async with session_scope(self._session_factory) as session:
            row = await find_project_by_name(session, name)
            return to_project(row) if row is not None else None

    async def list(
        self, options: Union[ProjectListOptions, InputData, None] = None
    ) -> List[Project]:
        opts = coerce_input(ProjectListOptions, options)
        stmt = select(ProjectRow)
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
        changes = {
            name: getattr(patch, name)
            for name in patch.model_fields_set
            if getattr(patch, name) is not None or name == "description"
        }
        async with session_scope(self._session_factory) as session:
            row = await require_project(session, project_id)
            if not changes:
                return to_project(row)

            new_name = changes.get("name")
            if new_name is not None and new_name.lower() != row.name.lower():
                clash = await find_project_by_name(session, new_name)
                if clash is not None and clash.id != row.id:
                    raise ConflictError(f"Project '{new_name}' already exists")

            for name, value in changes.items():
                if name == "status":
                    value = value.value
                elif name == "config":
                    # Shallow merge; the column is reassigned so the change is tracked.
                    value = {**(row.config or {}), **value}
                elif name == "tags":
                    value = list(value)
                setattr(row, name, value)
            row.updated_at = utc_now_iso()
            await session.flush()
            return to_project(row)

    async def delete(self, project_id: str) -> None:
        async with session_scope(self._session_factory) as session:
            await require_project(session, project_id)
            # ON DELETE CASCADE removes artifacts and their versions.
            await session.execute(delete(ProjectRow).where(ProjectRow.id == project_id))
            logger.debug("Deleted project %s", project_id)

    async def count_artifacts(self, project_id: str) -> int:
        async with session_scope(self._session_factory) as session:
            await require_project(session, project_id)
            result = await session.execute(
                select(func.count())
                .select_from(ArtifactRow)
                .where(ArtifactRow.project_id == project_id)
                .where(ArtifactRow.archived_at.is_(None))
            )
            return int(result.scalar_one())
