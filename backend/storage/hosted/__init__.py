"""
Hosted storage adapter.

A network database (Postgres via asyncpg in production) shared by many
tenants. `initialize()` resolves the caller's API key to a tenant id and
every store operation is scoped to it.
"""

import logging
from typing import List, Optional, Union

from sqlalchemy import func, literal_column, or_, select
from sqlalchemy.ext.asyncio import create_async_engine

from ..errors import StorageError
from ..interface import InputData
from ..records import SearchOptions, SearchResult, clamp_limit, coerce_input
from ..session import (
    enable_sqlite_foreign_keys,
    engine_options,
    make_session_factory,
    session_scope,
)
from ..snippets import escape_like_pattern, extract_snippet
from ..utils import to_iso
from .artifacts import HostedArtifactStore
from .auth import API_KEY_PREFIX, hash_api_key, issue_api_key, validate_api_key
from .projects import HostedProjectStore
from .tables import ArtifactRow, Base, ProjectRow, search_document

logger = logging.getLogger(__name__)


class HostedAdapter:
    """Multi-tenant backend authenticated by a `ctx_` API key."""

    def __init__(
        self,
        database_url: str,
        api_key: Optional[str],
        create_schema: bool = False,
    ):
        if not database_url:
            raise ValueError("HostedAdapter requires a database_url")
        self.database_url = database_url
        self._api_key = api_key
        self._create_schema = create_schema
        self._user_id: Optional[str] = None

        self.engine = create_async_engine(
            database_url, echo=False, **engine_options(database_url)
        )
        if self.engine.dialect.name == "sqlite":
            enable_sqlite_foreign_keys(self.engine)
        self.session_factory = make_session_factory(self.engine)
        self.projects = HostedProjectStore(self.session_factory, self._require_user)
        self.artifacts = HostedArtifactStore(self.session_factory, self._require_user)

    @property
    def user_id(self) -> Optional[str]:
        return self._user_id

    def _require_user(self) -> str:
        if self._user_id is None:
            raise StorageError("Hosted storage is not initialized; call initialize() first")
        return self._user_id

    async def create_schema(self) -> None:
        """Create any missing tables and indexes (development and tests)."""
        async with self.engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)

    async def initialize(self) -> None:
        """Create the schema when asked to, then authenticate the API key."""
        if self._create_schema:
            await self.create_schema()
        async with session_scope(self.session_factory) as session:
            self._user_id = await validate_api_key(session, self._api_key)
        logger.info("Hosted store authenticated tenant %s", self._user_id)

    async def close(self) -> None:
        self._user_id = None
        await self.engine.dispose()

    async def search(
        self, query: str, options: Union[SearchOptions, InputData, None] = None
    ) -> List[SearchResult]:
        opts = coerce_input(SearchOptions, options)
        limit = clamp_limit(opts.limit, 20)
        user_id = self._require_user()

        base = (
            select(ArtifactRow, ProjectRow.name.label("project_name"))
            .join(ProjectRow, ProjectRow.id == ArtifactRow.project_id)
            .where(ProjectRow.user_id == user_id)
            .where(ArtifactRow.archived_at.is_(None))
        )
        if opts.project_id:
            base = base.where(ArtifactRow.project_id == opts.project_id)

        if self.engine.dialect.name == "postgresql":
            ts_query = func.plainto_tsquery(literal_column("'english'"), query)
            rank = func.ts_rank(search_document(), ts_query)
            stmt = (
                base.add_columns(rank.label("rank"))
                .where(search_document().op("@@")(ts_query))
                .order_by(rank.desc())
                .limit(limit)
            )
        else:
            pattern = f"%{escape_like_pattern(query)}%"
            stmt = (
                base.where(
                    or_(
                        ArtifactRow.title.ilike(pattern, escape="\\"),
                        ArtifactRow.content.ilike(pattern, escape="\\"),
                        ArtifactRow.summary.ilike(pattern, escape="\\"),
                    )
                )
                .order_by(ArtifactRow.updated_at.desc())
                .limit(limit)
            )

        async with session_scope(self.session_factory) as session:
            rows = (await session.execute(stmt)).all()

        results: List[SearchResult] = []
        for row in rows:
            artifact = row[0]
            score = float(row.rank) if "rank" in row._fields else 1.0
            results.append(
                SearchResult(
                    id=artifact.id,
                    artifact_id=artifact.id,
                    project_id=artifact.project_id,
                    project_name=row.project_name,
                    title=artifact.title,
                    artifact_type=artifact.artifact_type,
                    summary=artifact.summary,
                    priority=artifact.priority,
                    snippet=extract_snippet(artifact.content, query, artifact.summary),
                    updated_at=to_iso(artifact.updated_at),
                    score=score,
                )
            )
        return results

    async def issue_api_key(self, user_id: str, name: Optional[str] = None) -> str:
        return await issue_api_key(self.session_factory, user_id, name=name)


__all__ = [
    "API_KEY_PREFIX",
    "HostedAdapter",
    "HostedArtifactStore",
    "HostedProjectStore",
    "hash_api_key",
    "issue_api_key",
    "validate_api_key",
]
