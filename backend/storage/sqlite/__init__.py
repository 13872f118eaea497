"""
Embedded storage adapter.

Single-file SQLite database (default ~/.contextable/data.db) reached through
SQLAlchemy's async engine over aiosqlite. Schema comes from the SQL
migrations; search uses the FTS5 shadow index with a LIKE fallback.
"""

import logging
from pathlib import Path
from typing import List, Optional, Union

from sqlalchemy import text
from sqlalchemy.exc import OperationalError
from sqlalchemy.ext.asyncio import create_async_engine

from ..interface import InputData
from ..migration_runner import MigrationRunner, extract_sqlite_file_path
from ..records import SearchOptions, SearchResult, clamp_limit, coerce_input
from ..session import (
    enable_sqlite_foreign_keys,
    engine_options,
    make_session_factory,
    session_scope,
)
from ..snippets import escape_like_pattern, extract_snippet, prepare_fts_query
from .artifacts import SQLiteArtifactStore
from .projects import SQLiteProjectStore

logger = logging.getLogger(__name__)

_FTS_SEARCH_SQL = """
    SELECT
        a.id AS artifact_id,
        a.project_id,
        p.name AS project_name,
        a.title,
        a.artifact_type,
        a.content,
        a.summary,
        a.priority,
        a.updated_at,
        bm25(artifacts_fts) AS rank
    FROM artifacts_fts
    JOIN artifacts a ON a.rowid = artifacts_fts.rowid
    JOIN projects p ON p.id = a.project_id
    WHERE artifacts_fts MATCH :query
      AND a.archived_at IS NULL
      {project_filter}
    ORDER BY rank
    LIMIT :limit
"""

_LIKE_SEARCH_SQL = """
    SELECT
        a.id AS artifact_id,
        a.project_id,
        p.name AS project_name,
        a.title,
        a.artifact_type,
        a.content,
        a.summary,
        a.priority,
        a.updated_at
    FROM artifacts a
    JOIN projects p ON p.id = a.project_id
    WHERE a.archived_at IS NULL
      AND (
        a.title LIKE :pattern ESCAPE '\\'
        OR a.content LIKE :pattern ESCAPE '\\'
        OR a.summary LIKE :pattern ESCAPE '\\'
      )
      {project_filter}
    ORDER BY a.updated_at DESC
    LIMIT :limit
"""

_FTS_SYNTAX_MARKERS = ("fts5:", "unterminated string", "syntax error")


def is_fts_syntax_error(exc: OperationalError) -> bool:
    """True only for MATCH expressions FTS5 cannot parse, not engine faults."""
    message = str(exc.orig if exc.orig is not None else exc).lower()
    return any(marker in message for marker in _FTS_SYNTAX_MARKERS)


def default_database_url(db_path: Union[str, Path]) -> str:
    return f"sqlite+aiosqlite:///{Path(db_path).expanduser()}"


class SQLiteAdapter:
    """Embedded backend: one local database, no tenancy."""

    def __init__(
        self,
        database_url: Optional[str] = None,
        db_path: Optional[Union[str, Path]] = None,
        in_memory: bool = False,
        migrations_dir: Optional[Path] = None,
    ):
        if in_memory:
            database_url = "sqlite+aiosqlite:///:memory:"
        elif database_url is None:
            if db_path is None:
                raise ValueError("SQLiteAdapter needs a database_url, db_path or in_memory=True")
            database_url = default_database_url(db_path)

        self.database_url = database_url
        self.engine = create_async_engine(
            database_url, echo=False, **engine_options(database_url)
        )
        enable_sqlite_foreign_keys(self.engine)
        self._session_factory = make_session_factory(self.engine)
        self._migrations = MigrationRunner(database_url, migrations_dir=migrations_dir)
        self.projects = SQLiteProjectStore(self._session_factory)
        self.artifacts = SQLiteArtifactStore(self._session_factory)

    async def initialize(self) -> None:
        """Apply pending migrations. Safe to call more than once."""
        database_file = extract_sqlite_file_path(self.database_url)
        if database_file is not None:
            database_file.parent.mkdir(parents=True, exist_ok=True)
        applied = await self._migrations.apply_pending(self.engine)
        if applied:
            logger.info("Embedded store migrated: %s", ", ".join(applied))
        else:
            logger.debug("Embedded store schema up to date")

    async def close(self) -> None:
        await self.engine.dispose()

    async def search(
        self, query: str, options: Union[SearchOptions, InputData, None] = None
    ) -> List[SearchResult]:
        """
        Ranked full-text search over active artifacts.

        A query FTS5 cannot parse falls back to a substring match ordered
        by recency with a flat score of 1.0. Any other database failure
        raises StorageError.
        """
        opts = coerce_input(SearchOptions, options)
        limit = clamp_limit(opts.limit, 20)
        params = {"query": prepare_fts_query(query), "limit": limit}
        project_filter = ""
        if opts.project_id:
            project_filter = "AND a.project_id = :project_id"
            params["project_id"] = opts.project_id

        sql = text(_FTS_SEARCH_SQL.format(project_filter=project_filter))
        rows = None
        async with session_scope(self._session_factory) as session:
            try:
                rows = (await session.execute(sql, params)).mappings().all()
            except OperationalError as exc:
                if not is_fts_syntax_error(exc):
                    raise
                logger.info("FTS query rejected, using substring fallback: %s", exc.orig)
                await session.rollback()
        if rows is None:
            return await self._fallback_search(query, opts.project_id, limit)

        return [self._to_result(row, query, -float(row["rank"])) for row in rows]

    async def _fallback_search(
        self, query: str, project_id: Optional[str], limit: int
    ) -> List[SearchResult]:
        params = {"pattern": f"%{escape_like_pattern(query)}%", "limit": limit}
        project_filter = ""
        if project_id:
            project_filter = "AND a.project_id = :project_id"
            params["project_id"] = project_id
        sql = text(_LIKE_SEARCH_SQL.format(project_filter=project_filter))
        async with session_scope(self._session_factory) as session:
            rows = (await session.execute(sql, params)).mappings().all()
        return [self._to_result(row, query, 1.0) for row in rows]

    @staticmethod
    def _to_result(row, query: str, score: float) -> SearchResult:
        return SearchResult(
            id=row["artifact_id"],
            artifact_id=row["artifact_id"],
            project_id=row["project_id"],
            project_name=row["project_name"],
            title=row["title"],
            artifact_type=row["artifact_type"],
            summary=row["summary"],
            priority=row["priority"],
            snippet=extract_snippet(row["content"], query, row["summary"]),
            updated_at=row["updated_at"],
            score=score,
        )


__all__ = ["SQLiteAdapter", "SQLiteArtifactStore", "SQLiteProjectStore", "default_database_url"]
