"""
SQL migration runner for the embedded store.

Migrations are SQL files under backend/storage/migrations with names like:
    0001_description.sql

Applied versions are tracked in `schema_migrations`.
"""

from __future__ import annotations

import asyncio
import hashlib
import logging
import os
import re
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, List, Optional, Union
from urllib.parse import unquote

from filelock import FileLock, Timeout
from sqlalchemy.exc import OperationalError
from sqlalchemy.ext.asyncio import AsyncConnection, AsyncEngine

from .errors import StorageError
from .utils import utc_now_iso

logger = logging.getLogger(__name__)

_SQLITE_FILE_PREFIXES = ("sqlite+aiosqlite:///", "sqlite:///")
_MIGRATION_FILE_PATTERN = re.compile(r"^(?P<version>\d{4,})_.*\.sql$")
_ROLLBACK_SUFFIX = ".rollback.sql"
_ADD_COLUMN_PATTERN = re.compile(
    r"^ALTER\s+TABLE\s+.+\s+ADD\s+COLUMN\s+.+$",
    re.IGNORECASE | re.DOTALL,
)
_TRIGGER_PATTERN = re.compile(r"^CREATE\s+(TEMP\w*\s+)?TRIGGER\b", re.IGNORECASE)
_TRIGGER_END_PATTERN = re.compile(r"\bEND$", re.IGNORECASE)

DEFAULT_MIGRATIONS_DIR = Path(__file__).resolve().parent / "migrations"


@dataclass(frozen=True)
class MigrationFile:
    version: str
    path: Path
    checksum: str


def extract_sqlite_file_path(database_url: str) -> Optional[Path]:
    """
    Local file path of a sqlite SQLAlchemy URL, or None for in-memory URLs.

    Supports:
    - sqlite+aiosqlite:///absolute/path.db
    - sqlite:///absolute/path.db
    """
    for prefix in _SQLITE_FILE_PREFIXES:
        if not database_url.startswith(prefix):
            continue
        raw_path = database_url[len(prefix) :]
        raw_path = raw_path.split("?", 1)[0].split("#", 1)[0]
        raw_path = unquote(raw_path)
        if not raw_path or raw_path == ":memory:":
            return None
        return Path(raw_path)
    if database_url.rstrip("/") in ("sqlite+aiosqlite:", "sqlite:"):
        return None
    raise ValueError(
        "Unsupported database URL for migration runner. "
        "Expected sqlite+aiosqlite:///... or sqlite:///..."
    )


class MigrationRunner:
    """Discover SQL migrations and apply pending ones through an async engine."""

    def __init__(
        self,
        database_url: str,
        migrations_dir: Optional[Path] = None,
        lock_file_path: Optional[Union[Path, str]] = None,
        lock_timeout_seconds: float = 10.0,
    ) -> None:
        self.database_url = database_url
        self.database_file = extract_sqlite_file_path(database_url)
        self.migrations_dir = (
            Path(migrations_dir) if migrations_dir is not None else DEFAULT_MIGRATIONS_DIR
        )
        default_lock_file: Optional[Path] = None
        if self.database_file is not None:
            default_lock_file = Path(f"{self.database_file}.migrate.lock")
        configured_env_lock = self._normalize_lock_path(
            os.getenv("DB_MIGRATION_LOCK_FILE", "").strip()
        )
        explicit_lock_path = self._normalize_lock_path(lock_file_path)
        if explicit_lock_path is not None:
            self.lock_file_path = explicit_lock_path
        elif configured_env_lock is not None:
            self.lock_file_path = configured_env_lock
        else:
            self.lock_file_path = default_lock_file
        env_timeout = os.getenv("DB_MIGRATION_LOCK_TIMEOUT_SEC")
        if env_timeout is not None:
            try:
                lock_timeout_seconds = float(env_timeout)
            except ValueError:
                logger.warning("Ignoring malformed DB_MIGRATION_LOCK_TIMEOUT_SEC=%r", env_timeout)
        self.lock_timeout_seconds = max(0.0, lock_timeout_seconds)

    def _normalize_lock_path(self, raw_path: Optional[Union[Path, str]]) -> Optional[Path]:
        if raw_path is None:
            return None
        text_value = str(raw_path).strip()
        if not text_value:
            return None
        candidate = Path(text_value).expanduser()
        if candidate.is_absolute():
            return candidate.resolve()
        if self.database_file is not None:
            return (self.database_file.parent / candidate).resolve()
        return candidate.resolve()

    async def apply_pending(self, engine: AsyncEngine) -> List[str]:
        """Apply all pending migrations and return the versions applied."""
        migration_files = self.discover_migrations()
        if not migration_files:
            return []

        # In-memory databases have a single connection and nothing to race with.
        if self.database_file is None or self.lock_file_path is None:
            return await self._apply_pending_unlocked(engine, migration_files)

        self.lock_file_path.parent.mkdir(parents=True, exist_ok=True)
        lock = FileLock(
            str(self.lock_file_path),
            timeout=self.lock_timeout_seconds,
            thread_local=False,
        )
        try:
            await asyncio.to_thread(lock.acquire)
        except Timeout as exc:
            raise StorageError(
                "Timed out waiting for migration lock: "
                f"{self.lock_file_path} ({self.lock_timeout_seconds}s)",
                cause=exc,
            ) from exc
        try:
            return await self._apply_pending_unlocked(engine, migration_files)
        finally:
            lock.release()

    async def _apply_pending_unlocked(
        self, engine: AsyncEngine, migration_files: List[MigrationFile]
    ) -> List[str]:
        if self.database_file is not None:
            self.database_file.parent.mkdir(parents=True, exist_ok=True)

        async with engine.begin() as conn:
            await self._ensure_schema_table(conn)
            applied_map = await self._load_applied_checksums(conn)

        applied_versions: List[str] = []
        for migration in migration_files:
            recorded_checksum = applied_map.get(migration.version)
            if recorded_checksum is not None:
                if recorded_checksum != migration.checksum:
                    raise StorageError(
                        "Checksum mismatch for migration "
                        f"{migration.version}: recorded={recorded_checksum} "
                        f"current={migration.checksum}"
                    )
                continue

            script = migration.path.read_text(encoding="utf-8")
            async with engine.begin() as conn:
                await self._execute_sql_script(conn, script)
                await conn.exec_driver_sql(
                    "INSERT INTO schema_migrations(version, applied_at, checksum) "
                    "VALUES (?, ?, ?)",
                    (migration.version, utc_now_iso(), migration.checksum),
                )
            logger.info("Applied migration %s (%s)", migration.version, migration.path.name)
            applied_versions.append(migration.version)

        return applied_versions

    def discover_migrations(self) -> List[MigrationFile]:
        if not self.migrations_dir.exists():
            return []

        discovered: List[MigrationFile] = []
        for path in sorted(self.migrations_dir.glob("*.sql")):
            if path.name.endswith(_ROLLBACK_SUFFIX):
                continue
            match = _MIGRATION_FILE_PATTERN.match(path.name)
            if not match:
                continue
            discovered.append(
                MigrationFile(
                    version=match.group("version"),
                    path=path,
                    checksum=self._normalized_checksum(path.read_bytes()),
                )
            )
        return discovered

    @staticmethod
    def _normalized_checksum(content: bytes) -> str:
        """SHA-256 with CRLF/CR normalised to LF, so checkouts on any platform agree."""
        try:
            normalized = content.decode("utf-8").replace("\r\n", "\n").replace("\r", "\n")
            payload = normalized.encode("utf-8")
        except UnicodeDecodeError:
            payload = content
        return hashlib.sha256(payload).hexdigest()

    @staticmethod
    async def _ensure_schema_table(conn: AsyncConnection) -> None:
        await conn.exec_driver_sql(
            """
            CREATE TABLE IF NOT EXISTS schema_migrations (
                version TEXT PRIMARY KEY,
                applied_at TEXT NOT NULL,
                checksum TEXT NOT NULL
            )
            """
        )

    @staticmethod
    async def _load_applied_checksums(conn: AsyncConnection) -> Dict[str, str]:
        result = await conn.exec_driver_sql("SELECT version, checksum FROM schema_migrations")
        return {str(row[0]): str(row[1]) for row in result.fetchall()}

    @staticmethod
    async def _execute_sql_script(conn: AsyncConnection, script: str) -> None:
        for statement in MigrationRunner.iter_sql_statements(script):
            try:
                await conn.exec_driver_sql(statement)
            except OperationalError as exc:
                if MigrationRunner._is_ignorable_add_column_error(statement, exc):
                    logger.debug("Column already present, skipping: %s", statement)
                    continue
                raise

    @staticmethod
    def iter_sql_statements(script: str) -> List[str]:
        """
        Split a script on top-level semicolons.

        Quoted text and `--` comments are respected, and a `CREATE TRIGGER`
        statement keeps accumulating until its closing `END`.
        """
        statements: List[str] = []
        buffer: List[str] = []
        in_single_quote = False
        in_double_quote = False
        in_comment = False

        for char in script:
            if in_comment:
                buffer.append(char)
                if char == "\n":
                    in_comment = False
                continue
            if char == "-" and buffer and buffer[-1] == "-" and not (in_single_quote or in_double_quote):
                in_comment = True
            elif char == "'" and not in_double_quote:
                in_single_quote = not in_single_quote
            elif char == '"' and not in_single_quote:
                in_double_quote = not in_double_quote

            if char == ";" and not in_single_quote and not in_double_quote:
                candidate = MigrationRunner._strip_comments("".join(buffer))
                if _TRIGGER_PATTERN.match(candidate) and not _TRIGGER_END_PATTERN.search(candidate):
                    buffer.append(char)
                    continue
                if candidate:
                    statements.append(candidate)
                buffer = []
            else:
                buffer.append(char)

        tail = MigrationRunner._strip_comments("".join(buffer))
        if tail:
            statements.append(tail)
        return statements

    @staticmethod
    def _strip_comments(statement: str) -> str:
        lines = [
            line for line in statement.splitlines() if not line.strip().startswith("--")
        ]
        return "\n".join(lines).strip()

    @staticmethod
    def _is_ignorable_add_column_error(statement: str, exc: OperationalError) -> bool:
        if not _ADD_COLUMN_PATTERN.match(statement):
            return False
        return "duplicate column name" in str(exc).lower()
