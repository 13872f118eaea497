"""
Runtime configuration for Contextable.

Values come from the environment (a `.env` file found from the working
directory is loaded first). `load_settings()` returns an immutable snapshot;
keyword overrides win over the environment, which is handy in tests.
"""

import logging
import os
import sys
from dataclasses import dataclass, replace
from pathlib import Path
from typing import Any, List, Optional

from dotenv import find_dotenv, load_dotenv

_dotenv_path = find_dotenv(usecwd=True)
if _dotenv_path:
    load_dotenv(_dotenv_path)

VALID_MODES = ("local", "hosted")
LOG_LEVELS = {
    "debug": logging.DEBUG,
    "info": logging.INFO,
    "warn": logging.WARNING,
    "warning": logging.WARNING,
    "error": logging.ERROR,
}

DEFAULT_HOST = "127.0.0.1"
DEFAULT_PORT = 3000
_LOG_FORMAT = "%(asctime)s %(levelname)s [%(name)s] %(message)s"


def _env_str(name: str, default: Optional[str] = None) -> Optional[str]:
    raw = os.getenv(name)
    if raw is None:
        return default
    value = raw.strip()
    return value or default


def _env_int(name: str, default: int, minimum: int = 0) -> int:
    """Read int env with a safe fallback."""
    raw = os.getenv(name)
    if raw is None:
        return default
    try:
        return max(minimum, int(raw))
    except ValueError:
        return default


def _env_bool(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    return raw.strip().lower() in {"1", "true", "yes", "on", "enabled"}


@dataclass(frozen=True)
class Settings:
    mode: str = "local"
    data_dir: Path = Path("~/.contextable").expanduser()
    db_path: Path = Path("~/.contextable/data.db").expanduser()
    database_url: Optional[str] = None
    api_key: Optional[str] = None
    log_level: str = "info"
    http_api_key: Optional[str] = None
    http_allow_insecure_local: bool = False
    host: str = DEFAULT_HOST
    port: int = DEFAULT_PORT

    @property
    def is_hosted(self) -> bool:
        return self.mode == "hosted"

    @property
    def sqlite_url(self) -> str:
        return f"sqlite+aiosqlite:///{self.db_path}"

    def problems(self) -> List[str]:
        found: List[str] = []
        if self.mode not in VALID_MODES:
            found.append(f"CONTEXTABLE_MODE must be one of {', '.join(VALID_MODES)} (got {self.mode!r})")
        if self.log_level not in LOG_LEVELS:
            found.append(f"CONTEXTABLE_LOG_LEVEL must be debug, info, warn or error (got {self.log_level!r})")
        if self.mode == "hosted":
            if not self.database_url:
                found.append("CONTEXTABLE_DATABASE_URL is required in hosted mode")
            if not self.api_key:
                found.append("CONTEXTABLE_API_KEY is required in hosted mode")
        if not 0 < self.port < 65536:
            found.append(f"CONTEXTABLE_PORT must be between 1 and 65535 (got {self.port})")
        return found

    def validate(self) -> "Settings":
        found = self.problems()
        if found:
            raise RuntimeError("Configuration invalid: " + "; ".join(found))
        return self


def load_settings(**overrides: Any) -> Settings:
    """Build settings from the environment, then apply keyword overrides."""
    api_key = _env_str("CONTEXTABLE_API_KEY")
    mode = (_env_str("CONTEXTABLE_MODE") or ("hosted" if api_key else "local")).lower()
    data_dir = Path(_env_str("CONTEXTABLE_DATA_DIR", "~/.contextable")).expanduser()
    db_path_raw = _env_str("CONTEXTABLE_DB_PATH")
    db_path = Path(db_path_raw).expanduser() if db_path_raw else data_dir / "data.db"

    settings = Settings(
        mode=mode,
        data_dir=data_dir,
        db_path=db_path,
        database_url=_env_str("CONTEXTABLE_DATABASE_URL"),
        api_key=api_key,
        log_level=(_env_str("CONTEXTABLE_LOG_LEVEL", "info") or "info").lower(),
        http_api_key=_env_str("CONTEXTABLE_HTTP_API_KEY"),
        http_allow_insecure_local=_env_bool("CONTEXTABLE_HTTP_ALLOW_INSECURE_LOCAL", False),
        host=_env_str("CONTEXTABLE_HOST", DEFAULT_HOST),
        port=_env_int("CONTEXTABLE_PORT", DEFAULT_PORT, minimum=1),
    )
    if overrides:
        if "data_dir" in overrides and "db_path" not in overrides:
            overrides["db_path"] = Path(overrides["data_dir"]) / "data.db"
        for key in ("data_dir", "db_path"):
            if key in overrides and overrides[key] is not None:
                overrides[key] = Path(overrides[key]).expanduser()
        settings = replace(settings, **overrides)
    return settings


def configure_logging(settings: Optional[Settings] = None) -> None:
    """
    Route log records to stderr at the configured level.

    stdout stays clean because the stdio tool transport owns it.
    """
    settings = settings or load_settings()
    level = LOG_LEVELS.get(settings.log_level, logging.INFO)
    root = logging.getLogger()
    root.setLevel(level)
    for handler in root.handlers:
        if getattr(handler, "_contextable", False):
            handler.setLevel(level)
            return
    handler = logging.StreamHandler(sys.stderr)
    handler.setFormatter(logging.Formatter(_LOG_FORMAT))
    handler.setLevel(level)
    handler._contextable = True
    root.addHandler(handler)
