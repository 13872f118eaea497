"""Backend selection and the process-wide storage instance."""

import asyncio
import logging
from typing import Optional, Union

from settings import Settings, load_settings

from .hosted import HostedAdapter
from .sqlite import SQLiteAdapter

logger = logging.getLogger(__name__)

_storage: Optional[Union[SQLiteAdapter, HostedAdapter]] = None
_storage_lock = asyncio.Lock()


def create_storage(settings: Optional[Settings] = None) -> Union[SQLiteAdapter, HostedAdapter]:
    """Build (but do not initialize) the adapter the settings ask for."""
    settings = (settings or load_settings()).validate()
    if settings.is_hosted:
        logger.info("Using hosted storage")
        return HostedAdapter(settings.database_url, settings.api_key)
    logger.info("Using embedded storage at %s", settings.db_path)
    return SQLiteAdapter(db_path=settings.db_path)


async def get_storage() -> Union[SQLiteAdapter, HostedAdapter]:
    """The shared, initialized adapter; created on first use."""
    global _storage
    if _storage is not None:
        return _storage
    async with _storage_lock:
        if _storage is None:
            adapter = create_storage()
            await adapter.initialize()
            _storage = adapter
    return _storage


async def close_storage() -> None:
    global _storage
    if _storage is not None:
        await _storage.close()
        _storage = None
