from .errors import (
    AuthenticationError,
    ConflictError,
    ContextableError,
    IntegrityError,
    NotFoundError,
    StorageError,
    ValidationError,
    format_error,
    format_error_response,
)
from .factory import close_storage, create_storage, get_storage
from .hosted import HostedAdapter
from .interface import ArtifactStore, ProjectStore, StorageAdapter
from .sqlite import SQLiteAdapter

__all__ = [
    "ArtifactStore",
    "AuthenticationError",
    "ConflictError",
    "ContextableError",
    "HostedAdapter",
    "IntegrityError",
    "NotFoundError",
    "ProjectStore",
    "SQLiteAdapter",
    "StorageAdapter",
    "StorageError",
    "ValidationError",
    "close_storage",
    "create_storage",
    "format_error",
    "format_error_response",
    "get_storage",
]
