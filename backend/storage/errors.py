"""
Typed errors raised by the storage engine and the chunker.

Every store-level failure reaches the caller as one of these; nothing is
retried internally.
"""

from typing import Any, Dict, Optional


class ContextableError(Exception):
    """Base class carrying a stable error code and a user-facing hint."""

    code = "CONTEXTABLE_ERROR"

    def __init__(
        self,
        message: str,
        code: Optional[str] = None,
        suggestion: Optional[str] = None,
    ):
        super().__init__(message)
        self.message = message
        if code is not None:
            self.code = code
        self.suggestion = suggestion


class NotFoundError(ContextableError):
    code = "NOT_FOUND"

    def __init__(self, resource: str, identifier: Optional[str] = None):
        message = (
            f"{resource} '{identifier}' not found"
            if identifier
            else f"{resource} not found"
        )
        super().__init__(
            message, suggestion=f"Check that the {resource.lower()} exists"
        )
        self.resource = resource
        self.identifier = identifier


class ValidationError(ContextableError):
    code = "VALIDATION_ERROR"

    def __init__(self, message: str, field: Optional[str] = None):
        super().__init__(message, suggestion="Check the input format and try again")
        self.field = field


class ConflictError(ContextableError):
    code = "CONFLICT"

    def __init__(self, message: str):
        super().__init__(
            message, suggestion="A resource with this identifier already exists"
        )


class IntegrityError(ContextableError):
    code = "INTEGRITY_ERROR"

    def __init__(self, expected: str, actual: str):
        super().__init__(
            f"Checksum mismatch: expected {expected}, got {actual}",
            suggestion="Reload every part in order and try again",
        )
        self.expected = expected
        self.actual = actual


class StorageError(ContextableError):
    code = "STORAGE_ERROR"

    def __init__(self, message: str, cause: Optional[BaseException] = None):
        super().__init__(
            message, suggestion="Check database connection and try again"
        )
        self.cause = cause


class AuthenticationError(ContextableError):
    code = "AUTH_ERROR"

    def __init__(self, message: str):
        super().__init__(message, suggestion="Check CONTEXTABLE_API_KEY")


def format_error(error: BaseException) -> str:
    if isinstance(error, ContextableError):
        return error.message
    return str(error) or error.__class__.__name__


def format_error_response(error: BaseException) -> Dict[str, Any]:
    """Render an exception as the `{ok: false, ...}` payload used by the tool layer."""
    if isinstance(error, ContextableError):
        payload: Dict[str, Any] = {
            "ok": False,
            "error": error.code,
            "message": error.message,
        }
        if error.suggestion:
            payload["suggestion"] = error.suggestion
        return payload
    return {
        "ok": False,
        "error": "INTERNAL_ERROR",
        "message": format_error(error),
    }
