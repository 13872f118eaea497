import hmac
from typing import Optional

from fastapi import Header, HTTPException, Request, status

from settings import load_settings

API_KEY_HEADER = "X-Contextable-API-Key"
_LOOPBACK_CLIENT_HOSTS = {"127.0.0.1", "::1", "localhost"}


def _is_loopback_request(request: Request) -> bool:
    client = getattr(request, "client", None)
    host = str(getattr(client, "host", "") or "").strip().lower()
    return host in _LOOPBACK_CLIENT_HOSTS


def _extract_bearer_token(authorization: Optional[str]) -> Optional[str]:
    if not authorization or not isinstance(authorization, str):
        return None
    value = authorization.strip()
    if not value:
        return None
    scheme, _, token = value.partition(" ")
    if scheme.lower() != "bearer":
        return None
    token = token.strip()
    return token if token else None


def _auth_failed(reason: str) -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail={"error": "auth_failed", "reason": reason},
        headers={"WWW-Authenticate": "Bearer"},
    )


async def require_api_key(
    request: Request,
    x_contextable_api_key: Optional[str] = Header(default=None, alias=API_KEY_HEADER),
    authorization: Optional[str] = Header(default=None, alias="Authorization"),
) -> None:
    """
    Guard for every data route.

    With CONTEXTABLE_HTTP_API_KEY set, callers must send it in the
    X-Contextable-API-Key header or as a bearer token. Without it, only
    loopback clients get through, and only when
    CONTEXTABLE_HTTP_ALLOW_INSECURE_LOCAL is enabled.
    """
    settings = load_settings()
    configured = settings.http_api_key or ""
    if not configured:
        if settings.http_allow_insecure_local and _is_loopback_request(request):
            return
        reason = (
            "insecure_local_override_requires_loopback"
            if settings.http_allow_insecure_local
            else "api_key_not_configured"
        )
        raise _auth_failed(reason)

    provided = str(x_contextable_api_key or "").strip() or _extract_bearer_token(authorization)
    if not provided or not hmac.compare_digest(provided, configured):
        raise _auth_failed("invalid_or_missing_api_key")
