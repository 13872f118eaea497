import logging
from contextlib import asynccontextmanager
from typing import Any, Dict

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from api import artifacts_router, projects_router
from settings import configure_logging, load_settings
from storage import (
    AuthenticationError,
    ConflictError,
    ContextableError,
    IntegrityError,
    NotFoundError,
    StorageError,
    ValidationError,
    close_storage,
    format_error_response,
    get_storage,
)
from storage.utils import utc_now_iso

logger = logging.getLogger(__name__)

APP_VERSION = "0.1.0"

_ERROR_STATUS = (
    (NotFoundError, 404),
    (ValidationError, 422),
    (IntegrityError, 422),
    (ConflictError, 409),
    (AuthenticationError, 401),
    (StorageError, 503),
)


def status_for_error(error: ContextableError) -> int:
    for error_type, status_code in _ERROR_STATUS:
        if isinstance(error, error_type):
            return status_code
    return 400


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Open storage on startup and release it on shutdown."""
    configure_logging(load_settings())
    logger.info("Contextable API starting...")
    try:
        await get_storage()
    except Exception as e:
        logger.error("Failed to initialize storage: %s", e)
        raise RuntimeError("Failed to initialize storage during startup") from e

    yield

    logger.info("Closing storage...")
    await close_storage()


app = FastAPI(
    title="Contextable API",
    description="Versioned artifact storage for AI assistant projects",
    version=APP_VERSION,
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(projects_router)
app.include_router(artifacts_router)


@app.exception_handler(ContextableError)
async def contextable_error_handler(request: Request, exc: ContextableError):
    return JSONResponse(
        status_code=status_for_error(exc),
        content=format_error_response(exc),
    )


@app.get("/")
async def root():
    return {
        "message": "Contextable API",
        "version": APP_VERSION,
        "docs": "/docs",
    }


@app.get("/health")
async def health():
    """Liveness plus the active storage backend."""
    payload: Dict[str, Any] = {
        "status": "ok",
        "timestamp": utc_now_iso(),
    }
    try:
        storage = await get_storage()
        payload["storage"] = {
            "backend": "hosted" if hasattr(storage, "user_id") else "local",
            "dialect": storage.engine.dialect.name,
        }
    except Exception as e:
        logger.warning("Health check could not reach storage: %s", e)
        payload["status"] = "degraded"
        payload["storage"] = {"reason": str(e)}
    return payload


if __name__ == "__main__":
    import uvicorn

    settings = load_settings()
    uvicorn.run(app, host=settings.host, port=settings.port)
