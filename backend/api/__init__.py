from .artifacts import router as artifacts_router
from .projects import router as projects_router

__all__ = ["artifacts_router", "projects_router"]
