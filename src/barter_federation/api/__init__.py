from fastapi import APIRouter

from .v1.admin_routes import router as admin_router
from .v1.health import router as health_router
from .v1.server_routes import router as federation_router

api_router = APIRouter()
api_router.include_router(federation_router)
api_router.include_router(admin_router)
api_router.include_router(health_router)

__all__ = ["api_router"]
