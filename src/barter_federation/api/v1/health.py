from __future__ import annotations

from fastapi import APIRouter, Depends, HTTPException, Request, status
from sqlalchemy import text

from barter_federation.db import DatabaseSessionManager
from barter_federation.services import IdentityService

router = APIRouter(prefix="/health", tags=["health"])


def get_db_manager(request: Request) -> DatabaseSessionManager:
    """Dependency to get the database manager from the FastAPI app state."""
    return request.app.state.db_manager


def get_identity_service(request: Request) -> IdentityService:
    return request.app.state.identity_service


@router.get("/live")
async def liveness_check():
    """Liveness probe - indicates if the service is running."""
    return {"status": "alive", "service": "barter-federation"}


@router.get("/ready")
async def readiness_check(
    db_manager: DatabaseSessionManager = Depends(get_db_manager),
    identity: IdentityService = Depends(get_identity_service),
):
    """Readiness probe - indicates if the service is ready to accept requests."""
    checks = {
        "database": False,
        "identity": False,
    }

    try:
        with db_manager.session() as session:
            session.execute(text("SELECT 1"))
        checks["database"] = True
    except Exception as e:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail=f"Database check failed: {str(e)}",
        )

    # An uninitialized server can still serve /initialize, so this is informational.
    checks["identity"] = identity.get_public_identity() is not None

    return {"status": "ready", "service": "barter-federation", "checks": checks}
