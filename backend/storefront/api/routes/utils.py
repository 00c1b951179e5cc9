"""
Utility routes.
"""
from fastapi import APIRouter
from sqlalchemy import text

from storefront.api.deps import SessionDep

router = APIRouter(prefix="/utils", tags=["utils"])


@router.get("/health-check/")
def health_check(session: SessionDep) -> bool:
    """
    Liveness/readiness probe.

    GET /api/v1/utils/health-check/
    """
    session.execute(text("SELECT 1"))
    return True
