"""
Status and health check endpoints.

WHAT: Health monitoring for the database and notification transport
WHY: Quick diagnostics for ops
HOW: FastAPI endpoint calling the database ping
"""

from fastapi import APIRouter, Request

from ....core.database import ping_database
from ....core.config import settings
from ....utils.logger import get_logger

logger = get_logger(__name__)

router = APIRouter()


@router.get("/health")
def health_check(request: Request):
    """
    Overall application health check.

    Returns:
        JSON with overall health status
    """
    service = request.app.state.service
    db_status = ping_database(service.engine)
    if not db_status["available"]:
        logger.error(f"Health check database failed: {db_status['error']}")

    return {
        "status": "healthy" if db_status["available"] else "degraded",
        "app": settings.APP_NAME,
        "version": settings.APP_VERSION,
        "database": db_status,
        "notifications": settings.NOTIFICATION_TRANSPORT,
    }
