"""Health check router."""

import logging

from fastapi import APIRouter, Request
from sqlalchemy import text

logger = logging.getLogger(__name__)

router = APIRouter(tags=["health"])


@router.get("/health")
def health(request: Request):
    """Health check for load balancers and monitoring. Include DB e stato del runner."""
    session_factory = getattr(request.app.state, "session_factory", None)
    database = "unknown"
    if session_factory is not None:
        db = session_factory()
        try:
            db.execute(text("SELECT 1"))
            database = "ok"
        except Exception as e:
            logger.warning("Health check DB fallito: %s", e)
            database = "error"
        finally:
            db.close()
    runner = getattr(request.app.state, "runner", None)
    return {
        "status": "healthy" if database != "error" else "degraded",
        "database": database,
        "runner": "running" if runner is not None and runner.running else "stopped",
        "active_jobs": len(runner.tokens) if runner is not None else 0,
    }
