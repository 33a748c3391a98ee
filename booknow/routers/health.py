"""
Health Check Endpoints

- /health       - Liveness (process is up)
- /health/ready - Readiness (database reachable)
"""

from fastapi import APIRouter, Depends
from fastapi.responses import JSONResponse
from sqlalchemy.orm import Session
from sqlalchemy import text
from datetime import datetime, timezone
import time

from ..database import get_db
from ..config import settings
from ..services.presence import get_presence_directory

router = APIRouter(prefix="/health", tags=["Health"])


def get_db_health(db: Session) -> dict:
    """Check database connectivity and latency"""
    try:
        start = time.time()
        db.execute(text("SELECT 1"))
        return {
            "status": "up",
            "latency_ms": round((time.time() - start) * 1000, 2),
            "type": db.get_bind().dialect.name,
        }
    except Exception as e:
        return {"status": "down", "error": str(e)[:100]}


@router.get("")
async def liveness():
    return {"status": "healthy", "timestamp": datetime.now(timezone.utc).isoformat()}


@router.get("/ready")
def readiness(db: Session = Depends(get_db)):
    database = get_db_health(db)
    body = {
        "status": "ready" if database["status"] == "up" else "not_ready",
        "environment": settings.environment,
        "database": database,
        "payments_configured": bool(settings.stripe_secret_key),
        "live_connections": len(get_presence_directory()),
    }
    return JSONResponse(status_code=200 if database["status"] == "up" else 503, content=body)
