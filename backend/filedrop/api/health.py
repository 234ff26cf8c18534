"""
Health check endpoint.
Verifies database, Redis and storage backend availability.
"""
from fastapi import APIRouter, Depends, HTTPException
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy import text
import redis
from filedrop.auth.dependencies import get_services
from filedrop.database import get_db
from filedrop.config import settings
from filedrop.services import Services

router = APIRouter()


@router.get("")
async def health_check(
    db: AsyncSession = Depends(get_db),
    services: Services = Depends(get_services),
):
    """
    Health check endpoint.
    Returns status of database and Redis connections, plus the active
    storage backend and the number of outstanding upload tokens.
    """
    health_status = {
        "status": "healthy",
        "database": "unknown",
        "redis": "unknown",
        "storage": services.storage.name,
        "active_upload_tokens": len(services.upload_tokens),
    }

    # Check database
    try:
        await db.execute(text("SELECT 1"))
        health_status["database"] = "connected"
    except Exception as e:
        health_status["database"] = f"error: {str(e)}"
        health_status["status"] = "unhealthy"

    # Check Redis
    try:
        r = redis.from_url(settings.redis_url)
        r.ping()
        health_status["redis"] = "connected"
    except Exception as e:
        health_status["redis"] = f"error: {str(e)}"
        health_status["status"] = "unhealthy"

    if health_status["status"] == "unhealthy":
        raise HTTPException(status_code=503, detail=health_status)

    return health_status
