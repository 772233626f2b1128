from fastapi import APIRouter, Depends
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy import text
import redis.asyncio as redis

from api.src.db.database import get_db
from api.src.config import get_settings
from api.src.services.queue import get_queue_length, count_live_runs

settings = get_settings()

router = APIRouter(tags=["health"])

async def probe_database(db: AsyncSession) -> str:
    try:
        await db.execute(text("SELECT 1"))
        return "healthy"
    except Exception as e:
        return f"unhealthy: {e}"

async def probe_redis() -> str:
    client = redis.from_url(settings.redis_url)
    try:
        await client.ping()
        return "healthy"
    except redis.RedisError as e:
        return f"unhealthy: {e}"
    finally:
        await client.close()

@router.get("/health")
async def health_check():
    return {"status": "healthy", "service": "relayci-api"}

@router.get("/health/db")
async def db_health_check(db: AsyncSession = Depends(get_db)):
    state = await probe_database(db)
    return {"status": state.split(":")[0], "database": state}

@router.get("/health/redis")
async def redis_health_check():
    state = await probe_redis()
    return {"status": state.split(":")[0], "redis": state}

@router.get("/health/queue")
async def queue_health_check():
    """Queued jobs and runs by live status."""
    try:
        return {
            "status": "healthy",
            "queue_length": await get_queue_length(),
            "runs": await count_live_runs(),
        }
    except redis.RedisError as e:
        return {"status": "unhealthy", "error": str(e)}

@router.get("/health/all")
async def full_health_check(db: AsyncSession = Depends(get_db)):
    """Combined health check for all services."""
    health = {
        "api": "healthy",
        "database": await probe_database(db),
        "redis": await probe_redis(),
    }

    queue_length = None
    if health["redis"] == "healthy":
        queue_length = await get_queue_length()

    overall = "healthy" if all(v == "healthy" for v in health.values()) else "degraded"
    return {"status": overall, "services": health, "queue_length": queue_length}
