"""
Redis queue service for pipeline jobs.
"""

import redis.asyncio as redis
import json
from typing import Dict, Any, Optional
from datetime import datetime

from api.src.config import get_settings

settings = get_settings()

PIPELINE_QUEUE = "relayci:jobs"
PIPELINE_STATUS = "relayci:status"

async def get_redis_client() -> redis.Redis:
    """Get async Redis client."""
    return redis.from_url(settings.redis_url, decode_responses=True)

def build_job(run_id: str, config: Dict[str, Any], repo_info: Dict[str, Any]) -> Dict[str, Any]:
    return {
        "run_id": run_id,
        "config": config,
        "repo_info": repo_info,
        "queued_at": datetime.utcnow().isoformat(),
    }

async def enqueue_pipeline_run(run_id: str, config: Dict[str, Any], repo_info: Dict[str, Any]):
    """Add pipeline run to processing queue."""
    client = await get_redis_client()

    try:
        await client.lpush(PIPELINE_QUEUE, json.dumps(build_job(run_id, config, repo_info)))
        await client.hset(PIPELINE_STATUS, run_id, "queued")
    finally:
        await client.close()

async def get_run_status(run_id: str) -> Optional[str]:
    """Get pipeline run status from Redis."""
    client = await get_redis_client()

    try:
        return await client.hget(PIPELINE_STATUS, run_id)
    finally:
        await client.close()

async def get_queue_length() -> int:
    """Get number of jobs in queue."""
    client = await get_redis_client()

    try:
        return await client.llen(PIPELINE_QUEUE)
    finally:
        await client.close()

async def count_live_runs() -> Dict[str, int]:
    """Count runs in the live status hash by status."""
    client = await get_redis_client()

    try:
        statuses = await client.hvals(PIPELINE_STATUS)
    finally:
        await client.close()

    counts: Dict[str, int] = {}
    for status in statuses:
        counts[status] = counts.get(status, 0) + 1
    return counts
