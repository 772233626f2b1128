"""
Queue worker - pulls pipeline runs from Redis and executes them.
"""

import asyncio
import logging
import redis
import json
from typing import Optional, Dict, Any

from pydantic import ValidationError

from controller.src.config import get_settings
from controller.src.models.step import PipelineJob
from controller.src.services.executor import execute_job

logger = logging.getLogger(__name__)
settings = get_settings()

PIPELINE_QUEUE = "relayci:jobs"
PIPELINE_STATUS = "relayci:status"

def get_next_job(client: redis.Redis, timeout: int = 5) -> Optional[Dict[str, Any]]:
    """Pull next job from Redis queue."""
    result = client.brpop(PIPELINE_QUEUE, timeout=timeout)
    if not result:
        return None

    _, job_data = result
    try:
        return PipelineJob.model_validate(json.loads(job_data)).model_dump()
    except (ValueError, ValidationError) as e:
        logger.error(f"Dropping malformed job: {e}")
        return None

async def worker_loop():
    """Main worker loop."""
    client = redis.from_url(settings.redis_url, decode_responses=True)
    logger.info("Worker started, waiting for jobs...")

    try:
        while True:
            try:
                job = await asyncio.to_thread(get_next_job, client)

                if job:
                    run_id = job["run_id"]
                    logger.info(f"Received job for run {run_id}")

                    client.hset(PIPELINE_STATUS, run_id, "running")
                    status = "failed"
                    try:
                        succeeded = await execute_job(job)
                        status = "succeeded" if succeeded else "failed"
                        logger.info(f"Run {run_id} {status}")
                    except Exception as e:
                        logger.exception(f"Failed to execute pipeline {run_id}: {e}")
                    finally:
                        client.hset(PIPELINE_STATUS, run_id, status)

            except redis.RedisError as e:
                logger.exception(f"Worker error: {e}")
                await asyncio.sleep(5)
    finally:
        client.close()

def run_worker():
    """Entry point for worker."""
    try:
        asyncio.run(worker_loop())
    except KeyboardInterrupt:
        logger.info("Worker shutting down...")
