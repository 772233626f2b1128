"""
GitHub webhook endpoints.
"""

from fastapi import APIRouter, Request, HTTPException, Header, Depends
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy import select
from typing import Optional
import logging

from api.src.db.database import get_db
from api.src.models.pipeline import Repository, PipelineRun, StageRun, PipelineStep
from api.src.services.github import (
    RepositoryError,
    verify_signature,
    parse_webhook_payload,
    clone_repository,
    fetch_pipeline_config,
    cleanup_repo,
)
from api.src.services.pipeline_parser import (
    parse_pipeline_dict,
    matches_trigger,
    step_display_name,
    step_invocation,
    PipelineConfigError,
)
from api.src.services.queue import enqueue_pipeline_run

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/webhooks", tags=["webhooks"])

def create_run_records(db: AsyncSession, run: PipelineRun, config: dict):
    """Add pending stage and step rows for every stage of the definition."""
    for i, stage_config in enumerate(config["stages"]):
        db.add(StageRun(
            run_id=run.id,
            name=stage_config["name"],
            stage_order=i,
            needs=stage_config["needs"],
            status="pending",
        ))
        for j, step_config in enumerate(stage_config["steps"]):
            db.add(PipelineStep(
                run_id=run.id,
                stage_name=stage_config["name"],
                name=step_display_name(step_config),
                invocation=step_invocation(step_config),
                status="pending",
                step_order=j,
            ))

async def process_push_event(
    payload: dict,
    db: AsyncSession,
):
    """Process GitHub push event and create pipeline run."""

    # Parse webhook payload
    webhook_data = parse_webhook_payload(payload)

    if not webhook_data["commit_sha"]:
        logger.warning("No commit SHA in webhook payload")
        return {"status": "skipped", "reason": "No commit SHA"}

    # Clone repo and fetch pipeline config
    repo_path = None
    try:
        repo_path = await clone_repository(
            webhook_data["clone_url"],
            webhook_data["commit_sha"]
        )

        pipeline_config = await fetch_pipeline_config(repo_path)

        if not pipeline_config:
            logger.info(f"No pipeline config found in {webhook_data['repo_full_name']}")
            return {"status": "skipped", "reason": "No pipeline configuration found"}

        # Validate config
        validated_config = parse_pipeline_dict(pipeline_config)

    except PipelineConfigError as e:
        logger.error(f"Invalid pipeline config: {e}")
        return {"status": "error", "reason": str(e)}
    except RepositoryError as e:
        logger.error(f"Failed to process repository: {e}")
        return {"status": "error", "reason": str(e)}
    finally:
        if repo_path:
            cleanup_repo(repo_path)

    if not matches_trigger(validated_config, "push", webhook_data["branch"]):
        logger.info(f"Push to {webhook_data['branch']} does not match the pipeline trigger")
        return {"status": "skipped", "reason": f"Branch {webhook_data['branch']} not configured"}

    # Get or create repository
    repo_query = select(Repository).where(
        Repository.full_name == webhook_data["repo_full_name"]
    )
    result = await db.execute(repo_query)
    repository = result.scalar_one_or_none()

    if not repository:
        repository = Repository(
            name=webhook_data["repo_name"],
            full_name=webhook_data["repo_full_name"],
            clone_url=webhook_data["clone_url"],
        )
        db.add(repository)
        await db.flush()

    # Create pipeline run
    pipeline_run = PipelineRun(
        repository_id=repository.id,
        commit_sha=webhook_data["commit_sha"],
        ref=webhook_data["ref"],
        branch=webhook_data["branch"],
        status="queued",
        triggered_by=webhook_data["pusher"],
        config=validated_config,
    )
    db.add(pipeline_run)
    await db.flush()

    create_run_records(db, pipeline_run, validated_config)
    await db.commit()

    # Enqueue for processing
    await enqueue_pipeline_run(
        run_id=str(pipeline_run.id),
        config=validated_config,
        repo_info=webhook_data,
    )

    logger.info(f"Pipeline run {pipeline_run.id} created and queued")

    return {
        "status": "queued",
        "run_id": str(pipeline_run.id),
        "stages": len(validated_config["stages"]),
    }

@router.post("/github")
async def github_webhook(
    request: Request,
    db: AsyncSession = Depends(get_db),
    x_hub_signature_256: Optional[str] = Header(None),
    x_github_event: Optional[str] = Header(None),
):
    """
    Receive GitHub webhook events.
    """
    # Get raw body for signature verification
    body = await request.body()

    # Verify signature
    if x_hub_signature_256:
        if not verify_signature(body, x_hub_signature_256):
            raise HTTPException(status_code=401, detail="Invalid signature")

    # Parse JSON payload
    try:
        payload = await request.json()
    except ValueError:
        raise HTTPException(status_code=400, detail="Invalid JSON payload")

    # Handle different event types
    if x_github_event == "ping":
        return {"status": "pong", "message": "Webhook configured successfully"}

    if x_github_event == "push":
        result = await process_push_event(payload, db)
        return result

    # Ignore other events
    return {
        "status": "ignored",
        "event": x_github_event,
        "message": f"Event type '{x_github_event}' not handled"
    }
