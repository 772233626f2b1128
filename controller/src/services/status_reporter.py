"""
Report pipeline, stage and step status to the database.
"""

import logging
from datetime import datetime
from functools import lru_cache
from sqlalchemy import create_engine, update
from sqlalchemy.orm import sessionmaker

from controller.src.config import get_settings
from controller.src.models.step import PipelineResult, StageResult

logger = logging.getLogger(__name__)
settings = get_settings()

class RunReporter:
    """Receives run progress. The base class ignores everything."""

    def run_started(self, run_id: str):
        pass

    def stage_finished(self, run_id: str, stage: StageResult):
        pass

    def run_finished(self, run_id: str, result: PipelineResult):
        pass

@lru_cache()
def get_session_factory() -> sessionmaker:
    # Sync database connection for controller
    engine = create_engine(settings.database_url)
    return sessionmaker(bind=engine)

def update_run_status(
    run_id: str,
    status: str,
    started_at: datetime = None,
    finished_at: datetime = None,
    error: str = None,
):
    """Update pipeline run status in database."""
    from controller.src.models.db import PipelineRun

    with get_session_factory()() as session:
        values = {"status": status, "updated_at": datetime.utcnow()}

        if started_at:
            values["started_at"] = started_at
        if finished_at:
            values["finished_at"] = finished_at
        if error is not None:
            values["error"] = error

        session.execute(
            update(PipelineRun)
            .where(PipelineRun.id == run_id)
            .values(**values)
        )
        session.commit()
        logger.info(f"Updated run {run_id} status to {status}")

def update_stage_status(run_id: str, stage: StageResult):
    """Update a stage and its steps in database."""
    from controller.src.models.db import PipelineStep, StageRun

    with get_session_factory()() as session:
        session.execute(
            update(StageRun)
            .where(StageRun.run_id == run_id)
            .where(StageRun.name == stage.name)
            .values(
                status=stage.status.value,
                failing_step_index=stage.failing_step_index,
                error_type=stage.error_type,
                error=stage.error,
                started_at=stage.started_at,
                finished_at=stage.finished_at,
                updated_at=datetime.utcnow(),
            )
        )

        for step in stage.steps:
            session.execute(
                update(PipelineStep)
                .where(PipelineStep.run_id == run_id)
                .where(PipelineStep.stage_name == stage.name)
                .where(PipelineStep.step_order == step.step_order)
                .values(
                    status=step.status.value,
                    logs=step.logs if step.error is None else "\n".join(filter(None, [step.logs, step.error])),
                    started_at=step.started_at,
                    finished_at=step.finished_at,
                    updated_at=datetime.utcnow(),
                )
            )

        session.commit()
        logger.debug(f"Updated stage {stage.name} of run {run_id} to {stage.status.value}")

class DatabaseReporter(RunReporter):

    def run_started(self, run_id: str):
        update_run_status(run_id, "running", started_at=datetime.utcnow())

    def stage_finished(self, run_id: str, stage: StageResult):
        update_stage_status(run_id, stage)

    def run_finished(self, run_id: str, result: PipelineResult):
        error = result.error
        failure = result.first_failure()
        if error is None and failure is not None:
            stage_name, step_index = failure
            where = f" step {step_index}" if step_index is not None else ""
            error = f"Stage {stage_name}{where} failed: {result.stages[stage_name].error}"
        update_run_status(
            run_id,
            result.status.value,
            finished_at=result.finished_at or datetime.utcnow(),
            error=error,
        )
