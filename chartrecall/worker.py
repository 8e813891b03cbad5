"""
Celery Worker for ChartRecall

Async task processing for the summary persistence triggers:
- Encounter closed -> encounter-tier summary
- Quarter / year boundary passed -> quarterly and annual aggregation

Tasks are idempotent; a redelivered task finds the stored summary and
returns it without regenerating. Each task runs on its own event loop, so
the database pool is disposed when the task finishes.
"""

import asyncio
import logging
import os
from datetime import date

from celery import Celery

from chartrecall.core.errors import ChartRecallError

logger = logging.getLogger(__name__)

# Initialize Celery app
celery_app = Celery(
    "chartrecall",
    broker=os.environ.get("CELERY_BROKER_URL", "redis://localhost:6379/1"),
    backend=os.environ.get("CELERY_RESULT_BACKEND", "redis://localhost:6379/2"),
)

# Configuration
celery_app.conf.update(
    task_serializer="json",
    accept_content=["json"],
    result_serializer="json",
    timezone="UTC",
    enable_utc=True,
    task_track_started=True,
    task_acks_late=True,
    worker_prefetch_multiplier=1,
    worker_concurrency=2,
)


def _record_dict(record) -> dict:
    return {
        "id": record.id,
        "tier": record.tier.value,
        "period_start": record.period_start.isoformat(),
        "period_end": record.period_end.isoformat(),
        "encounter_count": record.encounter_count,
    }


async def _summarize_encounter(encounter_id: str) -> dict:
    from chartrecall.db.postgres import close_db
    from chartrecall.pipelines.clinical import create_pipeline

    try:
        pipeline = create_pipeline()
        record = await pipeline.on_encounter_closed(encounter_id)
    finally:
        # Pooled connections belong to this task's event loop
        await close_db()
    if record is None:
        return {"encounter_id": encounter_id, "status": "not_found"}
    return {"encounter_id": encounter_id, "status": "completed", "summary": _record_dict(record)}


async def _run_aggregations(mrn: str, reference_date: date) -> dict:
    from chartrecall.db.postgres import close_db
    from chartrecall.pipelines.clinical import create_pipeline

    try:
        pipeline = create_pipeline()
        records = await pipeline.run_aggregations(mrn, reference_date)
    finally:
        await close_db()
    return {"status": "completed", "summaries": [_record_dict(r) for r in records]}


@celery_app.task(name="summarize_closed_encounter")
def summarize_closed_encounter(encounter_id: str) -> dict:  # type: ignore[no-untyped-def]
    """Generate the encounter-tier summary once an encounter closes."""
    try:
        return asyncio.run(_summarize_encounter(encounter_id))
    except ChartRecallError as e:
        logger.error("Encounter summary failed for %s: %s", encounter_id, e.message)
        return {"encounter_id": encounter_id, "status": "failed", "error": e.kind}


@celery_app.task(name="run_aggregations")
def run_aggregations(mrn: str, reference_date: str | None = None) -> dict:  # type: ignore[no-untyped-def]
    """Aggregate every quarter and year of one patient that has passed."""
    day = date.fromisoformat(reference_date) if reference_date else date.today()
    try:
        return asyncio.run(_run_aggregations(mrn, day))
    except ChartRecallError as e:
        logger.error("Aggregation failed: %s", e.message)
        return {"status": "failed", "error": e.kind}


if __name__ == "__main__":
    celery_app.start()
