"""RQ job entrypoints executed inside worker work-horses."""

from __future__ import annotations

import asyncio
import logging
from datetime import timedelta

from src.config.settings import settings
from src.models.jobs import Job

logger = logging.getLogger(__name__)


class JobFailedError(RuntimeError):
    """Raised so RQ records a job whose pipeline ended in Failed."""


def _run(payload: str) -> dict:
    # Deferred import keeps queue config lightweight for non-worker processes
    from src.workers.factory import build_orchestrator

    job = Job.from_payload(payload)
    orchestrator = build_orchestrator(settings)
    outcome = asyncio.run(orchestrator.handle(job))
    if not outcome.succeeded:
        raise JobFailedError(f"{job.kind.value} job {job.id} failed: {outcome.error}")
    return {"job_id": outcome.job_id, "status": outcome.status.value}


def run_review_job(payload: str) -> dict:
    """RQ entrypoint for full and incremental review jobs."""
    logger.info("Starting review job")
    result = _run(payload)
    logger.info("Finished review job %s", result["job_id"])
    return result


def run_command_job(payload: str) -> dict:
    """RQ entrypoint for chat command jobs."""
    logger.info("Starting command job")
    result = _run(payload)
    logger.info("Finished command job %s", result["job_id"])
    return result


def run_maintenance() -> dict:
    """Reclaim aged clones and expired cache entries, then reschedule."""
    from src.queue.config import redis_connection, schedule_maintenance
    from src.services.review_cache import ReviewCache
    from src.workers.factory import build_snapshot_service

    try:
        snapshots = build_snapshot_service(settings)
        removed_repos = snapshots.cleanup_old_repos(
            timedelta(hours=settings.max_repo_age_hours)
        )
        cache = ReviewCache(
            redis_connection, ttl=timedelta(hours=settings.review_cache_ttl_hours)
        )
        removed_entries = cache.purge_expired()
        logger.info(
            "Maintenance removed %s repo dir(s) and %s cache entr(ies)",
            removed_repos,
            removed_entries,
        )
    finally:
        schedule_maintenance()
    return {"repos_removed": removed_repos, "cache_entries_removed": removed_entries}
