"""Redis-backed priority lanes and job enqueueing."""

from __future__ import annotations

import logging
import uuid
from datetime import timedelta

from redis import Redis
from redis.exceptions import RedisError
from rq import Queue
from rq.exceptions import NoSuchJobError
from rq.job import Job as RQJob

from src.config.settings import settings
from src.models.jobs import Job, JobKind
from src.queue.tasks import run_command_job, run_maintenance, run_review_job

logger = logging.getLogger(__name__)

JOB_TIMEOUT_SECONDS = settings.worker_job_timeout

# Lane thresholds: priority >= 50 is high, < 10 is low, anything else default
HIGH_PRIORITY_THRESHOLD = 50
LOW_PRIORITY_THRESHOLD = 10
LANES: tuple[str, ...] = ("high", "default", "low")
LANE_WEIGHTS: dict[str, int] = {"high": 6, "default": 3, "low": 1}

MAINTENANCE_JOB_PREFIX = "sherlock-maintenance"


class QueueError(RuntimeError):
    """A job could not be serialized or persisted by the broker."""


# Single Redis connection used by all queues
if settings.redis_url:
    redis_connection = Redis.from_url(settings.redis_url, socket_timeout=5)
else:
    redis_connection = Redis(
        host=settings.redis_host,
        port=settings.redis_port,
        password=settings.redis_password,
        socket_timeout=5,
    )
redis_conn = redis_connection  # alias for worker script imports

_queues: dict[str, Queue] = {
    lane: Queue(f"reviews:{lane}", connection=redis_connection) for lane in LANES
}


def get_all_queues() -> list[Queue]:
    """Return all lanes, highest first."""
    return [_queues[lane] for lane in LANES]


def get_queue(lane: str) -> Queue:
    return _queues[lane]


def lane_for_priority(priority: int) -> str:
    if priority >= HIGH_PRIORITY_THRESHOLD:
        return "high"
    if priority < LOW_PRIORITY_THRESHOLD:
        return "low"
    return "default"


def _fetch_existing_job(job_id: str) -> RQJob | None:
    """Attempt to fetch an existing job by id without raising."""
    try:
        return RQJob.fetch(job_id, connection=redis_connection)
    except NoSuchJobError:
        return None


def enqueue_job(job: Job, priority: int) -> str:
    """Persist ``job`` on the lane for ``priority`` and return its id.

    The payload is serialized before anything is written, so a job that
    cannot be serialized never reaches the broker. Re-enqueueing an id that
    is still pending returns the existing job.

    Raises:
        QueueError: If serialization or the broker write fails
    """
    try:
        payload = job.to_payload()
    except (TypeError, ValueError) as e:
        raise QueueError(f"failed to serialize job {job.id}: {e}") from e

    queue = _queues[lane_for_priority(priority)]
    task = run_command_job if job.kind is JobKind.COMMAND else run_review_job

    try:
        existing = _fetch_existing_job(job.id)
        if existing is not None:
            status = existing.get_status(refresh=True)
            if status in {"queued", "started", "deferred", "scheduled"}:
                logger.info(
                    "Skipping duplicate job %s for %s (status=%s)", job.id, job.label, status
                )
                return existing.id

        logger.info(
            "Enqueuing %s job %s for %s on queue '%s' (priority=%s)",
            job.kind.task_name,
            job.id,
            job.label,
            queue.name,
            priority,
        )
        rq_job = queue.enqueue(
            task,
            payload,
            job_id=job.id,
            job_timeout=JOB_TIMEOUT_SECONDS,
            description=f"{job.kind.value} {job.label}",
        )
    except RedisError as e:
        raise QueueError(f"failed to enqueue job {job.id}: {e}") from e
    return rq_job.id


def _maintenance_pending() -> bool:
    registry = _queues["low"].scheduled_job_registry
    return any(
        job_id.startswith(MAINTENANCE_JOB_PREFIX) for job_id in registry.get_job_ids()
    )


def schedule_maintenance(delay: timedelta | None = None) -> str | None:
    """Schedule the reclamation sweep on the low lane unless one is pending."""
    if _maintenance_pending():
        logger.debug("Maintenance job already scheduled")
        return None

    delay = delay or timedelta(minutes=settings.maintenance_interval_minutes)
    rq_job = _queues["low"].enqueue_in(
        delay,
        run_maintenance,
        job_id=f"{MAINTENANCE_JOB_PREFIX}-{uuid.uuid4().hex[:12]}",
        job_timeout=JOB_TIMEOUT_SECONDS,
    )
    logger.info("Scheduled maintenance job %s in %s", rq_job.id, delay)
    return rq_job.id
