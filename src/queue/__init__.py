"""Queue package for background review processing."""

from .config import (
    QueueError,
    enqueue_job,
    get_all_queues,
    lane_for_priority,
    redis_connection,
    schedule_maintenance,
)
from .tasks import run_command_job, run_review_job

__all__ = [
    "QueueError",
    "enqueue_job",
    "get_all_queues",
    "lane_for_priority",
    "redis_connection",
    "run_command_job",
    "run_review_job",
    "schedule_maintenance",
]
