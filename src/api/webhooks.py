"""GitHub webhook endpoints and queue inspection."""

import hashlib
import hmac
import logging
from typing import Any

from fastapi import APIRouter, Header, HTTPException, Request, status
from rq import Worker
from rq.exceptions import NoSuchJobError
from rq.job import Job
from rq.registry import FailedJobRegistry, FinishedJobRegistry, StartedJobRegistry

from src.api.handlers import webhook_event_handlers
from src.api.handlers.webhook_event_handlers import (
    handle_issue_comment_event,
    handle_ping_event,
    handle_pull_request_event,
)
from src.config.settings import settings
from src.queue.config import get_all_queues, redis_conn

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/webhook", tags=["webhooks"])


@router.get("/queue/status")
async def queue_status() -> dict[str, Any]:
    """Return aggregate and per-lane queue metrics."""
    lanes: dict[str, dict[str, int]] = {}
    for queue in get_all_queues():
        lanes[queue.name] = {
            "queued": queue.count,
            "started": len(StartedJobRegistry(queue=queue)),
            "finished": len(FinishedJobRegistry(queue=queue)),
            "failed": len(FailedJobRegistry(queue=queue)),
        }

    totals = {
        key: sum(lane[key] for lane in lanes.values())
        for key in ("queued", "started", "finished", "failed")
    }
    return {
        **totals,
        "active_workers": len(Worker.all(connection=redis_conn)),
        "lanes": lanes,
    }


@router.get("/queue/job/{job_id}")
async def queue_job(job_id: str) -> dict[str, Any]:
    """Return details for a specific queued job."""
    try:
        job = Job.fetch(job_id, connection=redis_conn)
    except NoSuchJobError as err:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND, detail="Job not found"
        ) from err

    status_value = job.get_status(refresh=True)
    latest_result = job.latest_result()
    latest_return = (
        getattr(latest_result, "return_value", None) if latest_result else None
    )
    latest_traceback = (
        getattr(latest_result, "exc_string", None) if latest_result else None
    )
    return {
        "job_id": job.id,
        "status": status_value,
        "queue": job.origin,
        "description": job.description,
        "created_at": job.created_at.isoformat() if job.created_at else None,
        "started_at": job.started_at.isoformat() if job.started_at else None,
        "ended_at": job.ended_at.isoformat() if job.ended_at else None,
        "result": latest_return if status_value == "finished" else None,
        "exc_info": latest_traceback if status_value == "failed" else None,
    }


@router.get("/reviews/{job_id}")
async def review_record(job_id: str) -> dict[str, Any]:
    """Return the persisted review for a job, available after RQ drops its result."""
    try:
        review = webhook_event_handlers._default_store().get_review(job_id)
    except Exception as err:
        logger.error(f"Could not load review {job_id}: {err}")
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail="Database unavailable"
        ) from err

    if review is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND, detail="Review not found"
        )
    return review


async def validate_signature(
    request: Request,
    x_hub_signature_256: str | None = Header(None, alias="X-Hub-Signature-256"),
) -> None:
    """
    Validate GitHub webhook signature.

    Args:
        request: The incoming request
        x_hub_signature_256: GitHub signature from header

    Raises:
        HTTPException: If signature is missing or invalid
    """
    if not x_hub_signature_256:
        logger.warning("Missing X-Hub-Signature-256 header")
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Missing X-Hub-Signature-256 header",
        )

    body = await request.body()

    webhook_secret = settings.github_webhook_secret
    if not webhook_secret:
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Webhook secret not configured",
        )
    secret = webhook_secret.encode("utf-8")
    expected_signature = f"sha256={hmac.new(secret, body, hashlib.sha256).hexdigest()}"

    if not hmac.compare_digest(expected_signature, x_hub_signature_256):
        logger.warning("Invalid webhook signature")
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid signature",
        )


@router.post("/github")
async def github_webhook(
    request: Request,
    x_github_event: str | None = Header(None, alias="X-GitHub-Event"),
    x_hub_signature_256: str | None = Header(None, alias="X-Hub-Signature-256"),
) -> dict[str, Any]:
    """
    Handle GitHub webhook events.

    Supported events are ``ping``, ``pull_request`` and ``issue_comment``;
    anything else is acknowledged and ignored.
    """
    await validate_signature(request, x_hub_signature_256)

    payload: dict[str, Any] = await request.json()

    if x_github_event == "ping":
        return handle_ping_event()

    if x_github_event == "pull_request":
        return handle_pull_request_event(payload)

    if x_github_event == "issue_comment":
        return handle_issue_comment_event(payload)

    logger.info(f"Ignoring event type: {x_github_event}")
    return {"message": f"Event {x_github_event} not supported"}
