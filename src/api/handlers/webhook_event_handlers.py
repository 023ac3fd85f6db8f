"""Handlers for specific GitHub webhook event types."""

import logging
from typing import Any

from fastapi import HTTPException, status
from redis.exceptions import ConnectionError as RedisConnectionError

from src.commands.parser import CommandParser, InvalidCommandError
from src.config.settings import settings
from src.database.store import RepositoryRecord, ReviewStore
from src.models.jobs import CommandInfo, Job, JobKind, Platform, PRInfo, RepoInfo
from src.queue.config import QueueError, enqueue_job

logger = logging.getLogger(__name__)

COMMAND_PRIORITY = 50
CRITICAL_PRIORITY = 50
DEFAULT_PRIORITY = 10
LARGE_PR_PRIORITY = 5
LARGE_PR_FILES = 20


def _default_store() -> ReviewStore:
    from src.database.db import SessionLocal
    from src.database.store import SqlReviewStore

    return SqlReviewStore(SessionLocal)


# =============================================================================
# Ping Event
# =============================================================================


def handle_ping_event() -> dict[str, str]:
    """Handle GitHub ping event (webhook setup verification)."""
    logger.info("Received ping event from GitHub")
    return {"message": "pong"}


# =============================================================================
# Shared helpers
# =============================================================================


def _repo_info(repository: dict[str, Any], record: RepositoryRecord | None) -> RepoInfo:
    owner = repository.get("owner", {}).get("login", "")
    return RepoInfo(
        owner=owner,
        name=repository.get("name", ""),
        full_name=repository.get("full_name", ""),
        clone_url=repository.get("clone_url") or (record.clone_url if record else ""),
        is_private=bool(repository.get("private", False)),
        id=record.id if record else None,
    )


def _find_repository(store: ReviewStore, full_name: str) -> RepositoryRecord | None:
    try:
        return store.find_repository(full_name)
    except Exception as exc:
        logger.exception("Failed to look up repository %s", full_name)
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Persistence backend unavailable",
        ) from exc


def _enqueue(job: Job, priority: int) -> str:
    try:
        return enqueue_job(job, priority)
    except QueueError as exc:
        if isinstance(exc.__cause__, RedisConnectionError):
            logger.exception(
                "Redis unavailable while enqueuing %s job for %s", job.kind.value, job.label
            )
            raise HTTPException(
                status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
                detail="Queue backend unavailable",
            ) from exc
        logger.exception("Failed to enqueue %s job for %s", job.kind.value, job.label)
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail=f"Failed to enqueue job: {exc}",
        ) from exc


# =============================================================================
# Pull Request Events
# =============================================================================


def handle_pull_request_event(
    payload: dict[str, Any], store: ReviewStore | None = None
) -> dict[str, str | int]:
    """Handle pull_request events (opened, reopened, synchronize, closed)."""
    action = payload.get("action")
    pr_data = payload.get("pull_request", {})
    pr_number = pr_data.get("number")
    repo_name = payload.get("repository", {}).get("full_name")
    pr_state = pr_data.get("state")

    logger.info(
        f"Received PR {action} event for PR #{pr_number} in {repo_name} (state: {pr_state})"
    )

    if action == "closed":
        return {"message": f"PR #{pr_number} closed", "status": "closed"}

    if pr_state != "open":
        logger.info(f"Skipping review for PR #{pr_number} - PR is {pr_state}")
        return {
            "message": f"PR #{pr_number} is {pr_state}, skipping review",
            "status": "skipped",
        }

    if action in ["opened", "reopened", "synchronize"]:
        return _enqueue_pr_review(payload, store or _default_store())

    logger.info(f"Ignoring PR {action} event")
    return {"message": f"Event {action} ignored"}


def _enqueue_pr_review(payload: dict[str, Any], store: ReviewStore) -> dict[str, str | int]:
    """Record and enqueue a review job for a registered repository."""
    action = payload.get("action")
    pr_data = payload.get("pull_request", {})
    repository = payload.get("repository", {})
    repo_name = repository.get("full_name", "")

    record = _find_repository(store, repo_name)
    if record is None:
        logger.info(f"Repository {repo_name} is not registered; skipping review")
        return {
            "message": f"Repository {repo_name} is not registered",
            "status": "skipped",
        }

    kind = JobKind.INCREMENTAL_REVIEW if action == "synchronize" else JobKind.FULL_REVIEW
    job = Job(
        kind=kind,
        platform=Platform.GITHUB,
        org_id=record.org_id,
        repo=_repo_info(repository, record),
        pr=PRInfo(
            number=pr_data.get("number"),
            head_sha=pr_data.get("head", {}).get("sha", ""),
            base_branch=pr_data.get("base", {}).get("ref") or "main",
            title=pr_data.get("title") or "",
            author=pr_data.get("user", {}).get("login", ""),
        ),
    )

    labels = pr_data.get("labels", []) or []
    label_names = [label.get("name", "").lower() for label in labels]
    priority = _determine_priority(label_names, pr_data.get("changed_files"))

    try:
        store.create_review(
            job.id, job.org_id, record.id, job.pr.number, job.pr.head_sha, kind.value
        )
    except Exception:
        logger.exception("Failed to record review %s for %s", job.id, job.label)

    job_id = _enqueue(job, priority)
    logger.info(f"Queued {kind.value} for PR #{job.pr.number} (action: {action})")
    return {
        "message": f"PR #{job.pr.number} review queued",
        "status": "accepted",
        "job_id": job_id,
    }


def _determine_priority(label_names: list[str], changed_files: int | None) -> int:
    """Determine job priority based on PR labels and size."""
    if any(
        keyword in name for name in label_names for keyword in ("critical", "security")
    ):
        return CRITICAL_PRIORITY
    if isinstance(changed_files, int) and changed_files > LARGE_PR_FILES:
        return LARGE_PR_PRIORITY
    return DEFAULT_PRIORITY


# =============================================================================
# Issue Comment Events
# =============================================================================


def handle_issue_comment_event(
    payload: dict[str, Any],
    store: ReviewStore | None = None,
    parser: CommandParser | None = None,
) -> dict[str, Any]:
    """Handle issue_comment events carrying bot commands on pull requests."""
    action = payload.get("action")
    issue = payload.get("issue", {})
    comment = payload.get("comment", {})
    repository = payload.get("repository", {})
    repo_name = repository.get("full_name", "")

    if action != "created":
        return {"message": f"Comment {action} ignored"}

    if not issue.get("pull_request"):
        return {"message": "Comment is not on a pull request", "status": "ignored"}

    user = comment.get("user", {})
    user_login = user.get("login", "")
    bot_login = settings.github_app_bot_login or ""
    if user.get("type") == "Bot" or (bot_login and user_login == bot_login):
        logger.info("Ignoring comment from bot user %s", user_login)
        return {"message": "Bot comment ignored", "status": "ignored"}

    parser = parser or CommandParser(settings.bot_name)
    body = comment.get("body") or ""
    if not parser.is_command_comment(body):
        return {"message": "No commands found", "status": "ignored"}

    commands = parser.parse_comment(body)
    if not commands:
        return {"message": "No commands found", "status": "ignored"}

    store = store or _default_store()
    record = _find_repository(store, repo_name)
    if record is None:
        logger.info(f"Repository {repo_name} is not registered; ignoring commands")
        return {
            "message": f"Repository {repo_name} is not registered",
            "status": "skipped",
        }

    repo = _repo_info(repository, record)
    pr = PRInfo(
        number=issue.get("number"),
        base_branch=repository.get("default_branch") or "main",
        title=issue.get("title") or "",
        author=issue.get("user", {}).get("login", ""),
    )

    job_ids: list[str] = []
    rejected: list[str] = []
    for command in commands:
        try:
            parser.validate_command(command)
        except InvalidCommandError as e:
            logger.info(f"Rejected command on {repo_name}#{pr.number}: {e}")
            rejected.append(command.name)
            continue

        job = Job(
            kind=JobKind.COMMAND,
            platform=Platform.GITHUB,
            org_id=record.org_id,
            repo=repo,
            pr=pr,
            command=CommandInfo(
                name=command.name,
                args=command.args,
                comment_id=comment.get("id"),
                author=user_login,
            ),
        )
        job_ids.append(_enqueue(job, COMMAND_PRIORITY))

    logger.info(
        f"Queued {len(job_ids)} command job(s) for {repo_name}#{pr.number} "
        f"({len(rejected)} rejected)"
    )
    return {
        "message": f"{len(job_ids)} command(s) queued",
        "status": "accepted" if job_ids else "ignored",
        "job_ids": job_ids,
        "rejected": rejected,
    }
