"""Job orchestration: the per-job state machine run by queue workers.

A job moves Queued -> Processing -> Completed | Failed. The orchestrator is
the only layer that decides whether an error is retried, aborts the job, or
is logged and swallowed.
"""

import asyncio
import json
import logging
import time
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from pathlib import Path
from typing import Any

from src.commands.router import CommandRouter
from src.config.repo_config import RepoConfig, resolve_config
from src.config.settings import Settings
from src.database.store import RepositoryRecord, ReviewStore
from src.models.commands import Command, CommandContext
from src.models.jobs import Job, JobKind, JobStatus, Platform, PRInfo
from src.models.outputs import ReviewResult
from src.services.analysis_engine import AnalysisEngine, build_engine_config
from src.services.comment_clients import CommentClientFactory
from src.services.github_auth import InstallationTokenProvider
from src.services.incremental_review import IncrementalReviewer
from src.services.snapshot import SnapshotService
from src.utils.retry import run_with_retries

logger = logging.getLogger(__name__)


class RepositoryNotFoundError(LookupError):
    """A command job referenced a repository that is not registered."""


class ReviewTimeoutError(TimeoutError):
    """A review job ran past its deadline."""


@dataclass
class JobOutcome:
    """Terminal state of one job run."""

    job_id: str
    status: JobStatus
    result: ReviewResult | None = None
    reply: str | None = None
    error: str | None = None

    @property
    def succeeded(self) -> bool:
        return self.status is JobStatus.COMPLETED


@dataclass
class ReviewRun:
    """Output of one successful review pipeline attempt."""

    result: ReviewResult
    pr: PRInfo
    repo_config: RepoConfig
    token: str | None


def pr_refspec(platform: Platform, pr_number: int) -> str:
    """Refspec that makes the PR head available in a shared clone."""
    if platform is Platform.GITLAB:
        source = f"refs/merge-requests/{pr_number}/head"
    else:
        source = f"refs/pull/{pr_number}/head"
    return f"+{source}:refs/remotes/origin/pr/{pr_number}"


class JobOrchestrator:
    """Runs review and command jobs end to end with retries and cleanup."""

    def __init__(
        self,
        store: ReviewStore,
        snapshots: SnapshotService,
        engine: AnalysisEngine,
        comments: CommentClientFactory,
        tokens: InstallationTokenProvider,
        router: CommandRouter,
        app_settings: Settings,
        incremental: IncrementalReviewer | None = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.store = store
        self.snapshots = snapshots
        self.engine = engine
        self.comments = comments
        self.tokens = tokens
        self.router = router
        self.settings = app_settings
        self.incremental = incremental
        self.sleep = sleep
        self.clock = clock

    # === STATUS AND TELEMETRY (best-effort) ===

    def _set_status(
        self,
        job: Job,
        status: JobStatus,
        result_json: str | None = None,
        duration_ms: int | None = None,
        head_sha: str | None = None,
    ) -> None:
        try:
            self.store.update_review_status(
                job.id, status, result_json, duration_ms, head_sha=head_sha or None
            )
        except Exception as e:
            logger.warning(f"Could not record status {status.value} for job {job.id}: {e}")

    def _log_usage(self, job: Job, event_type: str, metadata: dict[str, Any]) -> None:
        try:
            self.store.log_usage(job.org_id, event_type, metadata)
        except Exception as e:
            logger.warning(f"Could not record usage event for job {job.id}: {e}")

    # === REVIEW JOBS ===

    async def handle_review_job(self, job: Job) -> JobOutcome:
        """Run a full or incremental review job to a terminal status.

        All attempts share one deadline measured from the start of the job;
        each attempt gets whatever budget remains.
        """
        logger.info(f"Processing {job.kind.value} job {job.id} for {job.label}")
        started = self.clock()
        timeout = self.settings.review_timeout_seconds
        deadline = started + timeout
        self._set_status(job, JobStatus.PROCESSING)

        async def attempt(number: int) -> ReviewRun:
            if number > 1:
                logger.info(f"Retrying job {job.id} (attempt {number})")
            remaining = deadline - self.clock()
            if remaining <= 0:
                raise ReviewTimeoutError(f"review timed out after {timeout}s")
            try:
                return await asyncio.wait_for(self._run_review_pipeline(job), timeout=remaining)
            except asyncio.TimeoutError:
                raise ReviewTimeoutError(f"review timed out after {timeout}s") from None

        try:
            run = await run_with_retries(
                attempt,
                max_retries=self.settings.max_job_retries,
                backoff_seconds=self.settings.retry_backoff_seconds,
                sleep=self.sleep,
                should_retry=lambda e: (
                    not isinstance(e, ReviewTimeoutError) and self.clock() < deadline
                ),
            )
        except Exception as e:
            message = str(e) or type(e).__name__
            logger.error(f"Review job {job.id} for {job.label} failed: {message}")
            self._set_status(job, JobStatus.FAILED, json.dumps({"error": message}))
            return JobOutcome(job.id, JobStatus.FAILED, error=message)

        result = run.result
        duration_ms = int((self.clock() - started) * 1000)
        self._set_status(
            job,
            JobStatus.COMPLETED,
            result.model_dump_json(),
            duration_ms,
            head_sha=run.pr.head_sha,
        )
        self._post_review(job, run)
        self._log_usage(
            job,
            "review_completed",
            {
                "job_id": job.id,
                "repository": job.repo.full_name,
                "pr_number": job.pr.number,
                "kind": job.kind.value,
                "total_issues": result.summary.total_issues,
                "duration_ms": duration_ms,
            },
        )
        logger.info(
            f"Review job {job.id} completed: {result.summary.total_issues} issue(s), "
            f"recommendation={result.recommendation.value}, {duration_ms}ms"
        )
        return JobOutcome(job.id, JobStatus.COMPLETED, result=result)

    async def _run_review_pipeline(self, job: Job) -> ReviewRun:
        """One attempt: snapshot, configure, analyze. Always removes the worktree."""
        token = await self.tokens.get_token(job.org_id)
        clone_path = await self.snapshots.obtain_clone(job.repo, token, job.pr.head_sha or None)
        await self._fetch_pr_head(job, clone_path, token)

        worktree = self.snapshots.new_worktree_path()
        try:
            await self.snapshots.create_worktree(clone_path, job.pr.head_ref, worktree)
            pr = job.pr
            if not pr.head_sha:
                # Command-triggered reviews only know the PR ref
                pr = pr.model_copy(
                    update={"head_sha": await self.snapshots.resolve_commit(worktree)}
                )
            repo_config = resolve_config(worktree, self._persisted_config(job))
            engine_config = build_engine_config(job.repo, pr, repo_config, self.settings)
            result = await self._analyze(job, pr, worktree, repo_config, engine_config)
            return ReviewRun(result=result, pr=pr, repo_config=repo_config, token=token)
        finally:
            await self.snapshots.remove_worktree(worktree)

    async def _fetch_pr_head(self, job: Job, clone_path: Path, token: str | None) -> None:
        if job.pr.head_sha and await self.snapshots.has_commit(clone_path, job.pr.head_sha):
            return
        # Fork PR heads are only reachable through the PR ref
        try:
            await self.snapshots.fetch(
                clone_path,
                job.repo.clone_url,
                token,
                (pr_refspec(job.platform, job.pr.number),),
            )
        except Exception as e:
            logger.warning(f"Could not fetch PR ref for {job.label}: {e}")

    def _persisted_config(self, job: Job) -> str | None:
        if job.repo.id is None:
            return None
        try:
            record = self.store.get_repository(job.repo.id)
        except Exception as e:
            logger.warning(f"Could not load stored config for {job.repo.full_name}: {e}")
            return None
        return record.config_json if record else None

    async def _analyze(
        self,
        job: Job,
        pr: PRInfo,
        worktree: Path,
        repo_config: RepoConfig,
        engine_config: dict[str, Any],
    ) -> ReviewResult:
        base_ref = f"origin/{pr.base_branch}"
        use_incremental = (
            self.incremental is not None
            and self.settings.enable_incremental_reviews
            and repo_config.review.incremental
            and job.repo.id is not None
        )
        if use_incremental:
            try:
                return await self.incremental.review(
                    job.repo.id,
                    worktree,
                    base_ref,
                    pr.head_ref,
                    repo_config,
                    engine_config,
                )
            except Exception as e:
                logger.warning(
                    f"Incremental review failed for {job.label}, running full review: {e}"
                )

        raw = await self.engine.review(worktree, pr.head_ref, base_ref, engine_config)
        return ReviewResult.from_engine_output(raw)

    def _post_review(self, job: Job, run: ReviewRun) -> None:
        comments = run.repo_config.comments
        if not (comments.post_summary or comments.post_inline):
            logger.info(f"Comment posting disabled for {job.repo.full_name}")
            return
        try:
            client = self.comments.for_platform(job.platform, run.token)
            client.post_review(job.repo, run.pr, run.result, run.repo_config)
        except Exception as e:
            logger.error(f"Failed to post review comments for {job.label}: {e}")

    # === COMMAND JOBS ===

    async def handle_command_job(self, job: Job) -> JobOutcome:
        """Route a command and post its reply. Posting failure fails the job."""
        if job.command is None:
            raise ValueError(f"job {job.id} has no command")
        logger.info(f"Processing command '{job.command.name}' for {job.label}")

        repository = self._resolve_repository(job)
        ctx = CommandContext(
            org_id=job.org_id,
            repo_id=repository.id,
            platform=job.platform,
            repo=job.repo.model_copy(update={"id": repository.id}),
            pr=job.pr,
            author=job.command.author,
        )
        command = Command(name=job.command.name, args=job.command.args)

        try:
            reply = await self.router.route(command, ctx)
        except Exception as e:
            logger.error(f"Command '{command.name}' failed for {job.label}: {e}")
            reply = f"❌ Error executing command: {e}"

        token = await self.tokens.get_token(job.org_id)
        client = self.comments.for_platform(job.platform, token)
        client.post_reply(job.repo, job.pr, reply)

        self._log_usage(
            job,
            "command",
            {
                "job_id": job.id,
                "command": command.name,
                "repository": job.repo.full_name,
                "pr_number": job.pr.number,
            },
        )
        return JobOutcome(job.id, JobStatus.COMPLETED, reply=reply)

    def _resolve_repository(self, job: Job) -> RepositoryRecord:
        repository = self.store.get_repository_by_full_name(job.org_id, job.repo.full_name)
        if repository is None:
            raise RepositoryNotFoundError(f"repository not found: {job.repo.full_name}")
        return repository

    async def handle(self, job: Job) -> JobOutcome:
        if job.kind is JobKind.COMMAND:
            return await self.handle_command_job(job)
        return await self.handle_review_job(job)
