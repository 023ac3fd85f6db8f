"""Wiring for the job orchestrator and the collaborators injected into handlers."""

import logging
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from datetime import timedelta
from pathlib import Path
from typing import Any

from src.commands.handlers import (
    ExplainCommandHandler,
    FixCommandHandler,
    HelpCommandHandler,
    PerformanceCommandHandler,
    ReviewCommandHandler,
    SecurityCommandHandler,
)
from src.commands.parser import CommandParser
from src.commands.router import CommandRouter
from src.config.repo_config import resolve_config
from src.config.settings import Settings, resolve_git_executable
from src.database.store import ReviewStore
from src.models.commands import CommandContext, CommandName
from src.models.jobs import Job, JobKind
from src.services.analysis_engine import AnalysisEngine, build_engine_config
from src.services.github_auth import InstallationTokenProvider
from src.services.snapshot import SnapshotService
from src.workers.orchestrator import JobOrchestrator, pr_refspec

logger = logging.getLogger(__name__)

MANUAL_REVIEW_PRIORITY = 50


class SnapshotWorkspaceProvider:
    """Checks out the PR head of a command's repository into a temporary worktree."""

    def __init__(self, snapshots: SnapshotService, tokens: InstallationTokenProvider) -> None:
        self.snapshots = snapshots
        self.tokens = tokens

    @asynccontextmanager
    async def checkout(self, ctx: CommandContext) -> AsyncIterator[Path]:
        token = await self.tokens.get_token(ctx.org_id)
        clone_path = await self.snapshots.obtain_clone(ctx.repo, token, ctx.pr.head_sha or None)
        try:
            await self.snapshots.fetch(
                clone_path, ctx.repo.clone_url, token, (pr_refspec(ctx.platform, ctx.pr.number),)
            )
        except Exception as e:
            logger.warning(f"Could not fetch PR ref for {ctx.repo.full_name}: {e}")

        worktree = self.snapshots.new_worktree_path()
        try:
            await self.snapshots.create_worktree(clone_path, ctx.pr.head_ref, worktree)
            yield worktree
        finally:
            await self.snapshots.remove_worktree(worktree)


class StoreConfigProvider:
    """Resolves engine configuration from the worktree file and stored settings."""

    def __init__(self, store: ReviewStore, app_settings: Settings) -> None:
        self.store = store
        self.settings = app_settings

    def engine_config(self, ctx: CommandContext, worktree: Path) -> dict[str, Any]:
        persisted = None
        if ctx.repo_id is not None:
            record = self.store.get_repository(ctx.repo_id)
            persisted = record.config_json if record else None
        repo_config = resolve_config(worktree, persisted)
        return build_engine_config(ctx.repo, ctx.pr, repo_config, self.settings)


class QueuedReviewRequester:
    """Enqueues a full review on the high lane for a ``review`` command."""

    def __init__(self, store: ReviewStore) -> None:
        self.store = store

    async def request_review(self, ctx: CommandContext) -> str:
        from src.queue.config import enqueue_job

        job = Job(
            kind=JobKind.FULL_REVIEW,
            platform=ctx.platform,
            org_id=ctx.org_id,
            repo=ctx.repo,
            pr=ctx.pr,
        )
        try:
            self.store.create_review(
                job.id, job.org_id, ctx.repo_id, job.pr.number, job.pr.head_sha, job.kind.value
            )
        except Exception as e:
            logger.warning(f"Could not record review {job.id}: {e}")
        enqueue_job(job, MANUAL_REVIEW_PRIORITY)
        return job.id


def build_router(
    parser: CommandParser,
    requester: QueuedReviewRequester,
    workspaces: SnapshotWorkspaceProvider,
    configs: StoreConfigProvider,
    engine: AnalysisEngine,
) -> CommandRouter:
    return CommandRouter(
        {
            CommandName.REVIEW: ReviewCommandHandler(requester),
            CommandName.EXPLAIN: ExplainCommandHandler(
                workspaces, configs, engine, parser.bot_name
            ),
            CommandName.FIX: FixCommandHandler(workspaces, configs, engine),
            CommandName.SECURITY: SecurityCommandHandler(workspaces, configs, engine),
            CommandName.PERFORMANCE: PerformanceCommandHandler(workspaces, configs, engine),
            CommandName.HELP: HelpCommandHandler(parser),
        }
    )


def build_snapshot_service(app_settings: Settings) -> SnapshotService:
    git_path = resolve_git_executable(app_settings.git_executable)
    return SnapshotService(
        app_settings.repos_path,
        git_path,
        command_timeout=app_settings.git_command_timeout_seconds,
    )


def build_orchestrator(app_settings: Settings) -> JobOrchestrator:
    """Assemble a production orchestrator from settings.

    Imports of Redis and the database are deferred so that the API process
    can import this module without opening connections.
    """
    from src.database.db import SessionLocal
    from src.database.store import SqlReviewStore
    from src.queue.config import redis_connection
    from src.services.analysis_engine import SubprocessAnalysisEngine
    from src.services.comment_clients import CommentClientFactory
    from src.services.incremental_review import IncrementalReviewer
    from src.services.review_cache import ReviewCache

    store = SqlReviewStore(SessionLocal)
    snapshots = build_snapshot_service(app_settings)
    engine = SubprocessAnalysisEngine(
        app_settings.analysis_command, timeout=app_settings.analysis_timeout_seconds
    )
    tokens = InstallationTokenProvider(store, gitlab_token=app_settings.gitlab_token)
    cache = ReviewCache(
        redis_connection, ttl=timedelta(hours=app_settings.review_cache_ttl_hours)
    )
    comments = CommentClientFactory(
        app_settings.bot_name,
        github_api_url=app_settings.github_api_url,
        gitlab_url=app_settings.gitlab_url,
        gitlab_token=app_settings.gitlab_token,
    )
    router = build_router(
        CommandParser(app_settings.bot_name),
        QueuedReviewRequester(store),
        SnapshotWorkspaceProvider(snapshots, tokens),
        StoreConfigProvider(store, app_settings),
        engine,
    )
    return JobOrchestrator(
        store=store,
        snapshots=snapshots,
        engine=engine,
        comments=comments,
        tokens=tokens,
        router=router,
        app_settings=app_settings,
        incremental=IncrementalReviewer(snapshots, cache, engine),
    )
