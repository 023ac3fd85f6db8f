"""Cache-assisted review: only regions without a cached verdict go to the engine."""

import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Any

from src.config.repo_config import RepoConfig
from src.models.diff import Hunk
from src.models.outputs import (
    Recommendation,
    ReviewComment,
    ReviewResult,
    ReviewSummary,
    Severity,
)
from src.services.analysis_engine import AnalysisEngine
from src.services.review_cache import ReviewCache, compute_chunk_hash
from src.services.snapshot import SnapshotService
from src.utils.filters import should_review_file

logger = logging.getLogger(__name__)


@dataclass
class Chunk:
    """A changed region of one file, identified by the hash of its added text."""

    file_path: str
    hunk: Hunk
    chunk_hash: str

    def contains(self, comment: ReviewComment) -> bool:
        return comment.file == self.file_path and comment.line in self.hunk.new_range


def merged_recommendation(comments: list[ReviewComment]) -> Recommendation:
    """Any error requests changes, any warning comments, otherwise approve."""
    severities = {c.severity for c in comments}
    if Severity.ERROR in severities:
        return Recommendation.REQUEST_CHANGES
    if Severity.WARNING in severities:
        return Recommendation.COMMENT
    return Recommendation.APPROVE


def _dedupe(comments: list[ReviewComment]) -> list[ReviewComment]:
    seen: set[tuple[str, int, str]] = set()
    unique = []
    for comment in comments:
        key = (comment.file, comment.line, comment.message)
        if key in seen:
            continue
        seen.add(key)
        unique.append(comment)
    return unique


class IncrementalReviewer:
    """Builds a ReviewResult from cached chunk verdicts plus a targeted engine run."""

    def __init__(
        self, snapshots: SnapshotService, cache: ReviewCache, engine: AnalysisEngine
    ) -> None:
        self.snapshots = snapshots
        self.cache = cache
        self.engine = engine

    async def review(
        self,
        repo_id: int,
        worktree: Path,
        base_ref: str,
        head_ref: str,
        repo_config: RepoConfig,
        engine_config: dict[str, Any],
    ) -> ReviewResult:
        changed = await self.snapshots.get_changed_files(worktree, base_ref, head_ref)
        files = [
            f
            for f in changed
            if should_review_file(f) and not repo_config.should_ignore_file(f)
        ]
        if not files:
            logger.info("No reviewable changes; approving without analysis")
            return ReviewResult(recommendation=Recommendation.APPROVE, incremental=True)

        cached_comments: list[ReviewComment] = []
        misses: list[Chunk] = []
        hits = 0

        for file_path in files:
            diff = await self.snapshots.get_file_diff(worktree, base_ref, head_ref, file_path)
            if diff.is_deleted_file:
                continue
            for hunk in diff.hunks:
                content = hunk.added_content()
                if not content.strip():
                    continue
                chunk_hash = compute_chunk_hash(content)
                entry = self.cache.get(repo_id, file_path, chunk_hash)
                if entry is not None:
                    hits += 1
                    cached_comments.extend(entry.comments)
                else:
                    misses.append(Chunk(file_path, hunk, chunk_hash))

        logger.info(
            f"Incremental review: {hits} cached chunk(s), {len(misses)} to analyze "
            f"across {len(files)} file(s)"
        )

        fresh = ReviewResult()
        if misses:
            target_files = sorted({chunk.file_path for chunk in misses})
            raw = await self.engine.review(
                worktree, head_ref, base_ref, engine_config, files=target_files
            )
            fresh = ReviewResult.from_engine_output(raw)
            for chunk in misses:
                chunk_comments = [c for c in fresh.comments if chunk.contains(c)]
                self.cache.set(repo_id, chunk.file_path, chunk.chunk_hash, chunk_comments)

        comments = _dedupe(cached_comments + fresh.comments)
        return ReviewResult(
            recommendation=merged_recommendation(comments),
            comments=comments,
            summary=ReviewSummary.from_comments(comments, files_reviewed=len(files)),
            overview=fresh.overview,
            incremental=True,
            cached_chunks=hits,
        )
