"""Services for git snapshots, analysis, caching and platform APIs."""

from src.services.analysis_engine import AnalysisError, SubprocessAnalysisEngine
from src.services.review_cache import ReviewCache, compute_chunk_hash
from src.services.snapshot import GitError, SnapshotService, embed_token

__all__ = [
    "AnalysisError",
    "GitError",
    "ReviewCache",
    "SnapshotService",
    "SubprocessAnalysisEngine",
    "compute_chunk_hash",
    "embed_token",
]
