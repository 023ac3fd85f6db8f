"""Job orchestration run by queue workers."""

from .orchestrator import JobOrchestrator, JobOutcome, RepositoryNotFoundError

__all__ = ["JobOrchestrator", "JobOutcome", "RepositoryNotFoundError"]
