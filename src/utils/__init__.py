"""Utility functions and helpers."""

from .filters import matches_any_glob, should_review_file
from .logging import setup_observability
from .retry import is_non_retryable_error, run_with_retries

__all__ = [
    "setup_observability",
    "should_review_file",
    "matches_any_glob",
    "is_non_retryable_error",
    "run_with_retries",
]
