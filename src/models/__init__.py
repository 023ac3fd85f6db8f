"""Data models for the Sherlock review service."""

from .commands import Command, CommandContext, CommandName
from .diff import DiffLine, FileDiff, FileStatus, Hunk
from .jobs import Job, JobKind, JobStatus, Platform, PRInfo, RepoInfo
from .outputs import ReviewComment, ReviewResult, ReviewSummary

__all__ = [
    "Command",
    "CommandContext",
    "CommandName",
    "DiffLine",
    "FileDiff",
    "FileStatus",
    "Hunk",
    "Job",
    "JobKind",
    "JobStatus",
    "Platform",
    "PRInfo",
    "RepoInfo",
    "ReviewComment",
    "ReviewResult",
    "ReviewSummary",
]
