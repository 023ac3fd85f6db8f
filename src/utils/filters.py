"""File filtering utilities for determining which files to review."""

import re
from fnmatch import fnmatchcase
from pathlib import PurePosixPath
from re import Pattern

# Files that never carry reviewable source regardless of repository config
EXCLUDED_PATTERNS: list[Pattern[str]] = [
    # Generated code
    re.compile(r"\.generated\.[^/]+$"),
    re.compile(r"\.pb\.go$"),
    re.compile(r"_pb2\.py$"),
    # Minified files
    re.compile(r"\.min\.js$"),
    re.compile(r"\.min\.css$"),
    # Binary/media files
    re.compile(r"\.(png|jpg|jpeg|gif|ico|webp)$"),
    re.compile(r"\.(pdf|zip|tar|gz|rar|7z)$"),
    re.compile(r"\.(mp4|mp3|avi|mov|wav)$"),
    re.compile(r"\.(ttf|woff|woff2|eot|otf)$"),
    # Database files
    re.compile(r"\.(db|sqlite|sqlite3)$"),
    # Git
    re.compile(r"^\.git/"),
]


def normalize_path(file_path: str) -> str:
    """Return a forward-slash relative path without a leading ``./``."""
    normalized = str(PurePosixPath(file_path.replace("\\", "/")))
    if normalized.startswith("./"):
        normalized = normalized[2:]
    return normalized


def should_review_file(file_path: str) -> bool:
    """Determine if a file can be reviewed at all.

    Args:
        file_path: Path to the file relative to the repository root

    Returns:
        True if the file should be reviewed, False if it should be excluded
    """
    normalized_path = normalize_path(file_path)
    return all(not pattern.search(normalized_path) for pattern in EXCLUDED_PATTERNS)


def matches_glob(file_path: str, pattern: str) -> bool:
    """Match a repository path against a ``**``-style glob.

    ``*`` also crosses directory separators, and a leading ``**/`` additionally
    matches files at the repository root (``**/fixtures/**`` matches
    ``fixtures/a.json``).
    """
    path = normalize_path(file_path)
    if fnmatchcase(path, pattern):
        return True
    if pattern.startswith("**/") and fnmatchcase(path, pattern[3:]):
        return True
    # Bare file names match in any directory
    if "/" not in pattern and fnmatchcase(PurePosixPath(path).name, pattern):
        return True
    return False


def matches_any_glob(file_path: str, patterns: list[str]) -> bool:
    return any(matches_glob(file_path, pattern) for pattern in patterns)
