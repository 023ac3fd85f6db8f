"""Repository-resident review configuration (``.sherlock.yml``).

Every section is optional; missing sections and fields take the built-in
defaults below.
"""

import json
import logging
from pathlib import Path
from typing import Any, Literal

import yaml
from pydantic import BaseModel, Field, ValidationError

from src.utils.filters import matches_any_glob, normalize_path

logger = logging.getLogger(__name__)

CONFIG_FILENAMES = (".sherlock.yml", ".sherlock.yaml")


class RepoConfigError(ValueError):
    """Configuration source is present but cannot be parsed."""


class AIConfig(BaseModel):
    provider: Literal["openai", "claude"] | None = None
    model: str | None = None


class ReviewTriggers(BaseModel):
    enabled: bool = True
    on_open: bool = True
    on_push: bool = True
    incremental: bool = True


class CommentSettings(BaseModel):
    max_comments: int = Field(default=50, ge=0)
    post_summary: bool = True
    post_inline: bool = True


class FocusAreas(BaseModel):
    bugs: bool = True
    security: bool = True
    performance: bool = True
    code_quality: bool = True
    architecture: bool = True


class IgnoreSettings(BaseModel):
    paths: list[str] = Field(
        default_factory=lambda: [
            "**/*.test.ts",
            "**/*.spec.ts",
            "**/fixtures/**",
            "dist/**",
            "node_modules/**",
        ]
    )
    files: list[str] = Field(
        default_factory=lambda: ["package-lock.json", "yarn.lock", "pnpm-lock.yaml"]
    )


class SecuritySettings(BaseModel):
    enabled: bool = True
    block_on_critical: bool = True
    min_severity: Literal["error", "warning", "info"] = "warning"


class PerformanceSettings(BaseModel):
    enabled: bool = True
    min_score: int = Field(default=70, ge=0, le=100)


class LabelSettings(BaseModel):
    approved: str = "sherlock:approved"
    needs_review: str = "sherlock:needs-review"
    has_issues: str = "sherlock:has-issues"


class RepoConfig(BaseModel):
    """Effective review configuration for one repository."""

    ai: AIConfig = Field(default_factory=AIConfig)
    review: ReviewTriggers = Field(default_factory=ReviewTriggers)
    comments: CommentSettings = Field(default_factory=CommentSettings)
    focus: FocusAreas = Field(default_factory=FocusAreas)
    rules: list[str] = Field(default_factory=list)
    ignore: IgnoreSettings = Field(default_factory=IgnoreSettings)
    security: SecuritySettings = Field(default_factory=SecuritySettings)
    performance: PerformanceSettings = Field(default_factory=PerformanceSettings)
    labels: LabelSettings = Field(default_factory=LabelSettings)

    def should_ignore_file(self, file_path: str) -> bool:
        """True if the path matches an ignore glob or an ignored file name."""
        path = normalize_path(file_path)
        return matches_any_glob(path, self.ignore.paths) or matches_any_glob(
            path, self.ignore.files
        )


def default_config() -> RepoConfig:
    return RepoConfig()


def _from_mapping(data: Any, source: str) -> RepoConfig:
    if data is None:
        return RepoConfig()
    if not isinstance(data, dict):
        raise RepoConfigError(f"invalid config in {source}: expected a mapping")
    try:
        return RepoConfig.model_validate(data)
    except ValidationError as e:
        raise RepoConfigError(f"invalid config in {source}: {e}") from e


def load_from_file(worktree_path: str | Path) -> RepoConfig | None:
    """Load ``.sherlock.yml`` from a checkout.

    Returns:
        The parsed config, or None when the repository has no config file

    Raises:
        RepoConfigError: If the file exists but is malformed
    """
    root = Path(worktree_path)
    for name in CONFIG_FILENAMES:
        path = root / name
        if not path.is_file():
            continue
        try:
            data = yaml.safe_load(path.read_text(encoding="utf-8"))
        except yaml.YAMLError as e:
            raise RepoConfigError(f"invalid YAML in {name}: {e}") from e
        return _from_mapping(data, name)
    return None


def load_from_json(config_json: str | None) -> RepoConfig | None:
    """Load a persisted repository config; empty input means no config."""
    if not config_json or not config_json.strip():
        return None
    try:
        data = json.loads(config_json)
    except json.JSONDecodeError as e:
        raise RepoConfigError(f"invalid persisted config JSON: {e}") from e
    return _from_mapping(data, "persisted config")


def resolve_config(
    worktree_path: str | Path | None, persisted_json: str | None
) -> RepoConfig:
    """Resolve the effective config for a review.

    The repository file wins; the persisted custom rules are merged in when
    the file defines none. Without a usable file the persisted config
    applies, and without either the built-in defaults. Malformed sources are
    logged and skipped.
    """
    file_config: RepoConfig | None = None
    if worktree_path is not None:
        try:
            file_config = load_from_file(worktree_path)
        except RepoConfigError as e:
            logger.warning(f"Ignoring repository config file: {e}")

    persisted: RepoConfig | None = None
    try:
        persisted = load_from_json(persisted_json)
    except RepoConfigError as e:
        logger.warning(f"Ignoring persisted repository config: {e}")

    if file_config is not None:
        if not file_config.rules and persisted is not None and persisted.rules:
            return file_config.model_copy(update={"rules": list(persisted.rules)})
        return file_config
    if persisted is not None:
        return persisted
    return default_config()
