"""Review result models shared by the orchestrator, cache and comment clients."""

from enum import Enum
from typing import Any

from pydantic import BaseModel, Field


class Severity(str, Enum):
    ERROR = "error"
    WARNING = "warning"
    INFO = "info"


class Category(str, Enum):
    BUGS = "bugs"
    SECURITY = "security"
    PERFORMANCE = "performance"
    CODE_QUALITY = "code_quality"
    ARCHITECTURE = "architecture"


class Recommendation(str, Enum):
    APPROVE = "APPROVE"
    REQUEST_CHANGES = "REQUEST_CHANGES"
    COMMENT = "COMMENT"


SEVERITY_EMOJI: dict[Severity, str] = {
    Severity.ERROR: "🔴",
    Severity.WARNING: "🟡",
    Severity.INFO: "💡",
}


def normalize_severity(value: Any) -> Severity:
    """Map an engine severity string onto the schema, defaulting to ``info``."""
    text = str(value or "").strip().lower()
    if text == "error":
        return Severity.ERROR
    if text == "warning":
        return Severity.WARNING
    return Severity.INFO


def normalize_category(value: Any) -> Category:
    """Map an engine category string onto the schema, defaulting to ``code_quality``."""
    text = str(value or "").strip().lower()
    try:
        return Category(text)
    except ValueError:
        return Category.CODE_QUALITY


def normalize_recommendation(value: Any) -> Recommendation:
    text = str(value or "").strip().upper()
    if text == "APPROVE":
        return Recommendation.APPROVE
    if text == "REQUEST_CHANGES":
        return Recommendation.REQUEST_CHANGES
    return Recommendation.COMMENT


class ReviewComment(BaseModel):
    """A single code review comment.

    Represents an inline comment on a specific file and line,
    categorized by severity and type.
    """

    file: str
    line: int
    severity: Severity = Severity.INFO
    category: Category = Category.CODE_QUALITY
    message: str
    fix: str | None = None

    @property
    def is_error(self) -> bool:
        return self.severity is Severity.ERROR

    @property
    def emoji(self) -> str:
        return SEVERITY_EMOJI.get(self.severity, "💡")

    def format_markdown(self) -> str:
        """Format as the body of an inline comment."""
        parts = [
            f"{self.emoji} **{self.severity.value.upper()}** | `{self.category.value}`",
            "",
            self.message,
        ]
        if self.fix:
            parts.extend(["", "**Suggested fix:**", "```", self.fix, "```"])
        return "\n".join(parts)


class ReviewSummary(BaseModel):
    """Aggregate counts for a review."""

    total_issues: int = 0
    errors: int = 0
    warnings: int = 0
    suggestions: int = 0
    files_reviewed: int = 0

    @classmethod
    def from_comments(
        cls, comments: list[ReviewComment], files_reviewed: int = 0
    ) -> "ReviewSummary":
        errors = sum(1 for c in comments if c.severity is Severity.ERROR)
        warnings = sum(1 for c in comments if c.severity is Severity.WARNING)
        suggestions = sum(1 for c in comments if c.severity is Severity.INFO)
        return cls(
            total_issues=errors + warnings + suggestions,
            errors=errors,
            warnings=warnings,
            suggestions=suggestions,
            files_reviewed=files_reviewed,
        )


class ReviewResult(BaseModel):
    """Complete, normalized review result.

    Produced once per review job, persisted, then handed to a
    platform-specific comment client.
    """

    recommendation: Recommendation = Recommendation.COMMENT
    comments: list[ReviewComment] = Field(default_factory=list)
    summary: ReviewSummary = Field(default_factory=ReviewSummary)
    overview: str = ""
    incremental: bool = False
    cached_chunks: int = 0

    @property
    def total_comments(self) -> int:
        return len(self.comments)

    @classmethod
    def from_engine_output(cls, raw: dict[str, Any]) -> "ReviewResult":
        """Normalize the analysis engine's raw JSON verdict.

        Unknown severity/category strings fall back to safe defaults and
        malformed comment entries are dropped instead of failing the review.
        """
        comments: list[ReviewComment] = []
        for item in raw.get("comments") or []:
            if not isinstance(item, dict) or not item.get("file"):
                continue
            try:
                line = int(item.get("line") or 0)
            except (TypeError, ValueError):
                line = 0
            comments.append(
                ReviewComment(
                    file=str(item["file"]),
                    line=line,
                    severity=normalize_severity(item.get("severity")),
                    category=normalize_category(item.get("category")),
                    message=str(item.get("message") or ""),
                    fix=item.get("fix") or None,
                )
            )

        files = {c.file for c in comments}
        return cls(
            recommendation=normalize_recommendation(raw.get("recommendation")),
            comments=comments,
            summary=ReviewSummary.from_comments(comments, files_reviewed=len(files)),
            overview=str(raw.get("summary") or ""),
        )

    def format_summary_markdown(self) -> str:
        """Format the review summary as markdown without skipped-comment sections."""
        lines = [
            "## 📊 Review Summary",
            "",
            f"**Recommendation:** {self.recommendation.value}",
            "",
        ]
        if self.overview:
            lines.extend([self.overview, ""])
        lines.extend(
            [
                "| Category | Count |",
                "|----------|-------|",
                f"| 🔴 Errors | {self.summary.errors} |",
                f"| 🟡 Warnings | {self.summary.warnings} |",
                f"| 💡 Suggestions | {self.summary.suggestions} |",
                "",
            ]
        )
        if self.comments:
            lines.append("### Top Issues")
            for comment in self.comments[:5]:
                lines.append(f"- {comment.message} in `{comment.file}:{comment.line}`")
            lines.append("")
        return "\n".join(lines)
