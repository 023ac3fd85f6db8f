"""Platform comment clients: post review results and command replies.

GitHub goes through PyGithub; GitLab through its REST API with httpx.
"""

import logging
from typing import Any, Protocol
from urllib.parse import quote

import httpx
from github import Auth, Github, GithubException

from src.config.repo_config import RepoConfig
from src.models.jobs import Platform, PRInfo, RepoInfo
from src.models.outputs import Recommendation, ReviewComment, ReviewResult
from src.services.diff_parser import commentable_lines
from src.utils.filters import normalize_path

logger = logging.getLogger(__name__)

OWN_PR_ERROR = "Can not request changes on your own pull request"


class CommentPostingError(RuntimeError):
    """Posting to the platform failed."""


class CommentClient(Protocol):
    def post_review(
        self, repo: RepoInfo, pr: PRInfo, result: ReviewResult, repo_config: RepoConfig
    ) -> None: ...

    def post_reply(self, repo: RepoInfo, pr: PRInfo, body: str) -> None: ...


def _comment_heading(comment: ReviewComment) -> str:
    return (
        f"### {comment.emoji} **{comment.severity.value.upper()}** | "
        f"`{comment.category.value}` | `{comment.file}:{comment.line}`"
    )


def _collapsed_section(title: str, intro: str, comments: list[ReviewComment]) -> list[str]:
    lines = ["<details>", f"<summary>⚠️ {title} ({len(comments)})</summary>", "", intro, ""]
    for comment in comments:
        lines.extend([_comment_heading(comment), ""])
        if comment.message:
            lines.extend([comment.message, ""])
        if comment.fix:
            lines.extend(["**Suggested fix:**", "```", comment.fix, "```", ""])
    lines.extend(["</details>", ""])
    return lines


def format_review_body(
    result: ReviewResult,
    bot_name: str,
    outside_files: list[ReviewComment] | None = None,
    outside_lines: list[ReviewComment] | None = None,
    not_inline: list[ReviewComment] | None = None,
) -> str:
    """Markdown review body: summary table plus comments that could not be inline."""
    outside_files = outside_files or []
    outside_lines = outside_lines or []
    not_inline = not_inline or []

    parts = [result.format_summary_markdown()]

    skipped = len(outside_files) + len(outside_lines)
    if skipped:
        parts.extend(
            [
                "---",
                "",
                f"⚠️ **Note:** {skipped} comment(s) could not be posted as inline "
                "comments due to platform limitations.",
                "",
            ]
        )
        if outside_files:
            parts.extend(
                _collapsed_section(
                    "Outside diff range comments",
                    "These comments reference files that are not part of this PR's diff:",
                    outside_files,
                )
            )
        if outside_lines:
            parts.extend(
                _collapsed_section(
                    "Invalid line number comments",
                    "These comments reference line numbers that are not in the diff:",
                    outside_lines,
                )
            )

    if not_inline:
        parts.extend(
            _collapsed_section(
                "Review comments", "Comments from this review:", not_inline
            )
        )

    parts.extend(["---", "", f"💬 Reply with `@{bot_name} help` for available commands"])
    return "\n".join(parts)


def _find_file_lines(
    valid_lines: dict[str, set[int]], file_path: str
) -> set[int] | None:
    normalized = normalize_path(file_path)
    for candidate in (file_path, normalized):
        if candidate in valid_lines:
            return valid_lines[candidate]
    for pr_file, lines in valid_lines.items():
        if pr_file.endswith(normalized):
            return lines
    return None


class GitHubCommentClient:
    """Posts reviews and replies to GitHub pull requests."""

    def __init__(
        self,
        token: str,
        bot_name: str = "sherlock",
        base_url: str = "https://api.github.com",
        github: Github | None = None,
    ) -> None:
        self.bot_name = bot_name
        self.github = github or Github(auth=Auth.Token(token), base_url=base_url, per_page=100)

    def post_review(
        self, repo: RepoInfo, pr: PRInfo, result: ReviewResult, repo_config: RepoConfig
    ) -> None:
        """
        Post one review at the head commit.

        Comments on lines GitHub will accept are posted inline (up to
        ``comments.max_comments``); the rest are listed in the review body.
        A refused request-changes on the bot's own PR is re-posted as COMMENT.
        """
        try:
            gh_repo = self.github.get_repo(repo.full_name)
            pull = gh_repo.get_pull(pr.number)
            commit = gh_repo.get_commit(pr.head_sha or pull.head.sha)
            valid_lines = {
                f.filename: commentable_lines(f.patch) for f in pull.get_files() if f.patch
            }
        except GithubException as e:
            raise CommentPostingError(f"failed to load PR files for {repo.full_name}#{pr.number}: {e}") from e

        inline: list[dict[str, Any]] = []
        outside_files: list[ReviewComment] = []
        outside_lines: list[ReviewComment] = []
        overflow: list[ReviewComment] = []
        limit = repo_config.comments.max_comments

        for comment in result.comments:
            lines = _find_file_lines(valid_lines, comment.file)
            if lines is None:
                outside_files.append(comment)
            elif comment.line not in lines:
                outside_lines.append(comment)
            elif not repo_config.comments.post_inline or len(inline) >= limit:
                overflow.append(comment)
            else:
                inline.append(
                    {
                        "path": comment.file,
                        "line": comment.line,
                        "side": "RIGHT",
                        "body": comment.format_markdown(),
                    }
                )

        logger.info(
            f"Comment validation for {repo.full_name}#{pr.number}: {len(inline)} inline, "
            f"{len(outside_files)} outside files, {len(outside_lines)} outside lines, "
            f"{len(overflow)} not inline"
        )

        if not repo_config.comments.post_summary and not inline:
            logger.info("Summary posting disabled and no inline comments; skipping review")
            return

        body = format_review_body(
            result, self.bot_name, outside_files, outside_lines, overflow
        )
        event = result.recommendation.value

        try:
            pull.create_review(commit=commit, body=body, event=event, comments=inline)
        except GithubException as e:
            if event != Recommendation.REQUEST_CHANGES.value or OWN_PR_ERROR not in str(e):
                raise CommentPostingError(f"failed to create PR review: {e}") from e
            logger.warning("Cannot request changes on own PR, retrying with COMMENT event")
            event = Recommendation.COMMENT.value
            try:
                pull.create_review(commit=commit, body=body, event=event, comments=inline)
            except GithubException as retry_error:
                raise CommentPostingError(
                    f"failed to create PR review: {retry_error}"
                ) from retry_error

        logger.info(
            f"Posted review on {repo.full_name}#{pr.number} (event={event}, inline={len(inline)})"
        )

    def post_reply(self, repo: RepoInfo, pr: PRInfo, body: str) -> None:
        try:
            issue = self.github.get_repo(repo.full_name).get_issue(pr.number)
            issue.create_comment(body)
        except GithubException as e:
            raise CommentPostingError(f"failed to post comment: {e}") from e
        logger.info(f"Posted reply on {repo.full_name}#{pr.number}")


class GitLabCommentClient:
    """Posts review summaries and replies as merge request notes.

    Inline discussions are not created; every comment is listed in the
    summary note instead.
    """

    def __init__(
        self,
        token: str,
        bot_name: str = "sherlock",
        base_url: str = "https://gitlab.com",
        http_client: httpx.Client | None = None,
    ) -> None:
        self.bot_name = bot_name
        self.base_url = base_url.rstrip("/")
        self.http = http_client or httpx.Client(
            headers={"PRIVATE-TOKEN": token}, timeout=30.0
        )

    def _notes_url(self, repo: RepoInfo, pr: PRInfo) -> str:
        project = quote(repo.full_name, safe="")
        return f"{self.base_url}/api/v4/projects/{project}/merge_requests/{pr.number}/notes"

    def _post_note(self, repo: RepoInfo, pr: PRInfo, body: str) -> None:
        try:
            response = self.http.post(self._notes_url(repo, pr), json={"body": body})
            response.raise_for_status()
        except httpx.HTTPError as e:
            raise CommentPostingError(f"failed to post merge request note: {e}") from e

    def post_review(
        self, repo: RepoInfo, pr: PRInfo, result: ReviewResult, repo_config: RepoConfig
    ) -> None:
        if not repo_config.comments.post_summary:
            logger.info("Summary posting disabled; skipping merge request note")
            return
        listed = result.comments[: repo_config.comments.max_comments]
        body = format_review_body(result, self.bot_name, not_inline=listed)
        self._post_note(repo, pr, body)
        logger.info(f"Posted review note on {repo.full_name}!{pr.number}")

    def post_reply(self, repo: RepoInfo, pr: PRInfo, body: str) -> None:
        self._post_note(repo, pr, body)
        logger.info(f"Posted reply note on {repo.full_name}!{pr.number}")


class CommentClientFactory:
    """Creates the comment client for a job's platform."""

    def __init__(
        self,
        bot_name: str,
        github_api_url: str = "https://api.github.com",
        gitlab_url: str = "https://gitlab.com",
        gitlab_token: str | None = None,
    ) -> None:
        self.bot_name = bot_name
        self.github_api_url = github_api_url
        self.gitlab_url = gitlab_url
        self.gitlab_token = gitlab_token

    def for_platform(self, platform: Platform, token: str | None) -> CommentClient:
        if platform is Platform.GITLAB:
            gitlab_token = token or self.gitlab_token
            if not gitlab_token:
                raise CommentPostingError("GitLab token is not configured")
            return GitLabCommentClient(gitlab_token, self.bot_name, self.gitlab_url)
        if not token:
            raise CommentPostingError("GitHub installation token is unavailable")
        return GitHubCommentClient(token, self.bot_name, self.github_api_url)
