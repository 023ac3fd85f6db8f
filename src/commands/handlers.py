"""Command handlers.

Each handler resolves its own inputs through collaborators injected at
construction and returns a platform-agnostic markdown reply. Handlers never
post; the orchestrator does.
"""

import logging
from contextlib import AbstractAsyncContextManager
from pathlib import Path
from typing import Any, Protocol

from src.commands.parser import CommandParser
from src.models.commands import Command, CommandContext
from src.services.analysis_engine import AnalysisEngine

logger = logging.getLogger(__name__)

TOP_ISSUES = 10


class CommandHandler(Protocol):
    async def handle(self, command: Command, ctx: CommandContext) -> str: ...


class ReviewRequester(Protocol):
    """Queues a fresh full review for the PR a command was issued on."""

    async def request_review(self, ctx: CommandContext) -> str: ...


class WorkspaceProvider(Protocol):
    """Provides a temporary worktree at the PR head, removed on exit."""

    def checkout(self, ctx: CommandContext) -> AbstractAsyncContextManager[Path]: ...


class EngineConfigProvider(Protocol):
    """Resolves the analysis engine configuration for a command."""

    def engine_config(self, ctx: CommandContext, worktree: Path) -> dict[str, Any]: ...


def parse_file_line(target: str) -> tuple[str, int] | None:
    """Split ``path:line`` on the last colon; the line must be a non-negative integer."""
    path, sep, line = target.rpartition(":")
    if not sep or not path or not (line.isascii() and line.isdigit()):
        return None
    return path, int(line)


def base_ref(ctx: CommandContext) -> str:
    return f"origin/{ctx.pr.base_branch}"


class ReviewCommandHandler:
    def __init__(self, requester: ReviewRequester) -> None:
        self.requester = requester

    async def handle(self, command: Command, ctx: CommandContext) -> str:
        job_id = await self.requester.request_review(ctx)
        logger.info(f"Review requested by command for {ctx.repo.full_name}#{ctx.pr.number}")
        return (
            f"✅ Review queued! Job ID: {job_id}\n\n"
            "I'll analyze the code changes and post the results shortly."
        )


class ExplainCommandHandler:
    def __init__(
        self,
        workspaces: WorkspaceProvider,
        configs: EngineConfigProvider,
        engine: AnalysisEngine,
        bot_name: str = "sherlock",
    ) -> None:
        self.workspaces = workspaces
        self.configs = configs
        self.engine = engine
        self.bot_name = bot_name

    async def handle(self, command: Command, ctx: CommandContext) -> str:
        usage = f"`@{self.bot_name} explain src/file.ts:45`"
        if not command.args:
            return f"Please specify what to explain. Example: {usage}"

        target = parse_file_line(command.args[0])
        if target is None:
            return f"Invalid format. Use: {usage}"
        file_path, line = target

        async with self.workspaces.checkout(ctx) as worktree:
            config = self.configs.engine_config(ctx, worktree)
            result = await self.engine.explain(worktree, file_path, line, config)

        parts = [
            "## 📖 Code Explanation",
            "",
            f"**File:** `{file_path}:{line}`",
            "",
            f"**Summary:** {result.get('summary', '')}",
            "",
        ]
        concepts = result.get("concepts") or []
        if concepts:
            parts.extend([f"**Key Concepts:** {', '.join(map(str, concepts))}", ""])
        parts.extend([f"**Complexity:** {result.get('complexity', 'unknown')}", ""])
        if result.get("details"):
            parts.extend(["**Details:**", "", str(result["details"])])
        return "\n".join(parts).rstrip() + "\n"


class FixCommandHandler:
    """Lists engine-generated fixes, optionally limited to the given paths."""

    def __init__(
        self,
        workspaces: WorkspaceProvider,
        configs: EngineConfigProvider,
        engine: AnalysisEngine,
    ) -> None:
        self.workspaces = workspaces
        self.configs = configs
        self.engine = engine

    async def handle(self, command: Command, ctx: CommandContext) -> str:
        async with self.workspaces.checkout(ctx) as worktree:
            config = self.configs.engine_config(ctx, worktree)
            result = await self.engine.fix(worktree, ctx.pr.head_ref, base_ref(ctx), config)

        suggestions = [s for s in result.get("suggestions") or [] if isinstance(s, dict)]
        if command.args:
            suggestions = [
                s
                for s in suggestions
                if any(str(s.get("file", "")).startswith(arg) for arg in command.args)
            ]
        if not suggestions:
            return "## 🔧 Suggested Fixes\n\nNo fixes to suggest for this PR. 🎉\n"

        high = sum(1 for s in suggestions if s.get("confidence") == "high")
        parts = [
            "## 🔧 Suggested Fixes",
            "",
            f"**{len(suggestions)}** suggestion(s), **{high}** with high confidence.",
            "",
        ]
        for suggestion in suggestions[:TOP_ISSUES]:
            parts.append(
                f"### `{suggestion.get('file', '?')}:{suggestion.get('line', 0)}` "
                f"({suggestion.get('confidence', 'unknown')} confidence)"
            )
            parts.append("")
            if suggestion.get("description"):
                parts.extend([str(suggestion["description"]), ""])
            if suggestion.get("fix"):
                parts.extend(["```", str(suggestion["fix"]), "```", ""])
        if len(suggestions) > TOP_ISSUES:
            parts.append(f"_...and {len(suggestions) - TOP_ISSUES} more._")
        return "\n".join(parts).rstrip() + "\n"


class SecurityCommandHandler:
    def __init__(
        self,
        workspaces: WorkspaceProvider,
        configs: EngineConfigProvider,
        engine: AnalysisEngine,
    ) -> None:
        self.workspaces = workspaces
        self.configs = configs
        self.engine = engine

    async def handle(self, command: Command, ctx: CommandContext) -> str:
        async with self.workspaces.checkout(ctx) as worktree:
            config = self.configs.engine_config(ctx, worktree)
            result = await self.engine.security(
                worktree, ctx.pr.head_ref, base_ref(ctx), config
            )

        summary = result.get("summary") or {}
        parts = [
            "## 🔒 Security Scan Results",
            "",
            "| Severity | Count |",
            "|----------|-------|",
            f"| 🔴 Critical | {summary.get('critical', 0)} |",
            f"| 🟠 High | {summary.get('high', 0)} |",
            f"| 🟡 Medium | {summary.get('medium', 0)} |",
            f"| ⚪ Low | {summary.get('low', 0)} |",
            "",
        ]
        issues = result.get("issues") or []
        if issues:
            parts.extend(["### Top Issues", ""])
            for issue in issues[:TOP_ISSUES]:
                parts.append(
                    f"- **{issue.get('severity', 'unknown')}** in "
                    f"`{issue.get('file', '?')}:{issue.get('line', 0)}`: {issue.get('message', '')}"
                )
            parts.append("")
        parts.append(f"**Recommendation:** {result.get('recommendation', 'n/a')}")
        return "\n".join(parts) + "\n"


class PerformanceCommandHandler:
    def __init__(
        self,
        workspaces: WorkspaceProvider,
        configs: EngineConfigProvider,
        engine: AnalysisEngine,
    ) -> None:
        self.workspaces = workspaces
        self.configs = configs
        self.engine = engine

    async def handle(self, command: Command, ctx: CommandContext) -> str:
        async with self.workspaces.checkout(ctx) as worktree:
            config = self.configs.engine_config(ctx, worktree)
            result = await self.engine.performance(
                worktree, ctx.pr.head_ref, base_ref(ctx), config
            )

        summary = result.get("summary") or {}
        parts = [
            "## ⚡ Performance Analysis",
            "",
            f"**Performance Score:** {result.get('score', 0)}/100",
            "",
            "| Impact | Count |",
            "|--------|-------|",
            f"| 🔴 High | {summary.get('high', 0)} |",
            f"| 🟡 Medium | {summary.get('medium', 0)} |",
            f"| ⚪ Low | {summary.get('low', 0)} |",
            "",
        ]
        issues = result.get("issues") or []
        if issues:
            parts.extend(["### Top Issues", ""])
            for issue in issues[:TOP_ISSUES]:
                parts.append(
                    f"- **{issue.get('impact', 'unknown')}** impact in "
                    f"`{issue.get('file', '?')}:{issue.get('line', 0)}`: {issue.get('message', '')}"
                )
        return "\n".join(parts).rstrip() + "\n"


class HelpCommandHandler:
    def __init__(self, parser: CommandParser) -> None:
        self.parser = parser

    async def handle(self, command: Command, ctx: CommandContext) -> str:
        return self.parser.help_message()
