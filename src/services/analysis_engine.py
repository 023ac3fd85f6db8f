"""Client for the external code analysis engine.

The engine is an opaque executable. It is invoked as::

    <command> <mode> <config.json> <worktree> [mode arguments...]

with the working directory set to the worktree, and prints a JSON verdict on
stdout. Modes: ``review``, ``explain``, ``security``, ``performance``, ``fix``.
"""

import asyncio
import json
import logging
import os
import shlex
import tempfile
from pathlib import Path
from typing import Any, Protocol

from src.config.repo_config import RepoConfig
from src.config.settings import Settings
from src.models.jobs import PRInfo, RepoInfo

logger = logging.getLogger(__name__)


class AnalysisError(RuntimeError):
    """The analysis engine failed or produced unusable output."""


class AnalysisEngine(Protocol):
    """Operations the orchestrator and command handlers need from the engine."""

    async def review(
        self,
        worktree: Path,
        target_ref: str,
        base_ref: str,
        config: dict[str, Any],
        files: list[str] | None = None,
    ) -> dict[str, Any]: ...

    async def explain(
        self, worktree: Path, file_path: str, line: int, config: dict[str, Any]
    ) -> dict[str, Any]: ...

    async def security(
        self, worktree: Path, target_ref: str, base_ref: str, config: dict[str, Any]
    ) -> dict[str, Any]: ...

    async def performance(
        self, worktree: Path, target_ref: str, base_ref: str, config: dict[str, Any]
    ) -> dict[str, Any]: ...

    async def fix(
        self, worktree: Path, target_ref: str, base_ref: str, config: dict[str, Any]
    ) -> dict[str, Any]: ...


def extract_json(output: str) -> dict[str, Any]:
    """Parse the JSON object spanning the first ``{`` to the last ``}``.

    The engine may log before or after its verdict on stdout.
    """
    start = output.find("{")
    end = output.rfind("}")
    if start < 0 or end < start:
        raise AnalysisError("analysis engine produced no JSON verdict")
    try:
        data = json.loads(output[start : end + 1])
    except json.JSONDecodeError as e:
        raise AnalysisError(f"analysis engine output is unparsable: {e}") from e
    if not isinstance(data, dict):
        raise AnalysisError("analysis engine verdict is not a JSON object")
    return data


def build_engine_config(
    repo: RepoInfo,
    pr: PRInfo,
    repo_config: RepoConfig,
    app_settings: Settings,
) -> dict[str, Any]:
    """Build the configuration document handed to the engine.

    The repository file may override the provider and model; API keys always
    come from the service settings.
    """
    provider = repo_config.ai.provider or app_settings.ai_provider
    config: dict[str, Any] = {
        "aiProvider": provider,
        "globalRules": list(repo_config.rules),
        "repository": {
            "owner": repo.owner,
            "repo": repo.name,
            "baseBranch": pr.base_branch,
        },
        "pr": {"number": pr.number, "baseBranch": pr.base_branch},
        "focus": repo_config.focus.model_dump(),
        "maxComments": repo_config.comments.max_comments,
    }
    if provider == "claude":
        config["claude"] = {
            "apiKey": app_settings.claude_api_key or "",
            "model": repo_config.ai.model or app_settings.claude_model,
        }
    else:
        config["openai"] = {
            "apiKey": app_settings.openai_api_key or "",
            "model": repo_config.ai.model or app_settings.openai_model,
        }
    return config


class SubprocessAnalysisEngine:
    """Runs the analysis engine as a child process per request."""

    def __init__(self, command: str, timeout: float = 240) -> None:
        self.argv = shlex.split(command)
        if not self.argv:
            raise ValueError("analysis command must not be empty")
        self.timeout = timeout

    async def _run(
        self, mode: str, worktree: Path, config: dict[str, Any], *args: str
    ) -> dict[str, Any]:
        with tempfile.NamedTemporaryFile(
            "w", prefix="sherlock-config-", suffix=".json", delete=False
        ) as handle:
            json.dump(config, handle)
            config_path = handle.name

        try:
            logger.info(f"Running analysis engine ({mode}) in {worktree}")
            try:
                process = await asyncio.create_subprocess_exec(
                    *self.argv,
                    mode,
                    config_path,
                    str(worktree),
                    *args,
                    cwd=str(worktree),
                    stdout=asyncio.subprocess.PIPE,
                    stderr=asyncio.subprocess.PIPE,
                )
            except FileNotFoundError as e:
                raise AnalysisError(
                    f"analysis engine executable not found: {self.argv[0]}"
                ) from e

            try:
                stdout, stderr = await asyncio.wait_for(
                    process.communicate(), timeout=self.timeout
                )
            except asyncio.TimeoutError as e:
                process.kill()
                await process.wait()
                raise AnalysisError(
                    f"analysis engine {mode} timed out after {self.timeout}s"
                ) from e
            except asyncio.CancelledError:
                if process.returncode is None:
                    process.kill()
                    await process.wait()
                raise
        finally:
            os.unlink(config_path)

        if process.returncode != 0:
            tail = stderr.decode("utf-8", errors="replace").strip()[-500:]
            raise AnalysisError(
                f"analysis engine {mode} failed (exit {process.returncode}): {tail}"
            )
        return extract_json(stdout.decode("utf-8", errors="replace"))

    async def review(
        self,
        worktree: Path,
        target_ref: str,
        base_ref: str,
        config: dict[str, Any],
        files: list[str] | None = None,
    ) -> dict[str, Any]:
        return await self._run(
            "review", worktree, config, target_ref, base_ref, json.dumps(files or [])
        )

    async def explain(
        self, worktree: Path, file_path: str, line: int, config: dict[str, Any]
    ) -> dict[str, Any]:
        return await self._run("explain", worktree, config, file_path, str(line))

    async def security(
        self, worktree: Path, target_ref: str, base_ref: str, config: dict[str, Any]
    ) -> dict[str, Any]:
        return await self._run("security", worktree, config, target_ref, base_ref)

    async def performance(
        self, worktree: Path, target_ref: str, base_ref: str, config: dict[str, Any]
    ) -> dict[str, Any]:
        return await self._run("performance", worktree, config, target_ref, base_ref)

    async def fix(
        self, worktree: Path, target_ref: str, base_ref: str, config: dict[str, Any]
    ) -> dict[str, Any]:
        return await self._run("fix", worktree, config, target_ref, base_ref)
