"""Git snapshot service: blob-filtered clones, per-job worktrees and diffs.

Layout under ``repos_path``::

    <repos_path>/<owner>__<repo>/      durable clone, shared across jobs
    <repos_path>/<owner>__<repo>.lock  lock serializing fetches into that clone
    <repos_path>/<uuid>/               fresh clone before it is claimed
    <repos_path>/worktrees/<uuid>/     exclusive per-job worktree

Access tokens never reach the clone's config: the remote URL is reset to the
plain URL after cloning, and later network access (fetches and the lazy blob
fetches of a partial clone) authenticates with an ``http.extraHeader`` passed
through the environment of each git process.
"""

import asyncio
import base64
import fcntl
import logging
import os
import shutil
import time
import uuid
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from dataclasses import dataclass
from datetime import timedelta
from pathlib import Path
from urllib.parse import urlsplit, urlunsplit

from src.config.settings import GitNotFoundError
from src.models.diff import FileDiff, FileStatus
from src.models.jobs import RepoInfo
from src.services.diff_parser import build_file_diff, changed_lines

logger = logging.getLogger(__name__)

WORKTREES_DIR = "worktrees"
LOCK_POLL_SECONDS = 0.05


class GitError(RuntimeError):
    """A git subprocess failed."""


@dataclass
class GitResult:
    returncode: int
    stdout: str
    stderr: str


def embed_token(url: str, token: str | None) -> str:
    """Return ``url`` with an access token embedded for HTTP(S) remotes.

    GitHub uses the ``x-access-token`` user, GitLab the ``oauth2`` user.
    Other URL shapes (ssh, scp-like, file) are returned unchanged with a
    warning so the clone still runs, unauthenticated.
    """
    if not token:
        return url

    parts = urlsplit(url)
    if parts.scheme not in ("http", "https") or not parts.hostname:
        logger.warning(
            f"Unrecognized clone URL format, cloning without token: {url}"
        )
        return url

    netloc = parts.hostname if parts.port is None else f"{parts.hostname}:{parts.port}"
    return urlunsplit(
        (
            parts.scheme,
            f"{_token_user(parts.hostname)}:{token}@{netloc}",
            parts.path,
            parts.query,
            parts.fragment,
        )
    )


def auth_header(url: str, token: str | None) -> str | None:
    """Return an HTTP ``Authorization`` header for git requests to ``url``.

    Uses the same basic-auth user as :func:`embed_token`. Returns None when
    there is no token or the URL is not HTTP(S).
    """
    if not token:
        return None
    parts = urlsplit(url)
    if parts.scheme not in ("http", "https") or not parts.hostname:
        return None
    credentials = f"{_token_user(parts.hostname)}:{token}".encode("utf-8")
    return f"Authorization: Basic {base64.b64encode(credentials).decode('ascii')}"


def _token_user(hostname: str) -> str:
    return "oauth2" if "gitlab" in hostname else "x-access-token"


def _clone_dir_name(full_name: str) -> str:
    return full_name.replace(":", "-").replace("/", "__")


class SnapshotService:
    """Manage durable clones and per-job worktrees for code review."""

    def __init__(
        self,
        repos_path: str | Path,
        git_path: str,
        command_timeout: float = 600,
    ) -> None:
        """
        Args:
            repos_path: Root directory for clones and worktrees
            git_path: Absolute path of the git executable, resolved at startup
            command_timeout: Timeout for any single git subprocess (seconds)

        Raises:
            GitNotFoundError: If ``git_path`` is not an executable file
        """
        if not (os.path.isfile(git_path) and os.access(git_path, os.X_OK)):
            raise GitNotFoundError(f"git executable is not usable: {git_path}")

        self.git_path = git_path
        self.repos_path = Path(repos_path)
        self.worktrees_path = self.repos_path / WORKTREES_DIR
        self.command_timeout = command_timeout
        self.worktrees_path.mkdir(parents=True, exist_ok=True)
        # Auth headers per durable clone, and the clone behind each worktree
        self._credentials: dict[Path, str] = {}
        self._worktree_clones: dict[Path, Path] = {}

    # === process execution ===

    def _git_env(self, args: tuple[str, ...], lazy_fetch: bool = True) -> dict[str, str]:
        """Environment for one git process.

        Commands run with ``-C <clone or worktree>`` get the clone's auth
        header as ``http.extraHeader`` so lazy blob fetches authenticate.
        """
        env = {**os.environ, "GIT_TERMINAL_PROMPT": "0"}
        if not lazy_fetch:
            env["GIT_NO_LAZY_FETCH"] = "1"
        if len(args) >= 2 and args[0] == "-C":
            path = Path(args[1])
            header = self._credentials.get(self._worktree_clones.get(path, path))
            if header:
                env.update(
                    {
                        "GIT_CONFIG_COUNT": "1",
                        "GIT_CONFIG_KEY_0": "http.extraHeader",
                        "GIT_CONFIG_VALUE_0": header,
                    }
                )
        return env

    def _remember_credentials(self, clone_path: Path, url: str, token: str | None) -> None:
        header = auth_header(url, token)
        if header:
            self._credentials[clone_path] = header
        else:
            self._credentials.pop(clone_path, None)

    @asynccontextmanager
    async def _clone_lock(self, clone_path: Path) -> AsyncIterator[None]:
        """Hold an exclusive cross-process lock on ``<clone>.lock``.

        Concurrent fetches into one clone race on ref locks, so every write
        to a durable clone happens under this lock. Closing the descriptor
        releases it.
        """
        lock_path = clone_path.with_name(f"{clone_path.name}.lock")
        fd = os.open(lock_path, os.O_CREAT | os.O_RDWR, 0o600)
        try:
            deadline = time.monotonic() + self.command_timeout
            while True:
                try:
                    fcntl.flock(fd, fcntl.LOCK_EX | fcntl.LOCK_NB)
                    break
                except BlockingIOError:
                    if time.monotonic() >= deadline:
                        raise GitError(
                            f"timed out waiting for lock on {clone_path.name}"
                        ) from None
                    await asyncio.sleep(LOCK_POLL_SECONDS)
            yield
        finally:
            os.close(fd)

    async def _run_git(
        self,
        *args: str,
        cwd: Path | None = None,
        check: bool = True,
        secret: str | None = None,
        lazy_fetch: bool = True,
    ) -> GitResult:
        """Run git and capture its output.

        The child process is killed if the awaiting task is cancelled or the
        command timeout expires. ``lazy_fetch=False`` keeps a partial clone
        from fetching missing objects on demand.
        """
        process = await asyncio.create_subprocess_exec(
            self.git_path,
            *args,
            cwd=str(cwd) if cwd else None,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
            env=self._git_env(args, lazy_fetch),
        )
        try:
            stdout, stderr = await asyncio.wait_for(
                process.communicate(), timeout=self.command_timeout
            )
        except (asyncio.CancelledError, asyncio.TimeoutError):
            if process.returncode is None:
                process.kill()
                await process.wait()
            raise

        result = GitResult(
            returncode=process.returncode if process.returncode is not None else -1,
            stdout=stdout.decode("utf-8", errors="replace"),
            stderr=stderr.decode("utf-8", errors="replace"),
        )
        if check and result.returncode != 0:
            command = " ".join(args[:2])
            message = result.stderr.strip() or result.stdout.strip()
            if secret:
                message = message.replace(secret, "***")
            raise GitError(f"git {command} failed (exit {result.returncode}): {message}")
        return result

    # === clones ===

    async def clone_repository(
        self, url: str, is_private: bool = False, token: str | None = None
    ) -> Path:
        """Clone into a fresh unique directory with a blob-filtered sparse checkout.

        The token, when given, is embedded in the URL for the clone only; the
        remote is reset to ``url`` before returning.

        Returns:
            Path of the new clone

        Raises:
            GitError: If the clone fails; the partial directory is removed
        """
        clone_path = self.repos_path / uuid.uuid4().hex
        clone_url = embed_token(url, token) if (is_private or token) else url

        logger.info(f"Cloning {url} into {clone_path}")
        try:
            await self._run_git(
                "clone",
                "--filter=blob:none",
                "--sparse",
                clone_url,
                str(clone_path),
                secret=token,
            )
            if clone_url != url:
                await self._run_git(
                    "-C", str(clone_path), "remote", "set-url", "origin", url, secret=token
                )
        except BaseException:
            shutil.rmtree(clone_path, ignore_errors=True)
            raise
        return clone_path

    async def obtain_clone(
        self, repo: RepoInfo, token: str | None = None, head_sha: str | None = None
    ) -> Path:
        """Return the durable clone for ``repo``, cloning it on first use.

        Runs under the clone's lock. An existing clone is refreshed with a
        fetch unless it already contains ``head_sha``. A first clone is made
        in a unique directory and renamed into place; if the target appeared
        meanwhile the extra clone is discarded.
        """
        clone_path = self.repos_path / _clone_dir_name(repo.full_name)

        async with self._clone_lock(clone_path):
            if (clone_path / ".git").is_dir():
                self._remember_credentials(clone_path, repo.clone_url, token)
                if head_sha and await self.has_commit(clone_path, head_sha):
                    logger.info(
                        f"Clone for {repo.full_name} already has {head_sha[:12]}, skipping fetch"
                    )
                else:
                    logger.info(f"Reusing clone for {repo.full_name} at {clone_path}")
                    await self._fetch(clone_path)
                os.utime(clone_path)
                return clone_path

            fresh_path = await self.clone_repository(repo.clone_url, repo.is_private, token)
            try:
                os.rename(fresh_path, clone_path)
            except OSError:
                logger.info(f"Clone for {repo.full_name} created concurrently; discarding ours")
                shutil.rmtree(fresh_path, ignore_errors=True)
                if not (clone_path / ".git").is_dir():
                    raise GitError(f"clone path is unusable: {clone_path}")
            self._remember_credentials(clone_path, repo.clone_url, token)
        return clone_path

    async def fetch(
        self,
        clone_path: Path,
        url: str,
        token: str | None = None,
        refspecs: tuple[str, ...] = ("+refs/heads/*:refs/remotes/origin/*",),
    ) -> None:
        """Fetch ``refspecs`` from origin into a durable clone, under its lock."""
        async with self._clone_lock(clone_path):
            self._remember_credentials(clone_path, url, token)
            await self._fetch(clone_path, refspecs)

    async def _fetch(
        self,
        clone_path: Path,
        refspecs: tuple[str, ...] = ("+refs/heads/*:refs/remotes/origin/*",),
    ) -> None:
        await self._run_git(
            "-C", str(clone_path), "fetch", "--filter=blob:none", "origin", *refspecs
        )

    async def has_commit(self, repo_path: Path, sha: str) -> bool:
        """True if the commit is already in the local object store."""
        result = await self._run_git(
            "-C",
            str(repo_path),
            "cat-file",
            "-e",
            f"{sha}^{{commit}}",
            check=False,
            lazy_fetch=False,
        )
        return result.returncode == 0

    async def resolve_commit(self, repo_path: Path, ref: str = "HEAD") -> str:
        """Return the full commit SHA that ``ref`` points to."""
        result = await self._run_git(
            "-C", str(repo_path), "rev-parse", "--verify", f"{ref}^{{commit}}"
        )
        return result.stdout.strip()

    # === worktrees ===

    def new_worktree_path(self) -> Path:
        """Allocate a unique worktree path without creating it."""
        return self.worktrees_path / uuid.uuid4().hex

    async def create_worktree(
        self, clone_path: Path, ref: str, worktree_path: Path | None = None
    ) -> Path:
        """Add an isolated worktree checked out at ``ref``.

        Concurrent calls against the same clone are safe: each worktree is a
        separate directory tracked by git.
        """
        path = worktree_path or self.new_worktree_path()
        logger.info(f"Creating worktree at {path} for {ref[:12]}")
        self._worktree_clones[path] = clone_path
        await self._run_git(
            "-C", str(clone_path), "worktree", "add", "--detach", str(path), ref
        )

        # The clone is sparse; materialize the full tree for analysis
        result = await self._run_git(
            "-C", str(path), "sparse-checkout", "disable", check=False
        )
        if result.returncode != 0:
            logger.warning(
                f"Could not disable sparse checkout in {path}: {result.stderr.strip()}"
            )
        return path

    def _owning_repository(self, worktree_path: Path) -> Path | None:
        """Find the clone whose metadata tracks ``worktree_path``.

        Walks the sibling clone directories under ``repos_path`` looking for
        ``.git/worktrees/<name>``.
        """
        if not self.repos_path.is_dir():
            return None
        for candidate in self.repos_path.iterdir():
            if candidate.name == WORKTREES_DIR or not candidate.is_dir():
                continue
            if (candidate / ".git" / "worktrees" / worktree_path.name).is_dir():
                return candidate
        return None

    async def remove_worktree(self, worktree_path: Path | str | None) -> None:
        """Remove a worktree. Missing paths are a no-op.

        Prefers ``git worktree remove --force`` in the owning clone and falls
        back to deleting the directory.
        """
        if worktree_path is None:
            return
        path = Path(worktree_path)
        self._worktree_clones.pop(path, None)
        if not path.exists():
            return

        owner = self._owning_repository(path)
        if owner is not None:
            result = await self._run_git(
                "-C", str(owner), "worktree", "remove", str(path), "--force", check=False
            )
            if result.returncode == 0 and not path.exists():
                logger.info(f"Removed worktree {path}")
                return
            logger.warning(
                f"git worktree remove failed for {path}, deleting directory: "
                f"{result.stderr.strip()}"
            )

        shutil.rmtree(path, ignore_errors=True)
        if owner is not None:
            await self._run_git("-C", str(owner), "worktree", "prune", check=False)
        logger.info(f"Deleted worktree directory {path}")

    def cleanup_old_repos(self, max_age: timedelta) -> int:
        """Remove clones (and leaked worktrees) older than ``max_age``.

        Age is the directory modification time. Returns the number of
        directories removed.
        """
        if not self.repos_path.is_dir():
            return 0

        cutoff = time.time() - max_age.total_seconds()
        candidates = [
            p for p in self.repos_path.iterdir() if p.is_dir() and p.name != WORKTREES_DIR
        ]
        if self.worktrees_path.is_dir():
            candidates.extend(p for p in self.worktrees_path.iterdir() if p.is_dir())

        removed = 0
        for path in candidates:
            try:
                if path.stat().st_mtime >= cutoff:
                    continue
            except FileNotFoundError:
                continue
            logger.info(f"Removing stale repository directory {path}")
            shutil.rmtree(path, ignore_errors=True)
            if path.parent == self.repos_path:
                path.with_name(f"{path.name}.lock").unlink(missing_ok=True)
            removed += 1
        return removed

    # === diffs ===

    async def _object_exists(self, repo_path: Path, ref: str, file_path: str) -> bool:
        result = await self._run_git(
            "-C", str(repo_path), "cat-file", "-e", f"{ref}:{file_path}", check=False
        )
        return result.returncode == 0

    async def get_file_status(
        self, repo_path: Path, base_ref: str, head_ref: str, file_path: str
    ) -> FileStatus:
        in_base = await self._object_exists(repo_path, base_ref, file_path)
        in_head = await self._object_exists(repo_path, head_ref, file_path)
        if in_head and not in_base:
            return FileStatus.ADDED
        if in_base and not in_head:
            return FileStatus.DELETED
        return FileStatus.MODIFIED

    async def get_file_diff(
        self, repo_path: Path, base_ref: str, head_ref: str, file_path: str
    ) -> FileDiff:
        """Structured diff of one file between the merge base of ``base_ref`` and ``head_ref``."""
        status = await self.get_file_status(repo_path, base_ref, head_ref, file_path)
        if status is FileStatus.DELETED:
            return build_file_diff(file_path, status, "")

        result = await self._run_git(
            "-C",
            str(repo_path),
            "diff",
            "--unified=0",
            f"{base_ref}...{head_ref}",
            "--",
            file_path,
        )
        return build_file_diff(file_path, status, result.stdout)

    async def get_changed_lines(
        self, repo_path: Path, base_ref: str, head_ref: str, file_path: str
    ) -> list[int]:
        diff = await self.get_file_diff(repo_path, base_ref, head_ref, file_path)
        return changed_lines(diff.hunks)

    async def get_changed_files(
        self, repo_path: Path, base_ref: str, head_ref: str
    ) -> list[str]:
        result = await self._run_git(
            "-C", str(repo_path), "diff", "--name-only", f"{base_ref}...{head_ref}"
        )
        return [line.strip() for line in result.stdout.splitlines() if line.strip()]

    async def get_diff_stats(
        self, repo_path: Path, base_ref: str, head_ref: str
    ) -> tuple[int, int, int]:
        """Return (files changed, insertions, deletions) from ``--shortstat``."""
        result = await self._run_git(
            "-C", str(repo_path), "diff", "--shortstat", f"{base_ref}...{head_ref}"
        )
        files = insertions = deletions = 0
        for part in result.stdout.strip().split(","):
            words = part.strip().split(" ")
            if not words or not words[0].isdigit():
                continue
            count = int(words[0])
            if "file" in part:
                files = count
            elif "insertion" in part:
                insertions = count
            elif "deletion" in part:
                deletions = count
        return files, insertions, deletions
