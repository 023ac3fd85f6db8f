"""Integration tests for clones, worktrees and diffs against a real git binary."""

import asyncio
import shutil
import subprocess

import pytest

from src.config.settings import resolve_git_executable
from src.models.diff import FileStatus
from src.models.jobs import RepoInfo
from src.services.snapshot import SnapshotService

pytestmark = pytest.mark.skipif(shutil.which("git") is None, reason="git not installed")


def git(cwd, *args):
    return subprocess.run(
        ["git", "-c", "user.name=Test", "-c", "user.email=test@example.com", *args],
        cwd=cwd,
        check=True,
        capture_output=True,
        text=True,
    ).stdout.strip()


@pytest.fixture
def origin(tmp_path):
    """A repository with ``main`` and a ``feature`` branch that edits, adds and deletes.

    Served over ``file://`` so clones honour ``--filter`` and are real
    partial clones.
    """
    path = tmp_path / "origin"
    path.mkdir()
    git(path, "init", "-q", "-b", "main")
    # Serve filtered clones and lazy blob fetches over file://
    git(path, "config", "uploadpack.allowFilter", "true")
    git(path, "config", "uploadpack.allowAnySHA1InWant", "true")
    (path / "app.py").write_text("a = 1\nb = 2\nc = 3\n")
    (path / "old.py").write_text("legacy = True\n")
    git(path, "add", ".")
    git(path, "commit", "-q", "-m", "initial")

    git(path, "checkout", "-q", "-b", "feature")
    (path / "app.py").write_text("a = 1\nb = 20\nc = 3\nd = 4\n")
    (path / "new.py").write_text("print('hi')\n")
    (path / "old.py").unlink()
    git(path, "add", "-A")
    git(path, "commit", "-q", "-m", "feature work")
    git(path, "checkout", "-q", "main")
    return path


@pytest.fixture
def service(tmp_path):
    return SnapshotService(tmp_path / "repos", resolve_git_executable("git"), command_timeout=60)


@pytest.fixture
def repo(origin):
    return RepoInfo(owner="acme", name="widgets", full_name="acme/widgets", clone_url=origin.as_uri())


@pytest.mark.asyncio
async def test_clone_worktree_and_diff(service, repo):
    clone = await service.obtain_clone(repo)
    assert clone == service.repos_path / "acme__widgets"

    worktree = await service.create_worktree(clone, "origin/feature")
    try:
        assert (worktree / "new.py").read_text() == "print('hi')\n"

        changed = await service.get_changed_files(worktree, "origin/main", "origin/feature")
        assert sorted(changed) == ["app.py", "new.py", "old.py"]

        app = await service.get_file_diff(worktree, "origin/main", "origin/feature", "app.py")
        assert app.status is FileStatus.MODIFIED
        assert [line.line_number for h in app.hunks for line in h.added_lines] == [2, 4]

        added = await service.get_file_diff(worktree, "origin/main", "origin/feature", "new.py")
        assert added.status is FileStatus.ADDED

        deleted = await service.get_file_diff(worktree, "origin/main", "origin/feature", "old.py")
        assert deleted.is_deleted_file
        assert deleted.hunks == []

        files, insertions, deletions = await service.get_diff_stats(
            worktree, "origin/main", "origin/feature"
        )
        assert (files, insertions, deletions) == (3, 3, 2)
    finally:
        await service.remove_worktree(worktree)

    assert not worktree.exists()


@pytest.mark.asyncio
async def test_second_obtain_reuses_clone_and_fetches_new_commits(service, repo, origin):
    first = await service.obtain_clone(repo)

    git(origin, "checkout", "-q", "-b", "hotfix")
    (origin / "fix.py").write_text("fixed = True\n")
    git(origin, "add", ".")
    git(origin, "commit", "-q", "-m", "hotfix")

    second = await service.obtain_clone(repo)
    assert second == first

    worktree = await service.create_worktree(second, "origin/hotfix")
    try:
        assert (worktree / "fix.py").exists()
    finally:
        await service.remove_worktree(worktree)


@pytest.mark.asyncio
async def test_concurrent_worktrees_are_isolated(service, repo):
    clone = await service.obtain_clone(repo)

    main_tree = await service.create_worktree(clone, "origin/main")
    feature_tree = await service.create_worktree(clone, "origin/feature")
    try:
        assert main_tree != feature_tree
        assert (main_tree / "old.py").exists()
        assert not (feature_tree / "old.py").exists()
    finally:
        await service.remove_worktree(main_tree)
        await service.remove_worktree(feature_tree)


@pytest.mark.asyncio
async def test_clone_is_partial_and_remote_has_no_credentials(service, repo):
    clone = await service.obtain_clone(repo)

    assert git(clone, "config", "--get", "remote.origin.promisor") == "true"
    assert git(clone, "config", "--get", "remote.origin.partialclonefilter") == "blob:none"
    assert git(clone, "remote", "get-url", "origin") == repo.clone_url


@pytest.mark.asyncio
async def test_changed_lines_cover_new_side_of_every_hunk(service, repo):
    clone = await service.obtain_clone(repo)
    worktree = await service.create_worktree(clone, "origin/feature")
    try:
        assert await service.get_changed_lines(
            worktree, "origin/main", "origin/feature", "app.py"
        ) == [2, 4]
        assert await service.get_changed_lines(
            worktree, "origin/main", "origin/feature", "new.py"
        ) == [1]
        assert await service.get_changed_lines(
            worktree, "origin/main", "origin/feature", "old.py"
        ) == []
    finally:
        await service.remove_worktree(worktree)


@pytest.mark.asyncio
async def test_concurrent_obtain_clone_after_new_commits(service, repo, origin):
    await service.obtain_clone(repo)

    for round_number in range(3):
        (origin / "app.py").write_text(f"a = {round_number}\n")
        git(origin, "commit", "-q", "-am", f"round {round_number}")
        head = git(origin, "rev-parse", "main")

        clones = await asyncio.gather(*(service.obtain_clone(repo) for _ in range(8)))

        assert set(clones) == {service.repos_path / "acme__widgets"}
        assert git(clones[0], "rev-parse", "origin/main") == head


@pytest.mark.asyncio
async def test_fetch_is_skipped_when_head_commit_is_present(service, repo, origin):
    clone = await service.obtain_clone(repo)
    feature_head = git(origin, "rev-parse", "feature")

    git(origin, "checkout", "-q", "-b", "hotfix")
    (origin / "fix.py").write_text("fixed = True\n")
    git(origin, "add", ".")
    git(origin, "commit", "-q", "-m", "hotfix")

    await service.obtain_clone(repo, head_sha=feature_head)
    assert "origin/hotfix" not in git(clone, "branch", "-r")

    await service.obtain_clone(repo)
    assert "origin/hotfix" in git(clone, "branch", "-r")
    assert await service.has_commit(clone, git(origin, "rev-parse", "hotfix"))


@pytest.mark.asyncio
async def test_resolve_commit_returns_worktree_head(service, repo, origin):
    clone = await service.obtain_clone(repo)
    worktree = await service.create_worktree(clone, "origin/feature")
    try:
        assert await service.resolve_commit(worktree) == git(origin, "rev-parse", "feature")
    finally:
        await service.remove_worktree(worktree)
