"""Unit tests for the webhook event handlers."""

import pytest
from fastapi import HTTPException
from redis.exceptions import ConnectionError as RedisConnectionError
from redis.exceptions import ResponseError

from src.api.handlers import webhook_event_handlers as handlers
from src.commands.parser import CommandParser
from src.database.store import RepositoryRecord
from src.models.jobs import JobKind
from src.queue.config import QueueError

RECORD = RepositoryRecord(
    id=3,
    org_id=1,
    platform="github",
    full_name="acme/widgets",
    owner="acme",
    name="widgets",
    clone_url="https://github.com/acme/widgets.git",
)
REPOSITORY = {
    "full_name": "acme/widgets",
    "name": "widgets",
    "owner": {"login": "acme"},
    "clone_url": "https://github.com/acme/widgets.git",
    "default_branch": "develop",
}


class FakeStore:
    def __init__(self, record=RECORD, error=None):
        self.record = record
        self.error = error
        self.reviews = []

    def find_repository(self, full_name):
        if self.error:
            raise self.error
        return self.record

    def create_review(self, job_id, org_id, repo_id, pr_number, head_sha, kind):
        self.reviews.append(kind)


@pytest.fixture
def enqueued(monkeypatch):
    jobs = []

    def fake_enqueue(job, priority):
        jobs.append((job, priority))
        return job.id

    monkeypatch.setattr(handlers, "enqueue_job", fake_enqueue)
    return jobs


def pr_payload(action="opened", state="open", labels=(), changed_files=3):
    return {
        "action": action,
        "pull_request": {
            "number": 7,
            "state": state,
            "title": "Add widgets",
            "labels": [{"name": name} for name in labels],
            "changed_files": changed_files,
            "head": {"sha": "abc123"},
            "base": {"ref": "main"},
            "user": {"login": "octocat"},
        },
        "repository": REPOSITORY,
    }


def comment_payload(body, user=None, on_pr=True):
    issue = {"number": 7, "title": "Add widgets"}
    if on_pr:
        issue["pull_request"] = {"url": "https://api.github.com/repos/acme/widgets/pulls/7"}
    return {
        "action": "created",
        "issue": issue,
        "comment": {"id": 555, "body": body, "user": user or {"login": "octocat", "type": "User"}},
        "repository": REPOSITORY,
    }


def test_ping():
    assert handlers.handle_ping_event() == {"message": "pong"}


def test_opened_pr_queues_full_review(enqueued):
    store = FakeStore()

    response = handlers.handle_pull_request_event(pr_payload(), store=store)

    job, priority = enqueued[0]
    assert response["status"] == "accepted"
    assert response["job_id"] == job.id
    assert job.kind is JobKind.FULL_REVIEW
    assert job.repo.id == 3
    assert job.org_id == 1
    assert job.pr.head_sha == "abc123"
    assert priority == handlers.DEFAULT_PRIORITY
    assert store.reviews == ["full_review"]


def test_synchronize_queues_incremental_review(enqueued):
    handlers.handle_pull_request_event(pr_payload(action="synchronize"), store=FakeStore())
    assert enqueued[0][0].kind is JobKind.INCREMENTAL_REVIEW


def test_closed_and_non_open_prs_are_not_queued(enqueued):
    closed = handlers.handle_pull_request_event(pr_payload(action="closed"), store=FakeStore())
    merged = handlers.handle_pull_request_event(pr_payload(state="closed"), store=FakeStore())

    assert closed["status"] == "closed"
    assert merged["status"] == "skipped"
    assert enqueued == []


def test_unregistered_repository_is_skipped(enqueued):
    response = handlers.handle_pull_request_event(pr_payload(), store=FakeStore(record=None))
    assert response["status"] == "skipped"
    assert enqueued == []


def test_store_failure_is_service_unavailable(enqueued):
    with pytest.raises(HTTPException) as exc_info:
        handlers.handle_pull_request_event(
            pr_payload(), store=FakeStore(error=RuntimeError("db down"))
        )
    assert exc_info.value.status_code == 503


@pytest.mark.parametrize(
    "labels, changed_files, expected",
    [
        (["Critical"], 3, 50),
        (["security-review"], 40, 50),
        ([], 21, 5),
        ([], 20, 10),
        (["docs"], None, 10),
    ],
)
def test_priority(labels, changed_files, expected):
    assert handlers._determine_priority([name.lower() for name in labels], changed_files) == expected


def test_redis_connection_error_is_service_unavailable(monkeypatch):
    def failing_enqueue(job, priority):
        try:
            raise RedisConnectionError("connection refused")
        except RedisConnectionError as e:
            raise QueueError("failed to enqueue") from e

    monkeypatch.setattr(handlers, "enqueue_job", failing_enqueue)

    with pytest.raises(HTTPException) as exc_info:
        handlers.handle_pull_request_event(pr_payload(), store=FakeStore())
    assert exc_info.value.status_code == 503


def test_other_queue_errors_are_internal_errors(monkeypatch):
    def failing_enqueue(job, priority):
        try:
            raise ResponseError("OOM command not allowed")
        except ResponseError as e:
            raise QueueError("failed to enqueue") from e

    monkeypatch.setattr(handlers, "enqueue_job", failing_enqueue)

    with pytest.raises(HTTPException) as exc_info:
        handlers.handle_pull_request_event(pr_payload(), store=FakeStore())
    assert exc_info.value.status_code == 500


def test_comment_commands_are_queued_with_high_priority(enqueued):
    payload = comment_payload("@sherlock security\n@sherlock deploy now\n@sherlock explain src/a.ts:4")

    response = handlers.handle_issue_comment_event(
        payload, store=FakeStore(), parser=CommandParser("sherlock")
    )

    assert response["status"] == "accepted"
    assert response["rejected"] == ["deploy"]
    assert len(response["job_ids"]) == 2
    names = [job.command.name for job, _ in enqueued]
    assert names == ["security", "explain"]
    job, priority = enqueued[1]
    assert priority == handlers.COMMAND_PRIORITY
    assert job.kind is JobKind.COMMAND
    assert job.command.args == ("src/a.ts:4",)
    assert job.command.comment_id == 555
    assert job.command.author == "octocat"
    assert job.pr.base_branch == "develop"
    assert job.pr.head_ref == "origin/pr/7"


def test_bot_comments_are_ignored(enqueued):
    payload = comment_payload("@sherlock review", user={"login": "sherlock[bot]", "type": "Bot"})

    response = handlers.handle_issue_comment_event(
        payload, store=FakeStore(), parser=CommandParser("sherlock")
    )

    assert response["status"] == "ignored"
    assert enqueued == []


def test_comments_outside_pull_requests_are_ignored(enqueued):
    response = handlers.handle_issue_comment_event(
        comment_payload("@sherlock review", on_pr=False),
        store=FakeStore(),
        parser=CommandParser("sherlock"),
    )
    assert response["status"] == "ignored"


def test_comment_without_mention_is_ignored(enqueued):
    response = handlers.handle_issue_comment_event(
        comment_payload("Looks good"), store=FakeStore(), parser=CommandParser("sherlock")
    )
    assert response == {"message": "No commands found", "status": "ignored"}


def test_edited_comments_are_ignored(enqueued):
    payload = comment_payload("@sherlock review")
    payload["action"] = "edited"

    response = handlers.handle_issue_comment_event(payload, store=FakeStore())

    assert response == {"message": "Comment edited ignored"}
