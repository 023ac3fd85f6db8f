import hashlib
import hmac
import json

from src.api import webhooks
from src.api.handlers import webhook_event_handlers as handlers
from src.database.store import RepositoryRecord


def _signature(secret: str, body: bytes) -> str:
    digest = hmac.new(secret.encode("utf-8"), body, hashlib.sha256).hexdigest()
    return f"sha256={digest}"


class StubStore:
    def __init__(self):
        self.reviews = []

    def find_repository(self, full_name):
        return RepositoryRecord(
            id=3,
            org_id=1,
            platform="github",
            full_name=full_name,
            owner="acme",
            name="widgets",
            clone_url="https://github.com/acme/widgets.git",
        )

    def create_review(self, job_id, org_id, repo_id, pr_number, head_sha, kind):
        self.reviews.append((job_id, repo_id, pr_number, kind))


def test_github_webhook_enqueues_job_and_returns_id(monkeypatch, client, webhook_url):
    secret = "test-secret"  # pragma: allowlist secret
    monkeypatch.setattr(webhooks.settings, "github_webhook_secret", secret)
    store = StubStore()
    monkeypatch.setattr(handlers, "_default_store", lambda: store)

    captured: dict[str, object] = {}

    def fake_enqueue(job, priority):
        captured["job"] = job
        captured["priority"] = priority
        return job.id

    monkeypatch.setattr(handlers, "enqueue_job", fake_enqueue)

    payload = {
        "action": "opened",
        "pull_request": {
            "number": 42,
            "state": "open",
            "labels": [{"name": "security"}],
            "changed_files": 3,
            "head": {"sha": "abc123"},
            "base": {"ref": "main"},
        },
        "repository": {
            "full_name": "acme/widgets",
            "name": "widgets",
            "owner": {"login": "acme"},
        },
    }
    body = json.dumps(payload).encode("utf-8")
    headers = {
        "X-GitHub-Event": "pull_request",
        "X-Hub-Signature-256": _signature(secret, body),
        "Content-Type": "application/json",
    }

    response = client.post(webhook_url, data=body, headers=headers)

    assert response.status_code == 200
    data = response.json()
    job = captured["job"]
    assert data["job_id"] == job.id
    assert data["status"] == "accepted"
    assert job.repo.full_name == "acme/widgets"
    assert job.pr.number == 42
    # security label should elevate priority
    assert captured["priority"] == 50
    assert store.reviews == [(job.id, 3, 42, "full_review")]


def test_unsupported_event_is_acknowledged(monkeypatch, client, webhook_url):
    secret = "test-secret"  # pragma: allowlist secret
    monkeypatch.setattr(webhooks.settings, "github_webhook_secret", secret)
    body = json.dumps({"ref": "refs/heads/main"}).encode("utf-8")

    response = client.post(
        webhook_url,
        data=body,
        headers={
            "X-GitHub-Event": "push",
            "X-Hub-Signature-256": _signature(secret, body),
            "Content-Type": "application/json",
        },
    )

    assert response.status_code == 200
    assert response.json() == {"message": "Event push not supported"}
