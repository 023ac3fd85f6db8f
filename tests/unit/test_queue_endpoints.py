from types import SimpleNamespace

from src.api import webhooks


def test_queue_status_endpoint(monkeypatch, client):
    lanes = {
        "reviews:high": (2, [1], [1, 1], []),
        "reviews:default": (3, [1], [1], [1]),
        "reviews:low": (0, [], [], []),
    }
    queues = [SimpleNamespace(name=name, count=counts[0]) for name, counts in lanes.items()]

    def registry(index):
        return lambda queue=None: lanes[queue.name][index]

    monkeypatch.setattr(webhooks, "get_all_queues", lambda: queues)
    monkeypatch.setattr(webhooks, "StartedJobRegistry", registry(1))
    monkeypatch.setattr(webhooks, "FinishedJobRegistry", registry(2))
    monkeypatch.setattr(webhooks, "FailedJobRegistry", registry(3))
    monkeypatch.setattr(
        webhooks, "Worker", SimpleNamespace(all=lambda connection=None: [1] * 4)
    )
    monkeypatch.setattr(webhooks, "redis_conn", SimpleNamespace())

    response = client.get("/webhook/queue/status")
    data = response.json()
    assert response.status_code == 200
    assert data["queued"] == 5
    assert data["started"] == 2
    assert data["finished"] == 3
    assert data["failed"] == 1
    assert data["active_workers"] == 4
    assert data["lanes"]["reviews:high"] == {
        "queued": 2,
        "started": 1,
        "finished": 2,
        "failed": 0,
    }


def test_queue_job_endpoint(monkeypatch, client):
    class DummyJob:
        id = "job-1"
        origin = "reviews:high"
        description = "full_review acme/widgets#7"
        created_at = None
        started_at = None
        ended_at = None

        def get_status(self, refresh=False):
            return "finished"

        def latest_result(self):
            return SimpleNamespace(
                return_value={"job_id": "job-1", "status": "completed"}, exc_string=None
            )

    monkeypatch.setattr(webhooks, "redis_conn", SimpleNamespace())
    monkeypatch.setattr(
        webhooks.Job,
        "fetch",
        classmethod(lambda cls, job_id, connection=None: DummyJob()),
    )

    response = client.get("/webhook/queue/job/job-1")
    data = response.json()
    assert response.status_code == 200
    assert data["job_id"] == "job-1"
    assert data["queue"] == "reviews:high"
    assert data["result"] == {"job_id": "job-1", "status": "completed"}
    assert data["exc_info"] is None


def test_queue_job_not_found(monkeypatch, client):
    monkeypatch.setattr(webhooks, "redis_conn", SimpleNamespace())

    def raise_no_job(cls, job_id, connection=None):
        raise webhooks.NoSuchJobError()

    monkeypatch.setattr(webhooks.Job, "fetch", classmethod(raise_no_job))

    response = client.get("/webhook/queue/job/missing")
    assert response.status_code == 404
    assert "Job not found" in response.json()["detail"]


def test_review_record_endpoint(monkeypatch, client):
    review = {
        "id": "job-1",
        "status": "completed",
        "pr_number": 7,
        "head_sha": "abc123",
        "result": {"recommendation": "APPROVE"},
        "duration_ms": 1200,
    }
    store = SimpleNamespace(get_review=lambda job_id: review if job_id == "job-1" else None)
    monkeypatch.setattr(webhooks.webhook_event_handlers, "_default_store", lambda: store)

    response = client.get("/webhook/reviews/job-1")
    assert response.status_code == 200
    assert response.json() == review

    missing = client.get("/webhook/reviews/other")
    assert missing.status_code == 404


def test_review_record_database_outage(monkeypatch, client):
    def broken_store():
        raise RuntimeError("connection refused")

    monkeypatch.setattr(webhooks.webhook_event_handlers, "_default_store", broken_store)

    response = client.get("/webhook/reviews/job-1")
    assert response.status_code == 503
