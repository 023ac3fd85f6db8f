"""Persistence contract consumed by the orchestrator, and its SQLAlchemy implementation."""

import json
import logging
from collections.abc import Callable
from datetime import datetime
from typing import Any, Protocol

from pydantic import BaseModel, ConfigDict
from sqlalchemy import select
from sqlalchemy.orm import Session

from src.models.jobs import JobStatus
from src.models.records import Organization, Repository, Review, UsageEvent
from src.services.github_auth import token_is_fresh

logger = logging.getLogger(__name__)


class OrganizationRecord(BaseModel):
    model_config = ConfigDict(from_attributes=True, frozen=True)

    id: int
    name: str
    platform: str
    installation_id: int | None = None


class RepositoryRecord(BaseModel):
    model_config = ConfigDict(from_attributes=True, frozen=True)

    id: int
    org_id: int
    platform: str
    full_name: str
    owner: str
    name: str
    clone_url: str
    is_private: bool = False
    config_json: str | None = None


class ReviewStore(Protocol):
    """Narrow read/write contract over the relational store.

    Every call is synchronous and may raise.
    """

    def get_organization(self, org_id: int) -> OrganizationRecord | None: ...

    def get_repository(self, repo_id: int) -> RepositoryRecord | None: ...

    def get_repository_by_full_name(
        self, org_id: int, full_name: str
    ) -> RepositoryRecord | None: ...

    def find_repository(self, full_name: str) -> RepositoryRecord | None: ...

    def list_repositories(self, org_id: int) -> list[RepositoryRecord]: ...

    def create_review(
        self,
        job_id: str,
        org_id: int,
        repo_id: int | None,
        pr_number: int,
        head_sha: str,
        kind: str,
    ) -> None: ...

    def update_review_status(
        self,
        job_id: str,
        status: JobStatus,
        result_json: str | None = None,
        duration_ms: int | None = None,
        head_sha: str | None = None,
    ) -> None: ...

    def get_review(self, job_id: str) -> dict[str, Any] | None: ...

    def log_usage(self, org_id: int, event_type: str, metadata: dict[str, Any]) -> None: ...

    def get_installation_token(self, org_id: int) -> str | None: ...

    def save_installation_token(
        self, org_id: int, token: str, expires_at: datetime
    ) -> None: ...


class SqlReviewStore:
    """ReviewStore backed by SQLAlchemy sessions, one session per call."""

    def __init__(self, session_factory: Callable[[], Session]) -> None:
        self.session_factory = session_factory

    def get_organization(self, org_id: int) -> OrganizationRecord | None:
        db = self.session_factory()
        try:
            org = db.get(Organization, org_id)
            return OrganizationRecord.model_validate(org) if org else None
        finally:
            db.close()

    def get_repository(self, repo_id: int) -> RepositoryRecord | None:
        db = self.session_factory()
        try:
            repo = db.get(Repository, repo_id)
            return RepositoryRecord.model_validate(repo) if repo else None
        finally:
            db.close()

    def get_repository_by_full_name(
        self, org_id: int, full_name: str
    ) -> RepositoryRecord | None:
        db = self.session_factory()
        try:
            repo = db.scalars(
                select(Repository).where(
                    Repository.org_id == org_id, Repository.full_name == full_name
                )
            ).first()
            return RepositoryRecord.model_validate(repo) if repo else None
        finally:
            db.close()

    def find_repository(self, full_name: str) -> RepositoryRecord | None:
        """Look up an active repository by full name across organizations."""
        db = self.session_factory()
        try:
            repo = db.scalars(
                select(Repository).where(
                    Repository.full_name == full_name, Repository.is_active.is_(True)
                )
            ).first()
            return RepositoryRecord.model_validate(repo) if repo else None
        finally:
            db.close()

    def list_repositories(self, org_id: int) -> list[RepositoryRecord]:
        db = self.session_factory()
        try:
            repos = db.scalars(
                select(Repository)
                .where(Repository.org_id == org_id)
                .order_by(Repository.full_name)
            ).all()
            return [RepositoryRecord.model_validate(r) for r in repos]
        finally:
            db.close()

    def create_review(
        self,
        job_id: str,
        org_id: int,
        repo_id: int | None,
        pr_number: int,
        head_sha: str,
        kind: str,
    ) -> None:
        db = self.session_factory()
        try:
            db.add(
                Review(
                    id=job_id,
                    org_id=org_id,
                    repo_id=repo_id,
                    pr_number=pr_number,
                    head_sha=head_sha,
                    kind=kind,
                    status=JobStatus.QUEUED.value,
                )
            )
            db.commit()
        except Exception:
            db.rollback()
            raise
        finally:
            db.close()

    def update_review_status(
        self,
        job_id: str,
        status: JobStatus,
        result_json: str | None = None,
        duration_ms: int | None = None,
        head_sha: str | None = None,
    ) -> None:
        db = self.session_factory()
        try:
            review = db.get(Review, job_id)
            if review is None:
                raise LookupError(f"review not found: {job_id}")
            review.status = status.value
            if result_json is not None:
                review.result_json = result_json
            if duration_ms is not None:
                review.duration_ms = duration_ms
            if head_sha:
                review.head_sha = head_sha
            db.commit()
        except Exception:
            db.rollback()
            raise
        finally:
            db.close()

    def get_review(self, job_id: str) -> dict[str, Any] | None:
        db = self.session_factory()
        try:
            review = db.get(Review, job_id)
            if review is None:
                return None
            return {
                "id": review.id,
                "status": review.status,
                "pr_number": review.pr_number,
                "head_sha": review.head_sha,
                "result": json.loads(review.result_json) if review.result_json else None,
                "duration_ms": review.duration_ms,
            }
        finally:
            db.close()

    def log_usage(self, org_id: int, event_type: str, metadata: dict[str, Any]) -> None:
        db = self.session_factory()
        try:
            db.add(UsageEvent(org_id=org_id, event_type=event_type, event_metadata=metadata))
            db.commit()
        except Exception:
            db.rollback()
            raise
        finally:
            db.close()

    def get_installation_token(self, org_id: int) -> str | None:
        """Return the stored installation token if it is still fresh."""
        db = self.session_factory()
        try:
            org = db.get(Organization, org_id)
            if org is None or not org.installation_token:
                return None
            if not token_is_fresh(org.installation_token_expires_at):
                return None
            return org.installation_token
        finally:
            db.close()

    def save_installation_token(
        self, org_id: int, token: str, expires_at: datetime
    ) -> None:
        db = self.session_factory()
        try:
            org = db.get(Organization, org_id)
            if org is None:
                raise LookupError(f"organization not found: {org_id}")
            org.installation_token = token
            org.installation_token_expires_at = expires_at
            db.commit()
        except Exception:
            db.rollback()
            raise
        finally:
            db.close()
