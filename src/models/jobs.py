"""Queue job models.

A Job is created by an event handler, serialized onto the queue as JSON and
deserialized once by the worker that runs it. Jobs are frozen after creation.
"""

import uuid
from datetime import datetime, timezone
from enum import Enum

from pydantic import BaseModel, ConfigDict, Field


class JobKind(str, Enum):
    FULL_REVIEW = "full_review"
    INCREMENTAL_REVIEW = "incremental_review"
    COMMAND = "command"

    @property
    def task_name(self) -> str:
        """Queue task name used for dispatch ("review" or "command")."""
        return "command" if self is JobKind.COMMAND else "review"


class JobStatus(str, Enum):
    QUEUED = "queued"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"


class Platform(str, Enum):
    GITHUB = "github"
    GITLAB = "gitlab"


class RepoInfo(BaseModel):
    """Repository descriptor carried by a job."""

    model_config = ConfigDict(frozen=True)

    owner: str
    name: str
    full_name: str
    clone_url: str
    is_private: bool = False
    # Persisted repository id, when the repository is registered
    id: int | None = None


class PRInfo(BaseModel):
    """Pull/merge request descriptor carried by a job."""

    model_config = ConfigDict(frozen=True)

    number: int
    # Empty when the triggering event does not carry it (chat commands)
    head_sha: str = ""
    base_branch: str = "main"
    title: str = ""
    author: str = ""

    @property
    def head_ref(self) -> str:
        """Commit to check out: the head SHA, else the fetched PR ref."""
        return self.head_sha or f"origin/pr/{self.number}"


class CommandInfo(BaseModel):
    """Command embedded in a command job."""

    model_config = ConfigDict(frozen=True)

    name: str
    args: tuple[str, ...] = ()
    comment_id: int | None = None
    author: str = ""


class Job(BaseModel):
    """Immutable input to one unit of work."""

    model_config = ConfigDict(frozen=True)

    id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    kind: JobKind
    platform: Platform = Platform.GITHUB
    org_id: int
    repo: RepoInfo
    pr: PRInfo
    command: CommandInfo | None = None
    created_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))

    @property
    def is_review(self) -> bool:
        return self.kind is not JobKind.COMMAND

    @property
    def label(self) -> str:
        """Human-readable key for logging, e.g. ``acme/widgets#7``."""
        return f"{self.repo.full_name}#{self.pr.number}"

    def to_payload(self) -> str:
        """Serialize to the queue wire format."""
        return self.model_dump_json()

    @classmethod
    def from_payload(cls, payload: str | bytes) -> "Job":
        """Deserialize from the queue wire format."""
        return cls.model_validate_json(payload)
