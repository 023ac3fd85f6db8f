"""Chat command models."""

from enum import Enum

from pydantic import BaseModel, ConfigDict

from src.models.jobs import Platform, PRInfo, RepoInfo


class CommandName(str, Enum):
    """Closed set of commands understood by the bot."""

    REVIEW = "review"
    EXPLAIN = "explain"
    FIX = "fix"
    SECURITY = "security"
    PERFORMANCE = "performance"
    HELP = "help"


class Command(BaseModel):
    """A parsed bot command: lower-cased name plus positional arguments."""

    model_config = ConfigDict(frozen=True)

    name: str
    args: tuple[str, ...] = ()


class CommandContext(BaseModel):
    """Organization, repository and PR identity a command executes against."""

    model_config = ConfigDict(frozen=True)

    org_id: int
    repo_id: int | None
    platform: Platform = Platform.GITHUB
    repo: RepoInfo
    pr: PRInfo
    author: str = ""
