"""Structured diff types produced by the diff parser."""

from enum import Enum

from pydantic import BaseModel, Field


class FileStatus(str, Enum):
    ADDED = "added"
    MODIFIED = "modified"
    DELETED = "deleted"


class LineType(str, Enum):
    ADDED = "+"
    REMOVED = "-"
    CONTEXT = " "


class DiffLine(BaseModel):
    """A single line inside a hunk.

    ``line_number`` is the new-side number for added and context lines and
    the old-side number for removed lines.
    """

    type: LineType
    content: str
    line_number: int


class Hunk(BaseModel):
    """One ``@@`` section of a unified diff."""

    old_start: int
    old_lines: int
    new_start: int
    new_lines: int
    lines: list[DiffLine] = Field(default_factory=list)

    @property
    def new_range(self) -> range:
        """New-side line numbers spanned by this hunk."""
        return range(self.new_start, self.new_start + self.new_lines)

    @property
    def added_lines(self) -> list[DiffLine]:
        return [line for line in self.lines if line.type is LineType.ADDED]

    @property
    def removed_lines(self) -> list[DiffLine]:
        return [line for line in self.lines if line.type is LineType.REMOVED]

    def added_content(self) -> str:
        """Text of the added lines, used as the chunk content for caching."""
        return "\n".join(line.content for line in self.added_lines)


class FileDiff(BaseModel):
    """File diff between two revisions.

    Represents changes to a single file, with parsed hunks and
    addition/deletion counts.
    """

    path: str
    status: FileStatus
    additions: int = 0
    deletions: int = 0
    hunks: list[Hunk] = Field(default_factory=list)

    @property
    def is_new_file(self) -> bool:
        return self.status is FileStatus.ADDED

    @property
    def is_deleted_file(self) -> bool:
        return self.status is FileStatus.DELETED
