"""Unified diff parsing.

Turns ``git diff`` output (or a GitHub file ``patch``) into structured hunks
and derives changed/commentable line sets from them.
"""

import re

from src.models.diff import DiffLine, FileDiff, FileStatus, Hunk, LineType

# @@ -oldStart[,oldLines] +newStart[,newLines] @@
HUNK_HEADER = re.compile(r"^@@ -(\d+)(?:,(\d+))? \+(\d+)(?:,(\d+))? @@")


def parse_hunk_header(line: str) -> Hunk | None:
    """Parse a hunk header line; a missing length defaults to 1."""
    match = HUNK_HEADER.match(line)
    if not match:
        return None
    old_start, old_lines, new_start, new_lines = match.groups()
    return Hunk(
        old_start=int(old_start),
        old_lines=int(old_lines) if old_lines is not None else 1,
        new_start=int(new_start),
        new_lines=int(new_lines) if new_lines is not None else 1,
    )


def parse_hunks(diff_text: str) -> list[Hunk]:
    """Parse diff text into hunks.

    Lines before the first header (``diff --git``, ``---``/``+++``, index
    lines) are ignored, as are ``\\ No newline at end of file`` markers.
    Each line gets its own number: added and context lines carry the
    new-side number, removed lines the old-side number.
    """
    hunks: list[Hunk] = []
    current: Hunk | None = None
    old_line = new_line = 0

    for raw in diff_text.splitlines():
        header = parse_hunk_header(raw)
        if header is not None:
            current = header
            hunks.append(current)
            old_line, new_line = current.old_start, current.new_start
            continue

        if raw.startswith("diff --git "):
            # Next file's headers follow; they are not part of this hunk
            current = None
            continue

        if current is None or not raw or raw.startswith("\\"):
            continue

        marker, content = raw[0], raw[1:]
        if marker == "+":
            current.lines.append(
                DiffLine(type=LineType.ADDED, content=content, line_number=new_line)
            )
            new_line += 1
        elif marker == "-":
            current.lines.append(
                DiffLine(type=LineType.REMOVED, content=content, line_number=old_line)
            )
            old_line += 1
        elif marker == " ":
            current.lines.append(
                DiffLine(type=LineType.CONTEXT, content=content, line_number=new_line)
            )
            old_line += 1
            new_line += 1

    return hunks


def build_file_diff(path: str, status: FileStatus, diff_text: str) -> FileDiff:
    """Build a FileDiff; deleted files never carry hunks."""
    if status is FileStatus.DELETED:
        return FileDiff(path=path, status=status)

    hunks = parse_hunks(diff_text)
    return FileDiff(
        path=path,
        status=status,
        additions=sum(len(h.added_lines) for h in hunks),
        deletions=sum(len(h.removed_lines) for h in hunks),
        hunks=hunks,
    )


def changed_lines(hunks: list[Hunk]) -> list[int]:
    """Union of the new-side line numbers spanned by every hunk, sorted."""
    lines: set[int] = set()
    for hunk in hunks:
        lines.update(hunk.new_range)
    return sorted(lines)


def commentable_lines(patch: str) -> set[int]:
    """New-side line numbers of added lines in a patch.

    These are the lines an inline review comment can be anchored to.
    """
    return {
        line.line_number
        for hunk in parse_hunks(patch)
        for line in hunk.lines
        if line.type is LineType.ADDED
    }
