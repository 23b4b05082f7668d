"""Diff utilities for the approval UI.

Generates unified diffs for the file changes a batch would make, so the
user can see exactly what will change before approving.
"""

from __future__ import annotations

import difflib
import hashlib
import json
from collections.abc import Sequence
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any

from turnforge.pipeline.actions import (
    Action,
    AddDependency,
    DeleteFile,
    RenameFile,
    WriteFile,
)


class ChangeType(Enum):
    """Type of file change."""

    CREATE = "create"
    MODIFY = "modify"
    DELETE = "delete"


@dataclass
class Hunk:
    """A single diff hunk (a contiguous block of changes)."""

    old_start: int
    old_count: int
    new_start: int
    new_count: int
    lines: list[str]
    header: str = ""

    def to_dict(self) -> dict[str, Any]:
        return {
            "old_start": self.old_start,
            "old_count": self.old_count,
            "new_start": self.new_start,
            "new_count": self.new_count,
            "lines": self.lines,
            "header": self.header,
        }


@dataclass
class FileChange:
    """A single file change with diff information."""

    path: str                          # Relative path within the project
    change_type: ChangeType
    old_content: str | None = None     # None for create
    new_content: str | None = None     # None for delete
    hunks: list[Hunk] = field(default_factory=list)
    diff_text: str = ""
    old_sha256: str | None = None
    new_sha256: str | None = None
    additions: int = 0
    deletions: int = 0
    binary: bool = False

    def to_dict(self) -> dict[str, Any]:
        return {
            "path": self.path,
            "change_type": self.change_type.value,
            "hunks": [h.to_dict() for h in self.hunks],
            "diff_text": self.diff_text,
            "old_sha256": self.old_sha256,
            "new_sha256": self.new_sha256,
            "additions": self.additions,
            "deletions": self.deletions,
            "binary": self.binary,
        }


@dataclass
class DiffPreview:
    """Preview of all changes a batch would make."""

    changes: list[FileChange] = field(default_factory=list)

    @property
    def total_additions(self) -> int:
        return sum(c.additions for c in self.changes)

    @property
    def total_deletions(self) -> int:
        return sum(c.deletions for c in self.changes)

    @property
    def total_files(self) -> int:
        return len(self.changes)

    def to_dict(self) -> dict[str, Any]:
        return {
            "changes": [c.to_dict() for c in self.changes],
            "total_additions": self.total_additions,
            "total_deletions": self.total_deletions,
            "total_files": self.total_files,
        }


def _compute_sha256(content: str | None) -> str | None:
    if content is None:
        return None
    return hashlib.sha256(content.encode("utf-8")).hexdigest()[:16]


def _is_binary(content: str) -> bool:
    """Check if content appears to be binary."""
    if "\x00" in content:
        return True
    non_printable = sum(1 for c in content[:1000] if ord(c) < 32 and c not in "\n\r\t")
    return non_printable > 50


def _parse_range(r: str) -> tuple[int, int]:
    if "," in r:
        start, count = r.split(",")
        return int(start), int(count)
    return int(r), 1


def _parse_hunks(diff_lines: list[str]) -> list[Hunk]:
    """Parse unified diff lines into hunks."""
    hunks: list[Hunk] = []
    current: Hunk | None = None

    for line in diff_lines:
        if line.startswith("@@"):
            if current:
                hunks.append(current)
            # @@ -old_start,old_count +new_start,new_count @@
            old_range, new_range = "1,0", "1,0"
            for part in line.split("@@")[1].split():
                if part.startswith("-"):
                    old_range = part[1:]
                elif part.startswith("+"):
                    new_range = part[1:]
            old_start, old_count = _parse_range(old_range)
            new_start, new_count = _parse_range(new_range)
            current = Hunk(old_start, old_count, new_start, new_count, lines=[], header=line.rstrip("\n"))
        elif current is not None:
            if line.startswith("---") or line.startswith("+++"):
                continue
            current.lines.append(line.rstrip("\n"))

    if current:
        hunks.append(current)
    return hunks


def generate_diff(
    path: str,
    old_content: str | None,
    new_content: str | None,
    context_lines: int = 3,
) -> FileChange:
    """Generate a diff between old and new content.

    Args:
        path: File path (for display)
        old_content: Original content (None for new files)
        new_content: New content (None for deletions)
        context_lines: Number of context lines around changes
    """
    if old_content is None:
        change_type = ChangeType.CREATE
    elif new_content is None:
        change_type = ChangeType.DELETE
    else:
        change_type = ChangeType.MODIFY

    if (old_content and _is_binary(old_content)) or (new_content and _is_binary(new_content)):
        return FileChange(
            path=path,
            change_type=change_type,
            old_content=old_content,
            new_content=new_content,
            binary=True,
            old_sha256=_compute_sha256(old_content),
            new_sha256=_compute_sha256(new_content),
            diff_text="Binary file changed",
        )

    diff_lines = list(difflib.unified_diff(
        (old_content or "").splitlines(keepends=True),
        (new_content or "").splitlines(keepends=True),
        fromfile=f"a/{path}",
        tofile=f"b/{path}",
        n=context_lines,
    ))

    additions = sum(1 for line in diff_lines if line.startswith("+") and not line.startswith("+++"))
    deletions = sum(1 for line in diff_lines if line.startswith("-") and not line.startswith("---"))

    return FileChange(
        path=path,
        change_type=change_type,
        old_content=old_content,
        new_content=new_content,
        hunks=_parse_hunks(diff_lines),
        diff_text="".join(diff_lines),
        old_sha256=_compute_sha256(old_content),
        new_sha256=_compute_sha256(new_content),
        additions=additions,
        deletions=deletions,
    )


def _read(root: Path, path: str) -> str | None:
    target = root / path
    if not target.is_file():
        return None
    try:
        return target.read_text(encoding="utf-8")
    except (OSError, UnicodeDecodeError):
        return None


def preview_actions(
    root: Path,
    actions: Sequence[Action],
    *,
    manifest_file: str = "package.json",
) -> DiffPreview:
    """Simulate a batch on top of the current files and diff the result.

    Actions are replayed in order against an in-memory view, so a write
    followed by a rename shows up as a single new file. Statements are not
    previewed.
    """
    original: dict[str, str | None] = {}
    current: dict[str, str | None] = {}

    def load(path: str) -> str | None:
        if path not in current:
            original[path] = current[path] = _read(root, path)
        return current[path]

    for action in actions:
        if isinstance(action, WriteFile):
            load(action.path)
            current[action.path] = action.content
        elif isinstance(action, DeleteFile):
            load(action.path)
            current[action.path] = None
        elif isinstance(action, RenameFile):
            content = load(action.source)
            load(action.destination)
            if content is not None:
                current[action.destination] = content
                current[action.source] = None
        elif isinstance(action, AddDependency):
            raw = load(manifest_file)
            try:
                manifest = json.loads(raw) if raw else {"name": root.name, "private": True}
            except json.JSONDecodeError:
                continue
            if not isinstance(manifest, dict):
                continue
            manifest.setdefault("dependencies", {})[action.name] = action.version
            current[manifest_file] = json.dumps(manifest, indent=2, ensure_ascii=False) + "\n"

    changes = [
        generate_diff(path, original[path], current[path])
        for path in current
        if original[path] != current[path]
    ]
    return DiffPreview(changes=changes)
