"""Checkpoints - one git commit per executor pass.

Every pass over a batch, including a partially failed or cancelled one, is
recorded as a commit of the whole working tree. Reverting restores the
working tree and index to a checkpoint's tree without moving HEAD, so newer
checkpoints stay reachable and can be restored again later.
"""

from __future__ import annotations

import logging
import re
import subprocess
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import Any, Protocol

from turnforge.errors import CheckpointNotFound, VersionControlError
from turnforge.pipeline.actions import ExecutionReport, OutcomeStatus
from turnforge.security import AuditEventType, SecurityAuditor, get_auditor

logger = logging.getLogger(__name__)

SUBJECT_PREFIX = "[turnforge]"
TRAILER_TURN = "Turn-Id"
TRAILER_SEQUENCE = "Sequence"
TRAILER_STORE = "Store-Reference"

_CHECKPOINT_ID = re.compile(r"^[0-9a-fA-F]{4,64}$")
_FIELD_SEP = "\x1f"
_RECORD_SEP = "\x1e"
_LOG_FORMAT = f"--format=%H{_FIELD_SEP}%cI{_FIELD_SEP}%B{_RECORD_SEP}"


@dataclass(frozen=True)
class Checkpoint:
    """An immutable, addressable snapshot of the project."""

    id: str
    created_at: datetime
    message: str
    turn_id: str | None = None
    sequence: int | None = None
    store_reference: str | None = None

    @property
    def short_id(self) -> str:
        return self.id[:10]

    @property
    def subject(self) -> str:
        return self.message.splitlines()[0] if self.message else ""

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "created_at": self.created_at.isoformat(),
            "subject": self.subject,
            "turn_id": self.turn_id,
            "sequence": self.sequence,
            "store_reference": self.store_reference,
        }


class VersionManager(Protocol):
    """Version history the session controller records checkpoints in."""

    def commit(self, report: ExecutionReport, *, turn_id: str, sequence: int) -> Checkpoint: ...

    def revert(self, checkpoint_id: str) -> None: ...


def build_commit_message(report: ExecutionReport, *, turn_id: str, sequence: int) -> str:
    """Describe an executor pass as a commit message with trailers."""
    applied = len(report.applied)
    failed = len(report.failures)
    subject = f"{SUBJECT_PREFIX} Turn {sequence}: applied {applied} action(s)"
    if failed:
        subject += f", {failed} failed"
    if report.was_cancelled:
        subject += ", cancelled"

    lines = [subject, ""]
    for outcome in report.outcomes:
        line = f"- {outcome.status.value}: {outcome.action.describe()}"
        if outcome.status == OutcomeStatus.FAILED and outcome.error:
            line += f" ({outcome.error})"
        lines.append(line)
    if report.outcomes:
        lines.append("")

    lines.append(f"{TRAILER_TURN}: {turn_id}")
    lines.append(f"{TRAILER_SEQUENCE}: {sequence}")
    if report.store_reference:
        lines.append(f"{TRAILER_STORE}: {report.store_reference}")
    return "\n".join(lines) + "\n"


def _parse_trailers(message: str) -> dict[str, str]:
    trailers: dict[str, str] = {}
    for line in message.splitlines():
        key, sep, value = line.partition(": ")
        if sep and key in (TRAILER_TURN, TRAILER_SEQUENCE, TRAILER_STORE):
            trailers[key] = value.strip()
    return trailers


class GitVersionManager:
    """Checkpoints backed by a git repository at the project root."""

    def __init__(
        self,
        root: Path,
        *,
        author_name: str = "Turnforge",
        author_email: str = "turnforge@localhost",
        auditor: SecurityAuditor | None = None,
    ) -> None:
        self.root = Path(root)
        self.author_name = author_name
        self.author_email = author_email
        self._auditor = auditor or get_auditor()

    def _run_git(self, args: list[str]) -> str:
        """Run a git command in the project and return stdout.

        Raises VersionControlError if git is missing or the command fails.
        """
        command = [
            "git",
            "-C", str(self.root),
            "-c", f"user.name={self.author_name}",
            "-c", f"user.email={self.author_email}",
            "-c", "commit.gpgsign=false",
            *args,
        ]
        try:
            completed = subprocess.run(
                command,
                check=True,
                capture_output=True,
                text=True,
            )
        except FileNotFoundError as exc:
            raise VersionControlError("git is not installed or not on PATH") from exc
        except subprocess.CalledProcessError as exc:
            stderr = (exc.stderr or "").strip()
            stdout = (exc.stdout or "").strip()
            detail = stderr or stdout or "(no details)"
            raise VersionControlError(f"git command failed: git {' '.join(args)} :: {detail}") from exc

        return completed.stdout

    def is_repository(self) -> bool:
        """True if the project root is itself the top level of a git repository."""
        try:
            top = self._run_git(["rev-parse", "--show-toplevel"]).strip()
        except VersionControlError:
            return False
        return Path(top).resolve() == self.root.resolve()

    def ensure_repository(self) -> None:
        """Initialise a repository at the project root if there is none."""
        if self.is_repository():
            return
        self.root.mkdir(parents=True, exist_ok=True)
        self._run_git(["init", "--quiet"])
        logger.info("Initialised git repository at %s", self.root)

    def _has_commits(self) -> bool:
        try:
            self._run_git(["rev-parse", "--verify", "--quiet", "HEAD"])
        except VersionControlError:
            return False
        return True

    def commit(self, report: ExecutionReport, *, turn_id: str, sequence: int) -> Checkpoint:
        """Record the current working tree as a new checkpoint.

        Always creates a commit, even if nothing changed or actions failed.
        """
        self.ensure_repository()
        message = build_commit_message(report, turn_id=turn_id, sequence=sequence)
        self._run_git(["add", "--all"])
        self._run_git(["commit", "--quiet", "--allow-empty", "--no-verify", "-m", message])
        commit_id = self._run_git(["rev-parse", "HEAD"]).strip()
        checkpoint = self.get(commit_id)

        logger.info("Recorded checkpoint %s for turn %s", checkpoint.short_id, turn_id)
        self._auditor.log(
            AuditEventType.CHECKPOINT_CREATED,
            {"checkpoint": checkpoint.id, "sequence": sequence, "files": report.files_changed},
            turn_id=turn_id,
        )
        return checkpoint

    def _resolve(self, checkpoint_id: str) -> str:
        if not _CHECKPOINT_ID.match(checkpoint_id or ""):
            raise CheckpointNotFound(checkpoint_id)
        if not self.is_repository():
            raise CheckpointNotFound(checkpoint_id)
        try:
            out = self._run_git(["rev-parse", "--verify", "--quiet", f"{checkpoint_id}^{{commit}}"])
        except VersionControlError as exc:
            raise CheckpointNotFound(checkpoint_id) from exc
        return out.strip()

    def get(self, checkpoint_id: str) -> Checkpoint:
        """Look up a checkpoint by (possibly abbreviated) id."""
        full_id = self._resolve(checkpoint_id)
        out = self._run_git(["log", "-1", _LOG_FORMAT, full_id])
        checkpoints = self._parse_log(out)
        if not checkpoints:
            raise CheckpointNotFound(checkpoint_id)
        return checkpoints[0]

    def list_checkpoints(self) -> list[Checkpoint]:
        """All checkpoints reachable from HEAD, oldest first."""
        if not self.is_repository() or not self._has_commits():
            return []
        out = self._run_git(["log", "--reverse", _LOG_FORMAT, "HEAD"])
        return [c for c in self._parse_log(out) if c.turn_id is not None]

    def revert(self, checkpoint_id: str) -> None:
        """Reset the working tree to exactly the checkpoint's recorded state.

        Raises:
            CheckpointNotFound: If the id does not name a commit in this repository
        """
        full_id = self._resolve(checkpoint_id)
        # Index and working tree take the checkpoint's tree; files it does not
        # contain are removed. HEAD stays put, so newer checkpoints remain.
        self._run_git(["read-tree", "--reset", "-u", full_id])
        self._run_git(["clean", "-f", "-d", "--quiet"])

        logger.info("Reverted working tree to checkpoint %s", full_id[:10])
        self._auditor.log(AuditEventType.CHECKPOINT_REVERTED, {"checkpoint": full_id})

    @staticmethod
    def _parse_log(output: str) -> list[Checkpoint]:
        checkpoints: list[Checkpoint] = []
        for record in output.split(_RECORD_SEP):
            record = record.strip("\n")
            if not record:
                continue
            commit_id, created, message = record.split(_FIELD_SEP, 2)
            trailers = _parse_trailers(message)
            sequence = trailers.get(TRAILER_SEQUENCE)
            checkpoints.append(
                Checkpoint(
                    id=commit_id,
                    created_at=datetime.fromisoformat(created),
                    message=message.strip(),
                    turn_id=trailers.get(TRAILER_TURN),
                    sequence=int(sequence) if sequence and sequence.isdigit() else None,
                    store_reference=trailers.get(TRAILER_STORE),
                )
            )
        return checkpoints
