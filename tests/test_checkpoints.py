"""Tests for git-backed checkpoints."""

from __future__ import annotations

from pathlib import Path

import pytest

from conftest import run_git  # type: ignore[import-not-found]
from turnforge.errors import CheckpointNotFound
from turnforge.pipeline.actions import (
    ActionOutcome,
    ExecuteStatement,
    ExecutionReport,
    OutcomeStatus,
    WriteFile,
)
from turnforge.pipeline.checkpoints import GitVersionManager, build_commit_message
from turnforge.security import AuditEventType, SecurityAuditor


@pytest.fixture
def manager(project: Path, auditor: SecurityAuditor) -> GitVersionManager:
    return GitVersionManager(project, author_name="Test", author_email="test@example.com", auditor=auditor)


def snapshot_tree(root: Path) -> dict[str, str]:
    return {
        p.relative_to(root).as_posix(): p.read_text()
        for p in sorted(root.rglob("*"))
        if p.is_file() and ".git" not in p.relative_to(root).parts
    }


class TestCommit:
    """Recording checkpoints."""

    def test_initialises_repository(self, manager: GitVersionManager, project: Path) -> None:
        assert not manager.is_repository()
        checkpoint = manager.commit(ExecutionReport(), turn_id="t1", sequence=1)

        assert manager.is_repository()
        assert checkpoint.turn_id == "t1"
        assert checkpoint.sequence == 1
        assert "README.md" in run_git(project, ["ls-files"])

    def test_commit_is_always_recorded(self, manager: GitVersionManager) -> None:
        """Even a pass that changed nothing gets its own checkpoint."""
        first = manager.commit(ExecutionReport(), turn_id="t1", sequence=1)
        second = manager.commit(ExecutionReport(), turn_id="t2", sequence=2)

        assert first.id != second.id
        assert [c.id for c in manager.list_checkpoints()] == [first.id, second.id]

    def test_trailers(self, manager: GitVersionManager, auditor: SecurityAuditor) -> None:
        report = ExecutionReport(
            outcomes=[ActionOutcome(0, ExecuteStatement("SELECT 1;"), OutcomeStatus.APPLIED)],
            store_reference="2026-01-01T00:00:00+00:00",
        )
        checkpoint = manager.commit(report, turn_id="abc", sequence=7)

        assert checkpoint.store_reference == "2026-01-01T00:00:00+00:00"
        assert checkpoint.subject.startswith("[turnforge] Turn 7")
        assert len(auditor.get_recent_events(event_type=AuditEventType.CHECKPOINT_CREATED)) == 1

    def test_commit_message_lists_failures(self) -> None:
        report = ExecutionReport(outcomes=[
            ActionOutcome(0, WriteFile("a.txt", "x"), OutcomeStatus.APPLIED),
            ActionOutcome(1, WriteFile("b.txt", "x"), OutcomeStatus.FAILED, "OSError: disk full"),
        ])
        message = build_commit_message(report, turn_id="t", sequence=3)

        assert message.splitlines()[0] == "[turnforge] Turn 3: applied 1 action(s), 1 failed"
        assert "- failed: Write b.txt (OSError: disk full)" in message
        assert "Turn-Id: t" in message

    def test_get_accepts_abbreviated_id(self, manager: GitVersionManager) -> None:
        checkpoint = manager.commit(ExecutionReport(), turn_id="t1", sequence=1)
        assert manager.get(checkpoint.id[:8]).id == checkpoint.id

    def test_foreign_commits_are_not_listed(self, manager: GitVersionManager, project: Path) -> None:
        run_git(project, ["init", "--quiet"])
        run_git(project, ["add", "."])
        run_git(project, ["-c", "user.name=x", "-c", "user.email=x@x", "commit", "-m", "manual"])
        manager.commit(ExecutionReport(), turn_id="t1", sequence=1)

        assert [c.turn_id for c in manager.list_checkpoints()] == ["t1"]


class TestRevert:
    """Restoring the working tree."""

    def test_round_trip(self, manager: GitVersionManager, project: Path) -> None:
        """revert(commit(state)) restores state exactly."""
        (project / "src").mkdir()
        (project / "src/app.ts").write_text("v1")
        before = snapshot_tree(project)
        checkpoint = manager.commit(ExecutionReport(), turn_id="t1", sequence=1)

        (project / "src/app.ts").write_text("v2")
        (project / "README.md").unlink()
        (project / "new.txt").write_text("later")
        (project / "extra").mkdir()
        (project / "extra/untracked.txt").write_text("junk")
        manager.commit(ExecutionReport(), turn_id="t2", sequence=2)
        (project / "uncommitted.txt").write_text("scratch")

        manager.revert(checkpoint.id)

        assert snapshot_tree(project) == before

    def test_newer_checkpoints_stay_reachable(self, manager: GitVersionManager, project: Path) -> None:
        first = manager.commit(ExecutionReport(), turn_id="t1", sequence=1)
        (project / "feature.txt").write_text("feature")
        second = manager.commit(ExecutionReport(), turn_id="t2", sequence=2)

        manager.revert(first.id)
        assert not (project / "feature.txt").exists()
        assert [c.id for c in manager.list_checkpoints()] == [first.id, second.id]

        manager.revert(second.id)
        assert (project / "feature.txt").read_text() == "feature"

    @pytest.mark.parametrize("bad_id", ["deadbeef" * 5, "not-a-hash", "", "HEAD~1; rm -rf /"])
    def test_unknown_checkpoint(self, manager: GitVersionManager, bad_id: str) -> None:
        manager.commit(ExecutionReport(), turn_id="t1", sequence=1)
        with pytest.raises(CheckpointNotFound):
            manager.revert(bad_id)

    def test_revert_without_repository(self, manager: GitVersionManager) -> None:
        with pytest.raises(CheckpointNotFound):
            manager.revert("abcdef12")
