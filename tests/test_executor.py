"""Tests for the action executor and its default storage."""

from __future__ import annotations

import json
from pathlib import Path

import pytest

from turnforge.pipeline.actions import (
    AddDependency,
    DeleteFile,
    ExecuteStatement,
    OutcomeStatus,
    RenameFile,
    WriteFile,
)
from turnforge.pipeline.executor import ActionExecutor
from turnforge.pipeline.storage import (
    CommandInstaller,
    SqliteStatementStore,
    StorageError,
    WorkspaceStorage,
)
from turnforge.security import AuditEventType, SecurityAuditor


@pytest.fixture
def store(tmp_path: Path):
    s = SqliteStatementStore(tmp_path / "db" / "app.db")
    yield s
    s.close()


@pytest.fixture
def storage(project: Path, store: SqliteStatementStore) -> WorkspaceStorage:
    return WorkspaceStorage(project, statement_store=store)


@pytest.fixture
def executor(storage: WorkspaceStorage, auditor: SecurityAuditor) -> ActionExecutor:
    return ActionExecutor(storage, auditor=auditor, timestamp=lambda: "2026-01-01T00:00:00+00:00")


class TestApplyKinds:
    """Per-kind semantics."""

    def test_write_creates_parents_and_overwrites(self, executor: ActionExecutor, project: Path) -> None:
        executor.execute([WriteFile("src/deep/app.ts", "v1")])
        report = executor.execute([WriteFile("src/deep/app.ts", "v2")])

        assert (project / "src/deep/app.ts").read_text() == "v2"
        assert report.files_changed == ["src/deep/app.ts"]

    def test_delete(self, executor: ActionExecutor, project: Path) -> None:
        report = executor.execute([DeleteFile("README.md")])
        assert report.outcomes[0].status is OutcomeStatus.APPLIED
        assert not (project / "README.md").exists()

    def test_rename_creates_destination_dirs(self, executor: ActionExecutor, project: Path) -> None:
        executor.execute([RenameFile("README.md", "docs/README.md")])
        assert (project / "docs/README.md").read_text() == "# Demo\n"
        assert not (project / "README.md").exists()

    def test_add_dependency_creates_manifest(self, executor: ActionExecutor, project: Path) -> None:
        executor.execute([AddDependency("left-pad", "1.0.0")])

        manifest = json.loads((project / "package.json").read_text())
        assert manifest["name"] == "project"
        assert manifest["dependencies"] == {"left-pad": "1.0.0"}

    def test_add_dependency_preserves_existing_keys(self, executor: ActionExecutor, project: Path) -> None:
        (project / "package.json").write_text(json.dumps({
            "name": "demo",
            "version": "2.0.0",
            "dependencies": {"react": "^18.0.0"},
            "scripts": {"test": "jest"},
        }))

        executor.execute([AddDependency("react", "^19.0.0"), AddDependency("zod", "latest")])

        manifest = json.loads((project / "package.json").read_text())
        assert list(manifest) == ["name", "version", "dependencies", "scripts"]
        assert manifest["dependencies"] == {"react": "^19.0.0", "zod": "latest"}

    def test_execute_statement(self, executor: ActionExecutor, store: SqliteStatementStore) -> None:
        report = executor.execute([
            ExecuteStatement("CREATE TABLE notes (id INTEGER PRIMARY KEY, body TEXT);"),
            ExecuteStatement("INSERT INTO notes (body) VALUES ('a'); INSERT INTO notes (body) VALUES ('b');"),
        ])

        assert len(report.applied) == 2
        assert report.store_reference == "2026-01-01T00:00:00+00:00"
        assert [r["body"] for r in store.query("SELECT body FROM notes ORDER BY id")] == ["a", "b"]

    def test_no_store_reference_without_statements(self, executor: ActionExecutor) -> None:
        assert executor.execute([WriteFile("a.txt", "x")]).store_reference is None


class TestFailureIsolation:
    """The first failure stops the pass without undoing earlier actions."""

    def test_failure_skips_the_rest(self, executor: ActionExecutor, project: Path, auditor: SecurityAuditor) -> None:
        report = executor.execute([
            WriteFile("one.txt", "1"),
            DeleteFile("missing.txt"),
            WriteFile("three.txt", "3"),
        ])

        assert [o.status for o in report.outcomes] == [
            OutcomeStatus.APPLIED,
            OutcomeStatus.FAILED,
            OutcomeStatus.SKIPPED,
        ]
        assert "missing.txt" in report.outcomes[1].error
        assert report.outcomes[1].error.startswith("StorageError")
        assert (project / "one.txt").exists()
        assert not (project / "three.txt").exists()
        assert len(auditor.get_recent_events(event_type=AuditEventType.ACTION_FAILED)) == 1

    def test_statement_error_is_a_failure(self, executor: ActionExecutor) -> None:
        report = executor.execute([ExecuteStatement("THIS IS NOT SQL;")])
        assert report.outcomes[0].status is OutcomeStatus.FAILED
        assert report.store_reference is None

    def test_no_store_configured(self, project: Path, auditor: SecurityAuditor) -> None:
        executor = ActionExecutor(WorkspaceStorage(project), auditor=auditor)
        report = executor.execute([ExecuteStatement("SELECT 1;")])
        assert report.failures[0].error == "StorageError: No statement store is configured for this project"

    def test_invalid_manifest_is_a_failure(self, executor: ActionExecutor, project: Path) -> None:
        (project / "package.json").write_text("{not json")
        report = executor.execute([AddDependency("x", "1")])
        assert report.outcomes[0].status is OutcomeStatus.FAILED
        assert (project / "package.json").read_text() == "{not json"

    def test_deterministic(self, tmp_path: Path, auditor: SecurityAuditor) -> None:
        """Same actions on the same starting tree give the same result."""
        actions = [
            WriteFile("a.txt", "a"),
            RenameFile("a.txt", "b.txt"),
            AddDependency("left-pad", "1.0.0"),
            DeleteFile("nope.txt"),
        ]
        results = []
        for name in ("one", "two"):
            root = tmp_path / name
            root.mkdir()
            report = ActionExecutor(WorkspaceStorage(root), auditor=auditor).execute(actions)
            files = sorted(p.relative_to(root).as_posix() for p in root.rglob("*"))
            results.append(([o.status for o in report.outcomes], files, (root / "package.json").read_text()))

        assert results[0] == results[1]


class TestCancellation:
    """Cancellation is observed between actions."""

    def test_cancel_after_two_of_three(self, executor: ActionExecutor, project: Path) -> None:
        calls = {"n": 0}

        def should_cancel() -> bool:
            calls["n"] += 1
            return calls["n"] > 2

        report = executor.execute(
            [WriteFile("1.txt", "1"), WriteFile("2.txt", "2"), WriteFile("3.txt", "3")],
            should_cancel=should_cancel,
        )

        assert [o.status for o in report.outcomes] == [
            OutcomeStatus.APPLIED,
            OutcomeStatus.APPLIED,
            OutcomeStatus.CANCELLED,
        ]
        assert report.was_cancelled
        assert not (project / "3.txt").exists()


class TestStorage:
    """Direct WorkspaceStorage behaviour."""

    def test_rename_missing_source(self, storage: WorkspaceStorage) -> None:
        with pytest.raises(StorageError):
            storage.rename_file("nope.txt", "b.txt")

    def test_manifest_must_be_an_object(self, storage: WorkspaceStorage, project: Path) -> None:
        (project / "package.json").write_text("[]")
        with pytest.raises(StorageError):
            storage.read_manifest()


class TestCommandInstaller:
    """Install failures are reported, never raised."""

    def test_missing_command(self, project: Path) -> None:
        installer = CommandInstaller(["definitely-not-a-real-installer-binary"])
        assert installer.install(project, ["left-pad"]) is False

    def test_empty_command_rejected(self) -> None:
        with pytest.raises(ValueError):
            CommandInstaller([])
