"""Storage collaborators the executor writes through.

The executor only knows the ProjectStorage protocol. WorkspaceStorage is the
default implementation: files under the project root, a JSON dependency
manifest, and an optional SQLite database for statements.
"""

from __future__ import annotations

import json
import logging
import sqlite3
import subprocess
import threading
from collections.abc import Sequence
from pathlib import Path
from typing import Any, Protocol

logger = logging.getLogger(__name__)


class StorageError(Exception):
    """Raised when a storage operation cannot be carried out."""


class StatementStore(Protocol):
    """Auxiliary store that runs statements verbatim."""

    def execute_statement(self, statement: str) -> None: ...

    def close(self) -> None: ...


class ProjectStorage(Protocol):
    """Side-effecting operations the executor may perform."""

    def write_file(self, path: str, content: str) -> None: ...

    def delete_file(self, path: str) -> None: ...

    def rename_file(self, source: str, destination: str) -> None: ...

    def update_manifest(self, name: str, version: str) -> None: ...

    def execute_statement(self, statement: str) -> None: ...


# =============================================================================
# SQLite statement store
# =============================================================================


class SqliteStatementStore:
    """Runs statements against a local SQLite database file."""

    def __init__(self, db_path: Path) -> None:
        self.db_path = Path(db_path)
        self._local = threading.local()

    def connect(self) -> sqlite3.Connection:
        """Open or return an existing connection."""
        conn = getattr(self._local, "conn", None)
        if conn is not None:
            return conn
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        conn = sqlite3.connect(
            str(self.db_path),
            timeout=5.0,
            check_same_thread=False,
        )
        conn.row_factory = sqlite3.Row
        self._local.conn = conn
        return conn

    def close(self) -> None:
        """Close the database connection."""
        conn = getattr(self._local, "conn", None)
        if conn is not None:
            conn.close()
            self._local.conn = None

    def execute_statement(self, statement: str) -> None:
        # executescript commits any pending transaction first and accepts
        # several ';'-separated statements.
        conn = self.connect()
        conn.executescript(statement)
        conn.commit()

    def query(self, sql: str, params: tuple[object, ...] = ()) -> list[dict[str, Any]]:
        """Run a read query and return rows as dictionaries."""
        rows = self.connect().execute(sql, params).fetchall()
        return [dict(row) for row in rows]


# =============================================================================
# Workspace storage
# =============================================================================


class WorkspaceStorage:
    """Filesystem + manifest + statement store rooted at a project directory.

    Paths handed to this class are already validated and relative to root.
    """

    def __init__(
        self,
        root: Path,
        *,
        manifest_file: str = "package.json",
        statement_store: StatementStore | None = None,
    ) -> None:
        self.root = Path(root)
        self.manifest_file = manifest_file
        self.statement_store = statement_store

    def close(self) -> None:
        """Close the statement store, if one is configured."""
        if self.statement_store is not None:
            self.statement_store.close()

    def _abs(self, path: str) -> Path:
        return self.root / path

    def write_file(self, path: str, content: str) -> None:
        target = self._abs(path)
        target.parent.mkdir(parents=True, exist_ok=True)
        target.write_text(content, encoding="utf-8")

    def delete_file(self, path: str) -> None:
        target = self._abs(path)
        if not target.is_file():
            raise StorageError(f"File not found: {path}")
        target.unlink()

    def rename_file(self, source: str, destination: str) -> None:
        src = self._abs(source)
        dst = self._abs(destination)
        if not src.exists():
            raise StorageError(f"File not found: {source}")
        dst.parent.mkdir(parents=True, exist_ok=True)
        src.replace(dst)

    def read_manifest(self) -> dict[str, Any]:
        """Return the parsed manifest, or a fresh one if it does not exist."""
        manifest_path = self._abs(self.manifest_file)
        if not manifest_path.exists():
            return {"name": self.root.name, "private": True, "dependencies": {}}
        try:
            data = json.loads(manifest_path.read_text(encoding="utf-8"))
        except json.JSONDecodeError as exc:
            raise StorageError(f"Manifest {self.manifest_file} is not valid JSON: {exc}") from exc
        if not isinstance(data, dict):
            raise StorageError(f"Manifest {self.manifest_file} must contain a JSON object")
        return data

    def update_manifest(self, name: str, version: str) -> None:
        manifest = self.read_manifest()
        dependencies = manifest.setdefault("dependencies", {})
        if not isinstance(dependencies, dict):
            raise StorageError("Manifest 'dependencies' must be an object")
        dependencies[name] = version
        self._abs(self.manifest_file).write_text(
            json.dumps(manifest, indent=2, ensure_ascii=False) + "\n",
            encoding="utf-8",
        )

    def execute_statement(self, statement: str) -> None:
        if self.statement_store is None:
            raise StorageError("No statement store is configured for this project")
        self.statement_store.execute_statement(statement)


# =============================================================================
# Dependency installation
# =============================================================================


class CommandInstaller:
    """Runs an install command in the project after dependencies were added."""

    def __init__(self, command: Sequence[str], *, timeout: float = 600.0) -> None:
        if not command:
            raise ValueError("Install command cannot be empty")
        self.command = list(command)
        self.timeout = timeout

    def install(self, root: Path, dependencies: Sequence[str]) -> bool:
        """Run the install command. Returns True on success; failures are logged."""
        logger.info("Installing %d dependencies: %s", len(dependencies), ", ".join(dependencies))
        try:
            completed = subprocess.run(
                self.command,
                cwd=str(root),
                capture_output=True,
                text=True,
                timeout=self.timeout,
            )
        except FileNotFoundError:
            logger.warning("Install command not found: %s", self.command[0])
            return False
        except subprocess.TimeoutExpired:
            logger.warning("Install command timed out after %.0fs", self.timeout)
            return False

        if completed.returncode != 0:
            detail = (completed.stderr or completed.stdout or "").strip()
            logger.warning("Install command failed (%d): %s", completed.returncode, detail[:500])
            return False
        return True
