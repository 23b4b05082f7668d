"""Executor - applies a validated batch to the project.

Actions run strictly in order. The first failure stops the pass: earlier
actions stay applied, the failing one is recorded with its reason and the
rest are skipped. Nothing is rolled back here; the checkpoint taken
afterwards records whatever ended up on disk.
"""

from __future__ import annotations

import logging
from collections.abc import Callable, Sequence
from datetime import datetime, timezone

from turnforge.errors import ExecutionFailed
from turnforge.pipeline.actions import (
    Action,
    ActionOutcome,
    AddDependency,
    DeleteFile,
    ExecuteStatement,
    ExecutionReport,
    OutcomeStatus,
    RenameFile,
    WriteFile,
)
from turnforge.pipeline.storage import ProjectStorage
from turnforge.security import AuditEventType, SecurityAuditor, get_auditor

logger = logging.getLogger(__name__)


def _utc_now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


class ActionExecutor:
    """Applies actions through a ProjectStorage."""

    def __init__(
        self,
        storage: ProjectStorage,
        *,
        auditor: SecurityAuditor | None = None,
        timestamp: Callable[[], str] = _utc_now_iso,
    ) -> None:
        self.storage = storage
        self._auditor = auditor or get_auditor()
        self._timestamp = timestamp

    def apply(self, action: Action) -> None:
        """Apply a single action. Storage errors propagate."""
        if isinstance(action, WriteFile):
            self.storage.write_file(action.path, action.content)
        elif isinstance(action, DeleteFile):
            self.storage.delete_file(action.path)
        elif isinstance(action, RenameFile):
            self.storage.rename_file(action.source, action.destination)
        elif isinstance(action, AddDependency):
            self.storage.update_manifest(action.name, action.version)
        elif isinstance(action, ExecuteStatement):
            self.storage.execute_statement(action.statement)
        else:
            raise TypeError(f"Unsupported action: {action!r}")

    def execute(
        self,
        actions: Sequence[Action],
        *,
        should_cancel: Callable[[], bool] | None = None,
        turn_id: str | None = None,
    ) -> ExecutionReport:
        """Run actions in order and report one outcome per action.

        Args:
            actions: Validated actions, in batch order
            should_cancel: Polled before each action; once it returns True the
                remaining actions are recorded as cancelled. An action already
                running is never interrupted.
            turn_id: Used for logging and audit only
        """
        report = ExecutionReport()
        stopped: OutcomeStatus | None = None

        for index, action in enumerate(actions):
            if stopped is None and should_cancel is not None and should_cancel():
                logger.info("Cancellation observed before action %d of %d", index, len(actions))
                stopped = OutcomeStatus.CANCELLED

            if stopped is not None:
                report.outcomes.append(ActionOutcome(index=index, action=action, status=stopped))
                continue

            try:
                self.apply(action)
            except Exception as exc:  # noqa: BLE001
                failure = ExecutionFailed(index, exc)
                logger.warning("%s (%s)", failure, action.describe())
                self._auditor.log(
                    AuditEventType.ACTION_FAILED,
                    {"index": index, "action": action.describe(), "error": str(exc)},
                    turn_id=turn_id,
                    success=False,
                )
                report.outcomes.append(
                    ActionOutcome(
                        index=index,
                        action=action,
                        status=OutcomeStatus.FAILED,
                        error=f"{type(exc).__name__}: {exc}",
                    )
                )
                stopped = OutcomeStatus.SKIPPED
                continue

            logger.debug("Applied action %d: %s", index, action.describe())
            self._auditor.log(
                AuditEventType.ACTION_APPLIED,
                {"index": index, "action": action.describe()},
                turn_id=turn_id,
            )
            if isinstance(action, ExecuteStatement):
                report.store_reference = self._timestamp()
            report.outcomes.append(
                ActionOutcome(index=index, action=action, status=OutcomeStatus.APPLIED)
            )

        return report
