"""Stream session controller - one turn from first chunk to checkpoint.

Wires parser -> validator -> gate -> executor -> version manager for a single
project. Only one turn per project may be unresolved at a time; a second
start() is refused with Busy rather than queued.

Thread model: ingest/finish/approve/reject/cancel may be called from
different threads. Controller state is guarded by a lock that is released
while the executor runs, so cancel() can land mid-dispatch. Cancellation is
cooperative through an Event checked at chunk boundaries and between actions.
"""

from __future__ import annotations

import logging
import threading
import uuid
from pathlib import Path
from typing import Any

from turnforge.config import Config, get_config
from turnforge.errors import Busy, InvalidTransition, VersionControlError
from turnforge.logging_config import turn_context
from turnforge.pipeline.actions import (
    ActionBatch,
    ActionNode,
    AddDependency,
    ApprovalState,
    ExecutionReport,
    TextSpan,
)
from turnforge.pipeline.checkpoints import Checkpoint, GitVersionManager, VersionManager
from turnforge.pipeline.diff_utils import preview_actions
from turnforge.pipeline.executor import ActionExecutor
from turnforge.pipeline.gate import ApprovalGate
from turnforge.pipeline.parser import ParsedItem, TagStreamParser
from turnforge.pipeline.storage import CommandInstaller, SqliteStatementStore, WorkspaceStorage
from turnforge.pipeline.validator import ActionValidator
from turnforge.security import AuditEventType, SecurityAuditor, get_auditor

logger = logging.getLogger(__name__)


# =============================================================================
# Turn registry
# =============================================================================


class TurnRegistry:
    """Process-wide record of which project roots have an unresolved turn."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._active: dict[str, str] = {}

    @staticmethod
    def _key(project_root: Path) -> str:
        return str(Path(project_root).resolve())

    def acquire(self, project_root: Path, turn_id: str) -> None:
        """Claim the project for a turn.

        Raises:
            Busy: If another turn on the same project is still unresolved
        """
        key = self._key(project_root)
        with self._lock:
            active = self._active.get(key)
            if active is not None:
                raise Busy(key, active)
            self._active[key] = turn_id

    def release(self, project_root: Path, turn_id: str) -> None:
        key = self._key(project_root)
        with self._lock:
            if self._active.get(key) == turn_id:
                del self._active[key]

    def active_turn(self, project_root: Path) -> str | None:
        with self._lock:
            return self._active.get(self._key(project_root))


_registry = TurnRegistry()


def get_turn_registry() -> TurnRegistry:
    """Get the process-wide turn registry."""
    return _registry


# =============================================================================
# Controller
# =============================================================================


class StreamSessionController:
    """Drives turns for one project.

    Usage:
        controller = build_controller(Path("~/code/app").expanduser())
        controller.start()
        for chunk in stream:
            controller.ingest(chunk)
        state = controller.finish()
        if state is ApprovalState.PENDING_APPROVAL:
            show(controller.snapshot())
            state = controller.approve()
    """

    def __init__(
        self,
        project_root: Path,
        *,
        validator: ActionValidator,
        executor: ActionExecutor,
        version_manager: VersionManager,
        auto_approve: bool = False,
        pause_auto_approve_after_failure: bool = True,
        installer: CommandInstaller | None = None,
        registry: TurnRegistry | None = None,
        auditor: SecurityAuditor | None = None,
        manifest_file: str = "package.json",
        initial_sequence: int = 0,
    ) -> None:
        self.project_root = Path(project_root)
        self.validator = validator
        self.executor = executor
        self.version_manager = version_manager
        self.auto_approve = auto_approve
        self.pause_auto_approve_after_failure = pause_auto_approve_after_failure
        self.installer = installer
        self.manifest_file = manifest_file
        self._registry = registry or get_turn_registry()
        self._auditor = auditor or get_auditor()

        self._lock = threading.Lock()
        self._cancel = threading.Event()
        # Sequence of the last recorded turn; start() counts on from here.
        self._sequence = initial_sequence
        self._last_turn_had_failures = False

        self._turn_id: str | None = None
        self._gate: ApprovalGate | None = None
        self._parser: TagStreamParser | None = None
        self._transcript: list[ParsedItem] = []
        self._nodes: list[ActionNode] = []
        self._report: ExecutionReport | None = None
        self._checkpoint: Checkpoint | None = None
        self._error: str | None = None

    # -------------------------------------------------------------------------
    # Read-only views
    # -------------------------------------------------------------------------

    @property
    def state(self) -> ApprovalState | None:
        """State of the current (or last) turn; None before the first start()."""
        with self._lock:
            return self._gate.state if self._gate else None

    @property
    def turn_id(self) -> str | None:
        return self._turn_id

    @property
    def sequence(self) -> int:
        return self._sequence

    @property
    def batch(self) -> ActionBatch | None:
        return self._gate.batch if self._gate else None

    @property
    def report(self) -> ExecutionReport | None:
        return self._report

    @property
    def checkpoint(self) -> Checkpoint | None:
        return self._checkpoint

    @property
    def transcript(self) -> list[ParsedItem]:
        """Text spans and directives in order, adjacent text coalesced."""
        with self._lock:
            return list(self._transcript)

    @property
    def text(self) -> str:
        """The prose of the turn with directives removed."""
        return "".join(item.text for item in self.transcript if isinstance(item, TextSpan))

    def auto_approve_active(self) -> bool:
        """Whether the next batch will be approved without asking."""
        if not self.auto_approve:
            return False
        return not (self.pause_auto_approve_after_failure and self._last_turn_had_failures)

    # -------------------------------------------------------------------------
    # Turn lifecycle
    # -------------------------------------------------------------------------

    def start(self, turn_id: str | None = None) -> ApprovalState:
        """Open a new turn.

        Raises:
            Busy: If a turn on this project is still unresolved
        """
        turn_id = turn_id or uuid.uuid4().hex[:12]
        with self._lock:
            if self._gate is not None and not self._gate.state.is_terminal:
                raise Busy(str(self.project_root), self._turn_id)
            self._registry.acquire(self.project_root, turn_id)

            auto = self.auto_approve_active()
            if self.auto_approve and not auto:
                logger.info("Auto-approve paused: previous turn recorded failed actions")

            self._sequence += 1
            self._turn_id = turn_id
            self._gate = ApprovalGate(auto_approve=auto)
            self._parser = TagStreamParser()
            self._transcript = []
            self._nodes = []
            self._report = None
            self._checkpoint = None
            self._error = None
            self._cancel.clear()

            logger.info("Started turn %s (#%d) on %s", turn_id, self._sequence, self.project_root)
            return self._gate.state

    def ingest(self, chunk: str) -> ApprovalState:
        """Feed the next chunk of model text, in arrival order."""
        with self._lock:
            gate = self._require_gate()
            if gate.state is not ApprovalState.STREAMING:
                if gate.state.is_terminal:
                    logger.debug("Dropping chunk for closed turn %s", self._turn_id)
                    return gate.state
                raise InvalidTransition(gate.state.value, "ingest")
            assert self._parser is not None
            self._collect(self._parser.feed(chunk))
            return gate.state

    def finish(self, error: str | None = None) -> ApprovalState:
        """Signal end of stream.

        With an error reason the partial output is discarded and the turn is
        rejected. Otherwise the batch is validated and handed to the gate; in
        auto-approve mode it is applied before this returns.
        """
        with self._lock:
            gate = self._require_gate()
            if gate.state is not ApprovalState.STREAMING:
                if gate.state.is_terminal:
                    return gate.state
                raise InvalidTransition(gate.state.value, "finish")

            if error is not None:
                self._error = error
                logger.warning("Turn %s stream ended with error: %s", self._turn_id, error)
                gate.cancel()
                self._audit(AuditEventType.TURN_CANCELLED, {"reason": error}, success=False)
                self._settle()
                return gate.state

            assert self._parser is not None and self._turn_id is not None
            self._collect(self._parser.finish())
            actions, rejections = self.validator.validate_all(self._nodes, turn_id=self._turn_id)
            batch = ActionBatch(
                turn_id=self._turn_id,
                sequence=self._sequence,
                actions=tuple(actions),
                rejections=tuple(rejections),
                warnings=tuple(self._parser.warnings),
            )
            state = gate.end_of_stream(batch)
            logger.info(
                "Turn %s produced %d action(s), %d rejected, %d warning(s)",
                self._turn_id, len(actions), len(rejections), len(batch.warnings),
            )

            if state is ApprovalState.APPLIED:
                self._settle()
                return state
            self._audit(AuditEventType.APPROVAL_REQUESTED, {"actions": len(actions)})
            if state is not ApprovalState.APPROVED:
                return state
            self._audit(AuditEventType.APPROVAL_GRANTED, {"mode": "auto"})

        return self._dispatch()

    def approve(self) -> ApprovalState:
        """Approve the pending batch and apply it."""
        with self._lock:
            self._require_gate().approve()
            self._audit(AuditEventType.APPROVAL_GRANTED, {"mode": "user"})
        return self._dispatch()

    def reject(self) -> ApprovalState:
        """Discard the pending batch without touching the project."""
        with self._lock:
            gate = self._require_gate()
            gate.reject()
            self._audit(AuditEventType.APPROVAL_DENIED, {})
            self._settle()
            return gate.state

    def cancel(self) -> ApprovalState:
        """Cancel the turn.

        Before dispatch the turn is rejected at once. During dispatch the
        request is recorded; the action in flight completes, the rest are
        cancelled and the partial state is checkpointed. After a terminal
        state this is a no-op.
        """
        with self._lock:
            gate = self._require_gate()
            if gate.state.is_terminal:
                return gate.state
            self._cancel.set()
            if gate.state is ApprovalState.APPROVED:
                logger.info("Cancellation requested during dispatch of turn %s", self._turn_id)
                return gate.state
            gate.cancel()
            self._audit(AuditEventType.TURN_CANCELLED, {"stage": "before dispatch"})
            self._settle()
            return gate.state

    # -------------------------------------------------------------------------
    # Internals
    # -------------------------------------------------------------------------

    def _require_gate(self) -> ApprovalGate:
        if self._gate is None:
            raise InvalidTransition("idle", "turn operation (call start() first)")
        return self._gate

    def _collect(self, items: list[ParsedItem]) -> None:
        for item in items:
            if isinstance(item, TextSpan):
                if not item.text:
                    continue
                if self._transcript and isinstance(self._transcript[-1], TextSpan):
                    self._transcript[-1] = TextSpan(self._transcript[-1].text + item.text)
                    continue
            else:
                self._nodes.append(item)
            self._transcript.append(item)

    def _settle(self) -> None:
        """Release the project once the turn is terminal. Lock must be held."""
        if self._turn_id is not None:
            self._registry.release(self.project_root, self._turn_id)

    def _audit(self, event_type: AuditEventType, details: dict[str, Any], success: bool = True) -> None:
        self._auditor.log(event_type, details, turn_id=self._turn_id, success=success)

    def _dispatch(self) -> ApprovalState:
        """Run the approved batch, then record a checkpoint. Lock must NOT be held."""
        with self._lock:
            gate = self._require_gate()
            actions = gate.take_batch()
            turn_id = self._turn_id or ""
            sequence = self._sequence

        failure: str | None = None
        with turn_context(turn_id):
            try:
                report = self.executor.execute(
                    actions, should_cancel=self._cancel.is_set, turn_id=turn_id
                )
            except Exception as exc:  # noqa: BLE001
                logger.exception("Executor pass for turn %s broke", turn_id)
                failure = f"executor error: {exc}"
                report = ExecutionReport()

            checkpoint: Checkpoint | None = None
            try:
                checkpoint = self.version_manager.commit(report, turn_id=turn_id, sequence=sequence)
            except Exception as exc:  # noqa: BLE001
                logger.error("Could not record checkpoint for turn %s: %s", turn_id, exc)
                failure = failure or f"checkpoint error: {exc}"

            added = [
                o.action.name for o in report.applied if isinstance(o.action, AddDependency)
            ]
            if added and self.installer is not None:
                self.installer.install(self.project_root, added)

        with self._lock:
            self._report = report
            self._checkpoint = checkpoint
            self._last_turn_had_failures = bool(report.failures) or failure is not None
            if failure is not None:
                self._error = failure
                gate.mark_failed(failure)
            elif report.was_cancelled:
                gate.cancel_dispatch()
                self._audit(AuditEventType.TURN_CANCELLED, {"stage": "during dispatch"})
            else:
                gate.mark_applied()
            if report.failures:
                logger.warning(
                    "Turn %s applied %d of %d action(s); %d failed",
                    turn_id, len(report.applied), len(report.outcomes), len(report.failures),
                )
            self._settle()
            return gate.state

    def close(self) -> None:
        """Release storage resources such as the statement store connection."""
        close = getattr(self.executor.storage, "close", None)
        if close is not None:
            close()

    def snapshot(self) -> dict[str, Any]:
        """JSON-serializable view of the current turn for an approval UI."""
        with self._lock:
            gate = self._gate
            batch = gate.batch if gate else None
            state = gate.state if gate else None
            preview = None
            if batch is not None and state is ApprovalState.PENDING_APPROVAL:
                preview = preview_actions(
                    self.project_root, batch.actions, manifest_file=self.manifest_file
                ).to_dict()
            return {
                "turn_id": self._turn_id,
                "sequence": self._sequence,
                "state": state.value if state else None,
                "auto_approve": gate.auto_approve if gate else self.auto_approve_active(),
                "transcript": [item.to_dict() for item in self._transcript],
                "batch": batch.to_dict() if batch else None,
                "preview": preview,
                "report": self._report.to_dict() if self._report else None,
                "checkpoint": self._checkpoint.to_dict() if self._checkpoint else None,
                "error": self._error,
                "history": [t.to_dict() for t in gate.history] if gate else [],
            }


def build_controller(project_root: Path, config: Config | None = None) -> StreamSessionController:
    """Assemble a controller with the default collaborators for a project."""
    config = config or get_config()
    root = Path(project_root)
    pipeline = config.pipeline

    statement_store = None
    if pipeline.statement_db:
        statement_store = SqliteStatementStore(root / pipeline.statement_db)

    storage = WorkspaceStorage(
        root, manifest_file=pipeline.manifest_file, statement_store=statement_store
    )
    version_manager = GitVersionManager(
        root,
        author_name=config.checkpoints.author_name,
        author_email=config.checkpoints.author_email,
    )
    try:
        last_sequence = max(
            (c.sequence for c in version_manager.list_checkpoints() if c.sequence is not None),
            default=0,
        )
    except VersionControlError as e:
        logger.warning("Could not read checkpoint history in %s: %s", root, e)
        last_sequence = 0
    installer = CommandInstaller(pipeline.install_command) if pipeline.install_command else None

    return StreamSessionController(
        root,
        validator=ActionValidator(root, allowed_kinds=pipeline.allowed_actions),
        executor=ActionExecutor(storage),
        version_manager=version_manager,
        auto_approve=pipeline.auto_approve,
        pause_auto_approve_after_failure=pipeline.pause_auto_approve_after_failure,
        installer=installer,
        manifest_file=pipeline.manifest_file,
        initial_sequence=last_sequence,
    )
