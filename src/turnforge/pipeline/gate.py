"""Approval gate - the per-turn state machine.

    streaming --end(non-empty)--> pending_approval --approve--> approved --> applied | failed
    streaming --end(empty)------> applied
    pending_approval --reject---> rejected
    streaming | pending_approval --cancel--> rejected
    approved --cancel observed during dispatch--> rejected

States are never revisited. A failed turn is retried by starting a new turn.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any

from turnforge.errors import InvalidTransition
from turnforge.pipeline.actions import Action, ActionBatch, ApprovalState

logger = logging.getLogger(__name__)

S = ApprovalState

ALLOWED_TRANSITIONS: dict[ApprovalState, frozenset[ApprovalState]] = {
    S.STREAMING: frozenset({S.PENDING_APPROVAL, S.APPLIED, S.REJECTED}),
    S.PENDING_APPROVAL: frozenset({S.APPROVED, S.REJECTED}),
    S.APPROVED: frozenset({S.APPLIED, S.FAILED, S.REJECTED}),
    S.REJECTED: frozenset(),
    S.APPLIED: frozenset(),
    S.FAILED: frozenset(),
}


@dataclass(frozen=True)
class Transition:
    source: ApprovalState
    target: ApprovalState
    reason: str
    at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    def to_dict(self) -> dict[str, Any]:
        return {
            "from": self.source.value,
            "to": self.target.value,
            "reason": self.reason,
            "at": self.at.isoformat(),
        }


class ApprovalGate:
    """Decides whether a completed batch is held, applied or discarded."""

    def __init__(self, *, auto_approve: bool = False) -> None:
        self.auto_approve = auto_approve
        self._state = ApprovalState.STREAMING
        self._batch: ActionBatch | None = None
        self.history: list[Transition] = []

    @property
    def state(self) -> ApprovalState:
        return self._state

    @property
    def batch(self) -> ActionBatch | None:
        return self._batch

    def _move(self, target: ApprovalState, reason: str) -> ApprovalState:
        if target not in ALLOWED_TRANSITIONS[self._state]:
            raise InvalidTransition(self._state.value, target.value)
        logger.debug("Gate %s -> %s (%s)", self._state.value, target.value, reason)
        self.history.append(Transition(self._state, target, reason))
        self._state = target
        return target

    def end_of_stream(self, batch: ActionBatch) -> ApprovalState:
        """Receive the finished batch. Empty batches are a no-op turn."""
        if self._state is not ApprovalState.STREAMING:
            raise InvalidTransition(self._state.value, ApprovalState.PENDING_APPROVAL.value)
        self._batch = batch
        if batch.is_empty:
            batch.consume()
            return self._move(ApprovalState.APPLIED, "no actions")
        self._move(ApprovalState.PENDING_APPROVAL, "stream complete")
        if self.auto_approve:
            self._move(ApprovalState.APPROVED, "auto-approve")
        return self._state

    def approve(self) -> ApprovalState:
        return self._move(ApprovalState.APPROVED, "user approved")

    def reject(self) -> ApprovalState:
        if self._state is not ApprovalState.PENDING_APPROVAL:
            raise InvalidTransition(self._state.value, ApprovalState.REJECTED.value)
        return self._move(ApprovalState.REJECTED, "user rejected")

    def cancel(self) -> ApprovalState:
        """Discard the turn. Only valid before dispatch; see cancel_dispatch()."""
        if self._state not in (ApprovalState.STREAMING, ApprovalState.PENDING_APPROVAL):
            raise InvalidTransition(self._state.value, ApprovalState.REJECTED.value)
        return self._move(ApprovalState.REJECTED, "cancelled")

    def take_batch(self) -> tuple[Action, ...]:
        """Hand the approved actions to the executor (exactly once)."""
        if self._state is not ApprovalState.APPROVED or self._batch is None:
            raise InvalidTransition(self._state.value, "dispatch")
        return self._batch.consume()

    def mark_applied(self) -> ApprovalState:
        if self._state is not ApprovalState.APPROVED:
            raise InvalidTransition(self._state.value, ApprovalState.APPLIED.value)
        return self._move(ApprovalState.APPLIED, "executor pass recorded")

    def mark_failed(self, reason: str) -> ApprovalState:
        if self._state is not ApprovalState.APPROVED:
            raise InvalidTransition(self._state.value, ApprovalState.FAILED.value)
        return self._move(ApprovalState.FAILED, reason)

    def cancel_dispatch(self) -> ApprovalState:
        """Close a turn whose dispatch was cancelled part-way."""
        if self._state is not ApprovalState.APPROVED:
            raise InvalidTransition(self._state.value, ApprovalState.REJECTED.value)
        return self._move(ApprovalState.REJECTED, "cancelled during dispatch")
