"""Data model for the action pipeline.

Model text is parsed into ActionNode records (raw tag + attributes + body),
validated into typed Action variants, grouped into an ActionBatch per turn and
finally applied, producing one ActionOutcome per action.
"""

from __future__ import annotations

from dataclasses import dataclass, field, fields
from enum import Enum
from typing import Any, ClassVar, Union

from turnforge.errors import BatchAlreadyConsumed, ParseAmbiguous


class ActionKind(Enum):
    """Directive kinds; the value is the tag name as it appears in model text."""

    WRITE = "write"
    DELETE = "delete"
    RENAME = "rename"
    ADD = "add"
    EXECUTE = "execute"

    @classmethod
    def from_tag(cls, name: str) -> ActionKind | None:
        """Return the kind for a tag name (case-sensitive), or None."""
        for kind in cls:
            if kind.value == name:
                return kind
        return None


TAG_NAMES: tuple[str, ...] = tuple(kind.value for kind in ActionKind)


# =============================================================================
# Parser output
# =============================================================================


@dataclass(frozen=True)
class TextSpan:
    """Plain text between or around directives. Display only."""

    text: str

    def to_dict(self) -> dict[str, Any]:
        return {"type": "text", "text": self.text}


@dataclass(frozen=True)
class ActionNode:
    """A closed directive exactly as the parser found it."""

    kind: ActionKind
    attributes: dict[str, str]
    body: str
    raw: str
    position: int  # ordinal among the directives of one turn

    def attr(self, name: str) -> str | None:
        return self.attributes.get(name)

    def to_dict(self) -> dict[str, Any]:
        return {
            "type": "action",
            "kind": self.kind.value,
            "attributes": dict(self.attributes),
            "body": self.body,
            "position": self.position,
        }


# =============================================================================
# Validated actions
# =============================================================================


@dataclass(frozen=True)
class WriteFile:
    kind: ClassVar[ActionKind] = ActionKind.WRITE

    path: str
    content: str

    def describe(self) -> str:
        return f"Write {self.path}"


@dataclass(frozen=True)
class DeleteFile:
    kind: ClassVar[ActionKind] = ActionKind.DELETE

    path: str

    def describe(self) -> str:
        return f"Delete {self.path}"


@dataclass(frozen=True)
class RenameFile:
    kind: ClassVar[ActionKind] = ActionKind.RENAME

    source: str
    destination: str

    def describe(self) -> str:
        return f"Rename {self.source} -> {self.destination}"


@dataclass(frozen=True)
class AddDependency:
    kind: ClassVar[ActionKind] = ActionKind.ADD

    name: str
    version: str

    def describe(self) -> str:
        return f"Add dependency {self.name}@{self.version}"


@dataclass(frozen=True)
class ExecuteStatement:
    kind: ClassVar[ActionKind] = ActionKind.EXECUTE

    statement: str
    description: str | None = None

    def describe(self) -> str:
        if self.description:
            return f"Execute statement: {self.description}"
        first_line = self.statement.strip().splitlines()[0]
        return f"Execute statement: {first_line[:60]}"


Action = Union[WriteFile, DeleteFile, RenameFile, AddDependency, ExecuteStatement]


def action_to_dict(action: Action) -> dict[str, Any]:
    """Convert an action to a JSON-serializable dictionary."""
    data: dict[str, Any] = {"kind": action.kind.value, "description": action.describe()}
    for f in fields(action):
        data[f.name] = getattr(action, f.name)
    return data


def touched_paths(action: Action) -> list[str]:
    """Working-tree paths an action changes (empty for store/manifest-only actions)."""
    if isinstance(action, (WriteFile, DeleteFile)):
        return [action.path]
    if isinstance(action, RenameFile):
        return [action.source, action.destination]
    return []


@dataclass(frozen=True)
class Rejection:
    """A directive dropped by validation, surfaced as a warning."""

    position: int
    node: ActionNode
    reason: str
    code: str  # "validation_rejected" or "path_escape"
    field: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "position": self.position,
            "kind": self.node.kind.value,
            "reason": self.reason,
            "code": self.code,
            "field": self.field,
        }


# =============================================================================
# Batch and approval state
# =============================================================================


class ApprovalState(Enum):
    """Lifecycle of a single turn."""

    STREAMING = "streaming"
    PENDING_APPROVAL = "pending_approval"
    APPROVED = "approved"
    REJECTED = "rejected"
    APPLIED = "applied"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in (ApprovalState.REJECTED, ApprovalState.APPLIED, ApprovalState.FAILED)


@dataclass
class ActionBatch:
    """Ordered, validated actions produced by one turn."""

    turn_id: str
    sequence: int
    actions: tuple[Action, ...] = ()
    rejections: tuple[Rejection, ...] = ()
    warnings: tuple[ParseAmbiguous, ...] = ()
    _consumed: bool = field(default=False, init=False, repr=False)

    @property
    def is_empty(self) -> bool:
        return not self.actions

    @property
    def consumed(self) -> bool:
        return self._consumed

    def consume(self) -> tuple[Action, ...]:
        """Hand the actions over for execution. Allowed exactly once."""
        if self._consumed:
            raise BatchAlreadyConsumed(self.turn_id, self.sequence)
        self._consumed = True
        return self.actions

    def to_dict(self) -> dict[str, Any]:
        return {
            "turn_id": self.turn_id,
            "sequence": self.sequence,
            "actions": [action_to_dict(a) for a in self.actions],
            "rejections": [r.to_dict() for r in self.rejections],
            "warnings": [w.message for w in self.warnings],
        }


# =============================================================================
# Execution results
# =============================================================================


class OutcomeStatus(Enum):
    APPLIED = "applied"
    FAILED = "failed"
    SKIPPED = "skipped"      # not attempted because an earlier action failed
    CANCELLED = "cancelled"  # not attempted because the turn was cancelled


@dataclass(frozen=True)
class ActionOutcome:
    index: int
    action: Action
    status: OutcomeStatus
    error: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "index": self.index,
            "action": action_to_dict(self.action),
            "status": self.status.value,
            "error": self.error,
        }


@dataclass
class ExecutionReport:
    """Per-action results of one executor pass."""

    outcomes: list[ActionOutcome] = field(default_factory=list)
    store_reference: str | None = None  # ISO timestamp of the last forwarded statement

    @property
    def applied(self) -> list[ActionOutcome]:
        return [o for o in self.outcomes if o.status == OutcomeStatus.APPLIED]

    @property
    def failures(self) -> list[ActionOutcome]:
        return [o for o in self.outcomes if o.status == OutcomeStatus.FAILED]

    @property
    def was_cancelled(self) -> bool:
        return any(o.status == OutcomeStatus.CANCELLED for o in self.outcomes)

    @property
    def files_changed(self) -> list[str]:
        changed: list[str] = []
        for outcome in self.applied:
            for path in touched_paths(outcome.action):
                if path not in changed:
                    changed.append(path)
        return changed

    def to_dict(self) -> dict[str, Any]:
        return {
            "outcomes": [o.to_dict() for o in self.outcomes],
            "store_reference": self.store_reference,
            "applied": len(self.applied),
            "failed": len(self.failures),
            "cancelled": self.was_cancelled,
        }
