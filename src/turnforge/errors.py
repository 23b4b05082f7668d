"""Error taxonomy for the Turnforge action pipeline.

Most failures in the pipeline are local: a rejected directive or a failed
action is recorded next to the batch and the rest of the turn carries on.
Only controller preconditions (a busy project, an illegal gate move), revert
calls and device authorization terminal states are raised to the caller.
"""

from __future__ import annotations

from dataclasses import dataclass


class TurnforgeError(Exception):
    """Base class for all Turnforge errors."""


# =============================================================================
# Parsing / Validation
# =============================================================================


@dataclass(frozen=True)
class ParseAmbiguous:
    """An open tag was still unterminated when the stream ended.

    This is a warning, not an exception: the fragment is surfaced as plain
    text and never becomes an action.
    """

    tag: str
    fragment: str

    @property
    def message(self) -> str:
        return f"Unterminated <{self.tag}> tag at end of stream was kept as text"


class ValidationRejected(TurnforgeError):
    """Raised when a directive fails validation."""

    code = "validation_rejected"

    def __init__(self, message: str, field: str | None = None):
        super().__init__(message)
        self.field = field
        self.message = message


class PathEscape(ValidationRejected):
    """Raised when a path argument would leave the project root."""

    code = "path_escape"


# =============================================================================
# Execution / Versioning
# =============================================================================


class ExecutionFailed(TurnforgeError):
    """A single action in a batch failed to apply."""

    def __init__(self, action_index: int, cause: BaseException | str):
        self.action_index = action_index
        self.cause = cause
        super().__init__(f"Action {action_index} failed: {cause}")


class VersionControlError(TurnforgeError):
    """Raised when the git substrate refuses an operation."""


class CheckpointNotFound(TurnforgeError):
    """Raised when reverting to a checkpoint id that does not exist."""

    def __init__(self, checkpoint_id: str):
        super().__init__(f"Checkpoint not found: {checkpoint_id}")
        self.checkpoint_id = checkpoint_id


# =============================================================================
# Turn lifecycle
# =============================================================================


class Busy(TurnforgeError):
    """Raised by start() while another turn on the same project is unresolved."""

    def __init__(self, project: str, active_turn: str | None = None):
        detail = f" (active turn {active_turn})" if active_turn else ""
        super().__init__(f"Project {project} already has an unresolved turn{detail}")
        self.project = project
        self.active_turn = active_turn


class InvalidTransition(TurnforgeError):
    """Raised when an approval state change is not allowed."""

    def __init__(self, current: str, target: str):
        super().__init__(f"Cannot move from {current} to {target}")
        self.current = current
        self.target = target


# =============================================================================
# Device authorization
# =============================================================================


class DeviceAuthError(TurnforgeError):
    """Base class for device authorization terminal failures."""


class AuthorizationDenied(DeviceAuthError):
    """The user refused the authorization request."""


class AuthorizationExpired(DeviceAuthError):
    """The device code expired before the user finished logging in."""


class AuthorizationError(DeviceAuthError):
    """The authorization server returned an unexpected error."""


class AuthorizationCancelled(DeviceAuthError):
    """The caller cancelled the flow while it was waiting."""


class BatchAlreadyConsumed(TurnforgeError):
    """Raised when an action batch is handed to the gate a second time."""

    def __init__(self, turn_id: str, sequence: int):
        super().__init__(f"Batch {sequence} of turn {turn_id} was already consumed")
        self.turn_id = turn_id
        self.sequence = sequence
