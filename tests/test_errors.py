from __future__ import annotations

import pytest

from turnforge.errors import (
    AuthorizationDenied,
    Busy,
    CheckpointNotFound,
    DeviceAuthError,
    ExecutionFailed,
    InvalidTransition,
    ParseAmbiguous,
    PathEscape,
    TurnforgeError,
    ValidationRejected,
)


def test_path_escape_is_a_validation_rejection() -> None:
    err = PathEscape("outside root", field="to")

    assert isinstance(err, ValidationRejected)
    assert err.code == "path_escape"
    assert ValidationRejected("x").code == "validation_rejected"
    assert err.field == "to"


def test_busy_mentions_active_turn() -> None:
    err = Busy("/work/app", active_turn="abc123")
    assert "abc123" in str(err)
    assert Busy("/work/app").active_turn is None


def test_execution_failed_keeps_cause() -> None:
    cause = OSError("disk full")
    err = ExecutionFailed(2, cause)
    assert err.cause is cause
    assert str(err) == "Action 2 failed: disk full"


def test_parse_ambiguous_is_not_raised() -> None:
    warning = ParseAmbiguous(tag="write", fragment='<write path="a">')
    assert not isinstance(warning, BaseException)
    assert "<write>" in warning.message


@pytest.mark.parametrize("err", [
    CheckpointNotFound("deadbeef"),
    InvalidTransition("applied", "approved"),
    AuthorizationDenied("no"),
])
def test_everything_derives_from_base(err: TurnforgeError) -> None:
    assert isinstance(err, TurnforgeError)


def test_auth_errors_share_a_base() -> None:
    with pytest.raises(DeviceAuthError):
        raise AuthorizationDenied("User said no")
