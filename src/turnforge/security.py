"""Security module for Turnforge.

Provides centralized security functions for:
- Path containment (model-supplied paths must stay inside the project)
- Dependency identifier validation
- Audit logging of approvals, rejections and applied changes
"""

from __future__ import annotations

import logging
import os
import re
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path, PurePosixPath
from typing import Any

from turnforge.errors import PathEscape, ValidationRejected

logger = logging.getLogger(__name__)


# =============================================================================
# Path Containment
# =============================================================================

# Directories inside a project that directives may never touch.
# Matched against every path segment, case-folded, so nested repos and
# case-insensitive filesystems are covered.
PROTECTED_DIRS = frozenset({".git"})

MAX_PATH_LEN = 1024

_WINDOWS_DRIVE = re.compile(r"^[A-Za-z]:/")


def _resolve(candidate: Path, root: Path) -> Path:
    """Path.resolve(), but a symlink loop on the way raises on every Python version.

    Non-strict resolve() stopped reporting loops in 3.13, so each link segment
    is resolved strictly first. Dangling links are left to the final resolve().
    """
    if candidate.is_relative_to(root):
        probe = root
        for part in candidate.relative_to(root).parts:
            probe = probe / part
            if not probe.is_symlink():
                continue
            try:
                probe.resolve(strict=True)
            except FileNotFoundError:
                continue
    return candidate.resolve()


def resolve_project_path(root: Path, raw_path: str, *, field: str = "path") -> str:
    """Canonicalize a model-supplied path against the project root.

    Args:
        root: The project root directory
        raw_path: The path exactly as it appeared in the directive
        field: Attribute name, reported back on rejection

    Returns:
        The path relative to root, in POSIX form

    Raises:
        PathEscape: If the path could leave the root or touches a protected directory
    """
    if "\x00" in raw_path:
        raise PathEscape("Path contains a NUL byte", field=field)
    if len(raw_path) > MAX_PATH_LEN:
        raise PathEscape(f"Path too long (max {MAX_PATH_LEN} chars)", field=field)

    # Backslashes are treated as separators so Windows-style traversal is caught too.
    normalized = raw_path.strip().replace("\\", "/")
    if ".." in normalized.split("/"):
        raise PathEscape(f"Path traversal is not allowed: {raw_path!r}", field=field)

    root_resolved = root.resolve()
    if _WINDOWS_DRIVE.match(normalized):
        raise PathEscape(f"Absolute path outside the project: {raw_path!r}", field=field)

    candidate = Path(normalized)
    if candidate.is_absolute():
        root_absolute = root.absolute()
        if candidate.is_relative_to(root_absolute):
            candidate = root_resolved / candidate.relative_to(root_absolute)
    else:
        candidate = root_resolved / candidate

    lexical = Path(os.path.normpath(candidate))
    # resolve() follows symlinks, so a link pointing outside the root is caught here.
    try:
        resolved = _resolve(candidate, root_resolved)
    except (OSError, RuntimeError) as e:
        raise PathEscape(f"Path cannot be resolved: {raw_path!r} ({e})", field=field) from e
    for target in (lexical, resolved):
        if target == root_resolved or not target.is_relative_to(root_resolved):
            raise PathEscape(f"Path escapes the project root: {raw_path!r}", field=field)

    relative = PurePosixPath(lexical.relative_to(root_resolved).as_posix())
    if any(part.casefold() in PROTECTED_DIRS for part in relative.parts):
        raise PathEscape(f"Path targets a protected directory: {raw_path!r}", field=field)

    return str(relative)


# =============================================================================
# Dependency identifiers
# =============================================================================

# npm-style package names: optional @scope/, lowercase, no leading dot/underscore.
SAFE_PACKAGE_NAME = re.compile(r"^(?:@[a-z0-9][a-z0-9._-]*/)?[a-z0-9][a-z0-9._-]*$")
SAFE_VERSION_RANGE = re.compile(r"^[0-9A-Za-z.^~<>=*|+\- ]+$")

MAX_PACKAGE_NAME_LEN = 214
MAX_VERSION_LEN = 64


def validate_package_name(name: str) -> str:
    """Validate and return a safe dependency name.

    Raises:
        ValidationRejected: If the name is invalid
    """
    if not name:
        raise ValidationRejected("Package name cannot be empty", field="name")

    if len(name) > MAX_PACKAGE_NAME_LEN:
        raise ValidationRejected(
            f"Package name too long (max {MAX_PACKAGE_NAME_LEN} chars)",
            field="name",
        )

    if not SAFE_PACKAGE_NAME.match(name):
        raise ValidationRejected(
            f"Package name contains invalid characters: {name!r}",
            field="name",
        )

    return name


def validate_version_range(version: str) -> str:
    """Validate and return a dependency version or range.

    Raises:
        ValidationRejected: If the version is invalid
    """
    version = version.strip()
    if not version:
        raise ValidationRejected("Version cannot be empty", field="version")

    if len(version) > MAX_VERSION_LEN:
        raise ValidationRejected(
            f"Version too long (max {MAX_VERSION_LEN} chars)",
            field="version",
        )

    if not SAFE_VERSION_RANGE.match(version):
        raise ValidationRejected(
            f"Version contains invalid characters: {version!r}",
            field="version",
        )

    return version


# =============================================================================
# Audit Logging
# =============================================================================


class AuditEventType(Enum):
    """Types of security-relevant events."""

    # Validation
    ACTION_REJECTED = "action_rejected"
    PATH_ESCAPE_BLOCKED = "path_escape_blocked"

    # Approval
    APPROVAL_REQUESTED = "approval_requested"
    APPROVAL_GRANTED = "approval_granted"
    APPROVAL_DENIED = "approval_denied"
    TURN_CANCELLED = "turn_cancelled"

    # Execution
    ACTION_APPLIED = "action_applied"
    ACTION_FAILED = "action_failed"
    CHECKPOINT_CREATED = "checkpoint_created"
    CHECKPOINT_REVERTED = "checkpoint_reverted"

    # Device authorization
    AUTH_STARTED = "auth_started"
    AUTH_GRANTED = "auth_granted"
    AUTH_DENIED = "auth_denied"
    AUTH_EXPIRED = "auth_expired"
    AUTH_FAILED = "auth_failed"


@dataclass
class AuditEvent:
    """A security audit event."""

    event_type: AuditEventType
    timestamp: datetime
    details: dict[str, Any]
    turn_id: str | None = None
    success: bool = True


class SecurityAuditor:
    """Audit logger for security-relevant events."""

    def __init__(self, max_memory_events: int = 1000) -> None:
        self._events: list[AuditEvent] = []
        self._max_memory_events = max_memory_events

    def log(
        self,
        event_type: AuditEventType,
        details: dict[str, Any],
        turn_id: str | None = None,
        success: bool = True,
    ) -> None:
        """Log a security event."""
        event = AuditEvent(
            event_type=event_type,
            timestamp=datetime.now(timezone.utc),
            details=details,
            turn_id=turn_id,
            success=success,
        )

        logger.info(
            "AUDIT: %s | turn=%s | success=%s | %s",
            event_type.value,
            turn_id,
            success,
            details,
        )

        # Keep in memory (bounded)
        self._events.append(event)
        if len(self._events) > self._max_memory_events:
            self._events = self._events[-self._max_memory_events:]

    def get_recent_events(
        self,
        limit: int = 100,
        event_type: AuditEventType | None = None,
    ) -> list[AuditEvent]:
        """Get recent audit events, optionally filtered by type."""
        events = self._events
        if event_type:
            events = [e for e in events if e.event_type == event_type]
        return events[-limit:]


_auditor = SecurityAuditor()


def get_auditor() -> SecurityAuditor:
    """Get the process-wide security auditor."""
    return _auditor
