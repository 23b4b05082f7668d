"""Validation of parsed directives before they can reach the working tree.

Checks run in a fixed order: allow-list, required attributes, path
containment, dependency identifiers, statement presence. A rejected
directive is dropped from its batch and reported; it never blocks the rest
of the turn.
"""

from __future__ import annotations

import logging
from collections.abc import Iterable
from pathlib import Path

from turnforge.errors import PathEscape, ValidationRejected
from turnforge.pipeline.actions import (
    Action,
    ActionKind,
    ActionNode,
    AddDependency,
    DeleteFile,
    ExecuteStatement,
    Rejection,
    RenameFile,
    WriteFile,
)
from turnforge.security import (
    AuditEventType,
    SecurityAuditor,
    get_auditor,
    resolve_project_path,
    validate_package_name,
    validate_version_range,
)

logger = logging.getLogger(__name__)

DEFAULT_DEPENDENCY_VERSION = "latest"

# Attributes that must be present and non-empty, per kind.
REQUIRED_ATTRIBUTES: dict[ActionKind, tuple[str, ...]] = {
    ActionKind.WRITE: ("path",),
    ActionKind.DELETE: ("path",),
    ActionKind.RENAME: ("from", "to"),
    ActionKind.ADD: ("name",),
    ActionKind.EXECUTE: (),
}


class ActionValidator:
    """Turns ActionNodes into typed actions, or rejects them."""

    def __init__(
        self,
        project_root: Path,
        *,
        allowed_kinds: Iterable[ActionKind | str] | None = None,
        auditor: SecurityAuditor | None = None,
    ) -> None:
        self.project_root = Path(project_root)
        if allowed_kinds is None:
            self.allowed_kinds = frozenset(ActionKind)
        else:
            self.allowed_kinds = frozenset(
                k if isinstance(k, ActionKind) else ActionKind(k) for k in allowed_kinds
            )
        self._auditor = auditor or get_auditor()

    def validate(self, node: ActionNode) -> Action:
        """Validate one directive.

        Raises:
            PathEscape: If a path argument leaves the project root
            ValidationRejected: For any other problem
        """
        if node.kind not in self.allowed_kinds:
            raise ValidationRejected(f"Action kind '{node.kind.value}' is not allowed")

        for name in REQUIRED_ATTRIBUTES[node.kind]:
            value = node.attr(name)
            if value is None or not value.strip():
                raise ValidationRejected(
                    f"<{node.kind.value}> requires a non-empty '{name}' attribute",
                    field=name,
                )

        if node.kind is ActionKind.WRITE:
            return WriteFile(path=self._path(node, "path"), content=node.body)

        if node.kind is ActionKind.DELETE:
            return DeleteFile(path=self._path(node, "path"))

        if node.kind is ActionKind.RENAME:
            source = self._path(node, "from")
            destination = self._path(node, "to")
            if source == destination:
                raise ValidationRejected("Rename source and destination are the same", field="to")
            return RenameFile(source=source, destination=destination)

        if node.kind is ActionKind.ADD:
            name = validate_package_name(node.attr("name").strip())  # type: ignore[union-attr]
            raw_version = node.attr("version")
            version = (
                validate_version_range(raw_version)
                if raw_version is not None
                else DEFAULT_DEPENDENCY_VERSION
            )
            return AddDependency(name=name, version=version)

        if node.kind is ActionKind.EXECUTE:
            # Statement content is the store's business; only emptiness is checked here.
            if not node.body.strip():
                raise ValidationRejected("<execute> requires a non-empty statement", field="body")
            description = (node.attr("description") or "").strip() or None
            return ExecuteStatement(statement=node.body, description=description)

        raise ValidationRejected(f"Unsupported action kind: {node.kind.value}")

    def _path(self, node: ActionNode, name: str) -> str:
        return resolve_project_path(self.project_root, node.attr(name) or "", field=name)

    def validate_all(
        self,
        nodes: Iterable[ActionNode],
        *,
        turn_id: str | None = None,
    ) -> tuple[list[Action], list[Rejection]]:
        """Validate directives in order, splitting accepted from rejected."""
        actions: list[Action] = []
        rejections: list[Rejection] = []
        for node in nodes:
            try:
                actions.append(self.validate(node))
            except ValidationRejected as exc:
                rejection = Rejection(
                    position=node.position,
                    node=node,
                    reason=exc.message,
                    code=exc.code,
                    field=exc.field,
                )
                rejections.append(rejection)
                logger.warning(
                    "Rejected <%s> directive #%d: %s", node.kind.value, node.position, exc.message
                )
                self._auditor.log(
                    AuditEventType.PATH_ESCAPE_BLOCKED
                    if isinstance(exc, PathEscape)
                    else AuditEventType.ACTION_REJECTED,
                    {"kind": node.kind.value, "position": node.position, "reason": exc.message},
                    turn_id=turn_id,
                    success=False,
                )
        return actions, rejections
