"""Action pipeline - from streamed model text to checkpointed project changes.

1. PARSE - Pull directives out of the text stream as chunks arrive
2. VALIDATE - Reject anything malformed or outside the project root
3. APPROVE - Hold the batch until the user (or auto-approve) says go
4. EXECUTE - Apply actions in order, isolating per-action failures
5. CHECKPOINT - Record the result as a git commit that can be restored
"""

from __future__ import annotations

# Data model
from turnforge.pipeline.actions import (
    Action,
    ActionBatch,
    ActionKind,
    ActionNode,
    ActionOutcome,
    AddDependency,
    ApprovalState,
    DeleteFile,
    ExecuteStatement,
    ExecutionReport,
    OutcomeStatus,
    Rejection,
    RenameFile,
    TextSpan,
    WriteFile,
)

# Parse + validate
from turnforge.pipeline.parser import TagStreamParser, parse_text
from turnforge.pipeline.validator import ActionValidator

# Execute
from turnforge.pipeline.storage import (
    CommandInstaller,
    ProjectStorage,
    SqliteStatementStore,
    StorageError,
    WorkspaceStorage,
)
from turnforge.pipeline.executor import ActionExecutor

# Checkpoints
from turnforge.pipeline.checkpoints import Checkpoint, GitVersionManager, VersionManager

# Approval + session
from turnforge.pipeline.gate import ApprovalGate
from turnforge.pipeline.diff_utils import DiffPreview, preview_actions
from turnforge.pipeline.session import (
    StreamSessionController,
    TurnRegistry,
    build_controller,
    get_turn_registry,
)

__all__ = [
    "Action",
    "ActionBatch",
    "ActionExecutor",
    "ActionKind",
    "ActionNode",
    "ActionOutcome",
    "ActionValidator",
    "AddDependency",
    "ApprovalGate",
    "ApprovalState",
    "Checkpoint",
    "CommandInstaller",
    "DeleteFile",
    "DiffPreview",
    "ExecuteStatement",
    "ExecutionReport",
    "GitVersionManager",
    "OutcomeStatus",
    "ProjectStorage",
    "Rejection",
    "RenameFile",
    "SqliteStatementStore",
    "StorageError",
    "StreamSessionController",
    "TagStreamParser",
    "TextSpan",
    "TurnRegistry",
    "VersionManager",
    "WorkspaceStorage",
    "WriteFile",
    "build_controller",
    "get_turn_registry",
    "parse_text",
    "preview_actions",
]
