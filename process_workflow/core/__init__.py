"""Core domain models and business logic."""

from process_workflow.core.errors import (
    ConfigSchemaMismatchError,
    DanglingReferenceError,
    DuplicatePortError,
    GraphNotEditableError,
    GraphValidationFailed,
    InvalidKindError,
    InvalidPortError,
    MinimumBranchesError,
    MultipleStartsError,
    NotAddableError,
    NotFoundError,
    ProtectedNodeError,
    PublishError,
    TriggerNotAllowedError,
    UnreachableEndError,
    WorkflowGraphError,
)
from process_workflow.core.graph import WorkflowGraphStore
from process_workflow.core.models import (
    Edge,
    ExecutionContext,
    Node,
    NodeKind,
    ReferenceData,
    WorkflowGraph,
    WorkflowStatus,
)
from process_workflow.core.state_machine import (
    JoinState,
    JoinStateMachine,
    ValidationState,
    ValidationStateMachine,
    WorkflowStatusMachine,
)
from process_workflow.core.validator import GraphValidator, ValidationResult

__all__ = [
    "Edge",
    "ExecutionContext",
    "Node",
    "NodeKind",
    "ReferenceData",
    "WorkflowGraph",
    "WorkflowStatus",
    "WorkflowGraphStore",
    "GraphValidator",
    "ValidationResult",
    "JoinState",
    "JoinStateMachine",
    "ValidationState",
    "ValidationStateMachine",
    "WorkflowStatusMachine",
    "WorkflowGraphError",
    "NotFoundError",
    "ProtectedNodeError",
    "NotAddableError",
    "InvalidKindError",
    "ConfigSchemaMismatchError",
    "DanglingReferenceError",
    "DuplicatePortError",
    "InvalidPortError",
    "MinimumBranchesError",
    "GraphNotEditableError",
    "PublishError",
    "UnreachableEndError",
    "MultipleStartsError",
    "GraphValidationFailed",
    "TriggerNotAllowedError",
]
