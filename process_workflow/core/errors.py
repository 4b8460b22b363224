"""
Error taxonomy for graph authoring and node semantics.

Structural errors are raised synchronously by the mutation that would have
broken an invariant; the graph is left untouched when they are raised.
"""

from typing import TYPE_CHECKING, Optional

if TYPE_CHECKING:
    from process_workflow.core.validator import ValidationResult


class WorkflowGraphError(Exception):
    """Base class for every error raised by the graph model."""

    code = "WORKFLOW_GRAPH_ERROR"

    def __init__(self, message: str, node_id: Optional[str] = None):
        self.message = message
        self.node_id = node_id
        super().__init__(message)


class NotFoundError(WorkflowGraphError):
    """A node, edge, branch or workflow id is unknown."""

    code = "NOT_FOUND"

    def __init__(self, entity: str, entity_id: str):
        self.entity = entity
        self.entity_id = entity_id
        super().__init__(f"{entity.capitalize()} not found: {entity_id}")


class ProtectedNodeError(WorkflowGraphError):
    code = "PROTECTED_NODE"


class NotAddableError(WorkflowGraphError):
    code = "NOT_ADDABLE"


class InvalidKindError(WorkflowGraphError):
    code = "INVALID_KIND"


class ConfigSchemaMismatchError(WorkflowGraphError):
    """A configuration does not match the schema of the node's kind."""

    code = "CONFIG_SCHEMA_MISMATCH"

    def __init__(self, message: str, node_id: Optional[str] = None, errors: Optional[list] = None):
        self.errors = errors or []
        super().__init__(message, node_id)


class DanglingReferenceError(WorkflowGraphError):
    code = "DANGLING_REFERENCE"


class DuplicatePortError(WorkflowGraphError):
    code = "DUPLICATE_PORT"


class InvalidPortError(WorkflowGraphError):
    code = "INVALID_PORT"


class MinimumBranchesError(WorkflowGraphError):
    code = "MINIMUM_BRANCHES"


class GraphNotEditableError(WorkflowGraphError):
    """Raised when mutating a graph that is no longer a draft."""

    code = "GRAPH_NOT_EDITABLE"


class PublishError(WorkflowGraphError):
    """Publish-time structural failure. The draft is left intact."""

    code = "PUBLISH_FAILED"

    def __init__(self, message: str, result: "ValidationResult"):
        self.result = result
        super().__init__(message)


class UnreachableEndError(PublishError):
    code = "UNREACHABLE_END"


class MultipleStartsError(PublishError):
    code = "MULTIPLE_STARTS"


class GraphValidationFailed(PublishError):
    code = "GRAPH_INVALID"


class TriggerNotAllowedError(WorkflowGraphError):
    """An actor tried to start a manual validation it is not allowed to start."""

    code = "TRIGGER_NOT_ALLOWED"
