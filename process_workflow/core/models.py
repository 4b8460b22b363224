"""
Domain models for the process workflow graph.

All models use Pydantic for validation and serialization. Every node kind has
its own configuration model; the models forbid unknown keys so that a
configuration written for one kind cannot be stored on a node of another kind.
"""

from datetime import datetime, timezone
from enum import Enum
from typing import Any, Literal, Optional, Union
from uuid import uuid4

from pydantic import (
    BaseModel,
    ConfigDict,
    Field,
    SerializeAsAny,
    field_validator,
    model_validator,
)


def _new_id() -> str:
    return str(uuid4())


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


# ==================== Enumerations ====================

class NodeKind(str, Enum):
    """The closed set of workflow step kinds."""

    START = "start"
    END = "end"
    TASK = "task"
    VALIDATION = "validation"
    NOTIFICATION = "notification"
    CONDITION = "condition"
    SUB_PROCESS = "sub_process"
    FORK = "fork"                    # Parallel split
    JOIN = "join"                    # Synchronization barrier
    STATUS_CHANGE = "status_change"
    ASSIGNMENT = "assignment"
    SET_VARIABLE = "set_variable"
    DATALAKE_SYNC = "datalake_sync"


class WorkflowStatus(str, Enum):
    """Lifecycle status of a workflow graph."""

    DRAFT = "draft"
    ACTIVE = "active"
    INACTIVE = "inactive"
    ARCHIVED = "archived"


class TaskStatus(str, Enum):
    """Statuses a task can be moved to by status_change and assignment nodes."""

    TO_ASSIGN = "to_assign"
    TODO = "todo"
    IN_PROGRESS = "in-progress"
    DONE = "done"
    PENDING_VALIDATION = "pending-validation"
    VALIDATED = "validated"
    REFUSED = "refused"
    REVIEW = "review"


class TaskOutcome(str, Enum):
    """How a human task concluded; each value is also a task output port."""

    COMPLETED = "completed"
    IN_PROGRESS = "in_progress"
    VALIDATION_REQUEST = "validation_request"


class NotificationChannel(str, Enum):
    IN_APP = "in_app"
    EMAIL = "email"
    TEAMS = "teams"


class ConditionOperator(str, Enum):
    EQUALS = "equals"
    NOT_EQUALS = "not_equals"
    CONTAINS = "contains"
    GREATER_THAN = "greater_than"
    LESS_THAN = "less_than"
    IS_EMPTY = "is_empty"
    IS_NOT_EMPTY = "is_not_empty"


class BranchMode(str, Enum):
    STATIC = "static"
    DYNAMIC = "dynamic"


class JoinType(str, Enum):
    AND = "and"
    OR = "or"
    N_OF_M = "n_of_m"


class JoinTimeoutAction(str, Enum):
    CONTINUE = "continue"
    FAIL = "fail"
    NOTIFY = "notify"


class ApprovalMode(str, Enum):
    SINGLE = "single"
    ALL = "all"
    QUORUM = "quorum"


class TriggerMode(str, Enum):
    AUTO = "auto"
    MANUAL = "manual"


class TriggerAllowedBy(str, Enum):
    TASK_OWNER = "task_owner"
    REQUESTER = "requester"
    SPECIFIC_USER = "specific_user"


class ValidationTimeoutAction(str, Enum):
    AUTO_APPROVE = "auto_approve"
    AUTO_REJECT = "auto_reject"
    ESCALATE = "escalate"
    NOTIFY = "notify"


class StatusTriggerEvent(str, Enum):
    VALIDATION_APPROVED = "validation_approved"
    VALIDATION_REJECTED = "validation_rejected"
    TASK_COMPLETED = "task_completed"
    MANUAL = "manual"


class AssignmentType(str, Enum):
    USER = "user"
    GROUP = "group"
    DEPARTMENT = "department"
    MANAGER = "manager"
    REQUESTER = "requester"


class VariableType(str, Enum):
    TEXT = "text"
    BOOLEAN = "boolean"
    INTEGER = "integer"
    DECIMAL = "decimal"
    DATETIME = "datetime"
    AUTONUMBER = "autonumber"


class VariableMode(str, Enum):
    FIXED = "fixed"
    EXPRESSION = "expression"
    SYSTEM = "system"


ApproverType = Literal[
    "user", "role", "group", "requester_manager", "target_manager", "department"
]
ResponsibleType = Literal["requester", "assignee", "user", "group", "department"]
RecipientType = Literal[
    "requester", "assignee", "approvers", "user", "group", "department", "email"
]


# ==================== Node configurations ====================

class BaseNodeConfig(BaseModel):
    """Base class for every per-kind configuration."""

    model_config = ConfigDict(extra="forbid")


class StartNodeConfig(BaseNodeConfig):
    trigger: Literal["manual", "on_create", "on_status_change"] = "on_create"


class EndNodeConfig(BaseNodeConfig):
    final_status: Literal["completed", "cancelled"] = "completed"


class TaskNodeConfig(BaseNodeConfig):
    """Human task block, possibly instantiating several task templates."""

    task_title: Optional[str] = Field(default=None, description="Overrides the template title")
    task_template_ids: list[str] = Field(default_factory=list)
    duration_days: Optional[int] = Field(default=1, ge=0)
    duration_overridden: bool = Field(
        default=False,
        description="When set, duration_days is no longer derived from the templates",
    )
    responsible_type: ResponsibleType = "assignee"
    responsible_id: Optional[str] = None
    requires_validation: bool = False
    tags: list[str] = Field(default_factory=list)

    @field_validator("task_template_ids")
    @classmethod
    def validate_template_ids(cls, v: list[str]) -> list[str]:
        if len(v) != len(set(v)):
            raise ValueError("Duplicate task template ids not allowed")
        return v


class ValidationNodeConfig(BaseNodeConfig):
    """Approval step."""

    approver_type: ApproverType = "requester_manager"
    approver_id: Optional[str] = None
    approver_role: Optional[str] = None
    is_mandatory: bool = True
    approval_mode: ApprovalMode = ApprovalMode.SINGLE
    quorum_count: Optional[int] = Field(default=None, ge=1)
    trigger_mode: TriggerMode = TriggerMode.AUTO
    trigger_allowed_by: Optional[TriggerAllowedBy] = None
    trigger_user_id: Optional[str] = None
    sla_hours: Optional[float] = Field(default=None, gt=0)
    reminder_hours: Optional[float] = Field(default=None, gt=0)
    allow_delegation: bool = False
    on_timeout_action: Optional[ValidationTimeoutAction] = None
    auto_trigger_next: bool = False
    next_validation_node_id: Optional[str] = None


class NotificationNodeConfig(BaseNodeConfig):
    channels: list[NotificationChannel] = Field(
        default_factory=lambda: [NotificationChannel.IN_APP], min_length=1
    )
    recipient_type: RecipientType = "requester"
    recipient_id: Optional[str] = None
    recipient_email: Optional[str] = None
    subject_template: str = "Notification: {processus}"
    body_template: str = "Une action est requise concernant {tache}."
    action_url_template: Optional[str] = None

    @field_validator("channels")
    @classmethod
    def validate_channels(cls, v: list[NotificationChannel]) -> list[NotificationChannel]:
        if len(v) != len(set(v)):
            raise ValueError("Duplicate notification channels not allowed")
        return v


class ConditionBranches(BaseModel):
    model_config = ConfigDict(extra="forbid")

    true_label: str = "Oui"
    false_label: str = "Non"


class ConditionNodeConfig(BaseNodeConfig):
    """Binary routing on a context field (`custom:<name>` for custom fields)."""

    field: str = Field(default="priority", min_length=1)
    operator: ConditionOperator = ConditionOperator.EQUALS
    value: Optional[Union[bool, int, float, str]] = None
    branches: ConditionBranches = Field(default_factory=ConditionBranches)


class SubProcessNodeConfig(BaseNodeConfig):
    sub_process_template_id: Optional[str] = None
    sub_process_name: Optional[str] = None
    execute_all_tasks: bool = True
    branch_on_selection: bool = False
    branch_index: Optional[int] = Field(default=None, ge=0)


class ForkBranch(BaseModel):
    """A statically declared parallel branch; its id is the output port name."""

    model_config = ConfigDict(extra="forbid")

    id: str = Field(..., min_length=1, max_length=255)
    name: str
    condition: Optional[str] = Field(default=None, description="e.g. 'priority == high'")


def _default_fork_branches() -> list[ForkBranch]:
    return [
        ForkBranch(id="branch_1", name="Branche 1"),
        ForkBranch(id="branch_2", name="Branche 2"),
    ]


class ForkNodeConfig(BaseNodeConfig):
    branch_mode: BranchMode = BranchMode.STATIC
    branches: list[ForkBranch] = Field(default_factory=_default_fork_branches)
    from_sub_processes: bool = False
    branch_labels: list[str] = Field(default_factory=list)
    sub_process_ids: list[str] = Field(default_factory=list)

    @field_validator("branches")
    @classmethod
    def validate_unique_branch_ids(cls, v: list[ForkBranch]) -> list[ForkBranch]:
        ids = [branch.id for branch in v]
        if len(ids) != len(set(ids)):
            duplicates = [x for x in ids if ids.count(x) > 1]
            raise ValueError(f"Duplicate fork branch ids found: {set(duplicates)}")
        return v


class JoinNodeConfig(BaseNodeConfig):
    join_type: JoinType = JoinType.AND
    required_count: Optional[int] = Field(default=None, ge=1)
    timeout_hours: Optional[float] = Field(default=None, gt=0)
    on_timeout_action: JoinTimeoutAction = JoinTimeoutAction.NOTIFY
    required_branch_ids: list[str] = Field(default_factory=list)


class StatusChangeNodeConfig(BaseNodeConfig):
    trigger_event: StatusTriggerEvent = StatusTriggerEvent.VALIDATION_APPROVED
    new_status: TaskStatus = TaskStatus.VALIDATED
    target_task_node_id: Optional[str] = None


class AssignmentNodeConfig(BaseNodeConfig):
    assignment_type: AssignmentType = AssignmentType.USER
    assignee_id: Optional[str] = None
    group_id: Optional[str] = None
    department_id: Optional[str] = None
    auto_start: bool = True


class SetVariableNodeConfig(BaseNodeConfig):
    """Creates or overwrites a workflow-scoped variable."""

    variable_name: str = ""
    variable_type: VariableType = VariableType.TEXT
    mode: VariableMode = VariableMode.FIXED
    fixed_value: Optional[Union[bool, int, float, str]] = None
    expression: Optional[str] = None
    autonumber_prefix: Optional[str] = None
    autonumber_padding: int = Field(default=4, ge=0, le=20)
    autonumber_reset: Literal["never", "daily", "monthly", "yearly"] = "never"
    datetime_mode: Optional[Literal["execution", "fixed"]] = None
    datetime_value: Optional[str] = None
    accessible_to_subprocesses: bool = False


class DatalakeTableConfig(BaseModel):
    model_config = ConfigDict(extra="forbid")

    table_name: str = Field(..., min_length=1)
    upsert_strategy: Literal["insert_only", "upsert", "overwrite"] = "upsert"
    primary_key: Optional[str] = None


class DatalakeSyncNodeConfig(BaseNodeConfig):
    direction: Literal["app_to_datalake", "datalake_to_app"] = "app_to_datalake"
    mode: Literal["full", "incremental"] = "full"
    tables: list[DatalakeTableConfig] = Field(default_factory=list)
    stop_on_error: bool = True
    retry_count: int = Field(default=0, ge=0, le=10)
    retry_backoff_seconds: float = Field(default=30.0, ge=0)


NodeConfig = Union[
    StartNodeConfig,
    EndNodeConfig,
    TaskNodeConfig,
    ValidationNodeConfig,
    NotificationNodeConfig,
    ConditionNodeConfig,
    SubProcessNodeConfig,
    ForkNodeConfig,
    JoinNodeConfig,
    StatusChangeNodeConfig,
    AssignmentNodeConfig,
    SetVariableNodeConfig,
    DatalakeSyncNodeConfig,
]

# Node kind -> configuration model
CONFIG_MODELS: dict[NodeKind, type[BaseNodeConfig]] = {
    NodeKind.START: StartNodeConfig,
    NodeKind.END: EndNodeConfig,
    NodeKind.TASK: TaskNodeConfig,
    NodeKind.VALIDATION: ValidationNodeConfig,
    NodeKind.NOTIFICATION: NotificationNodeConfig,
    NodeKind.CONDITION: ConditionNodeConfig,
    NodeKind.SUB_PROCESS: SubProcessNodeConfig,
    NodeKind.FORK: ForkNodeConfig,
    NodeKind.JOIN: JoinNodeConfig,
    NodeKind.STATUS_CHANGE: StatusChangeNodeConfig,
    NodeKind.ASSIGNMENT: AssignmentNodeConfig,
    NodeKind.SET_VARIABLE: SetVariableNodeConfig,
    NodeKind.DATALAKE_SYNC: DatalakeSyncNodeConfig,
}


# ==================== Graph ====================

class Position(BaseModel):
    x: float = 0.0
    y: float = 0.0


class CanvasSettings(BaseModel):
    """Editor viewport. Opaque to execution semantics."""

    zoom: float = Field(default=1.0, gt=0)
    x: float = 0.0
    y: float = 0.0


class Node(BaseModel):
    """A single step of the workflow graph."""

    id: str = Field(default_factory=_new_id, min_length=1, max_length=255)
    kind: NodeKind
    label: str = ""
    position: Position = Field(default_factory=Position)
    config: SerializeAsAny[BaseNodeConfig]
    width: Optional[float] = None
    height: Optional[float] = None

    @model_validator(mode="before")
    @classmethod
    def parse_config_for_kind(cls, data: Any) -> Any:
        """Parse a raw config dict with the model belonging to the node kind."""
        if not isinstance(data, dict):
            return data
        kind = data.get("kind")
        config = data.get("config")
        if kind is None or isinstance(config, BaseNodeConfig):
            return data
        config_model = CONFIG_MODELS[NodeKind(kind)]
        return {**data, "config": config_model.model_validate(config or {})}

    @model_validator(mode="after")
    def validate_config_kind(self) -> "Node":
        expected = CONFIG_MODELS[self.kind]
        if type(self.config) is not expected:
            raise ValueError(
                f"Node '{self.id}' of kind '{self.kind.value}' cannot carry "
                f"{type(self.config).__name__}"
            )
        return self


class Edge(BaseModel):
    """A directed connection between two nodes of the same graph."""

    id: str = Field(default_factory=_new_id, min_length=1, max_length=255)
    source_node_id: str = Field(..., min_length=1)
    target_node_id: str = Field(..., min_length=1)
    source_handle: Optional[str] = None
    target_handle: Optional[str] = None
    label: Optional[str] = None
    branch_label: Optional[str] = None
    animated: bool = True


class WorkflowGraph(BaseModel):
    """One version of a workflow: metadata, nodes and edges."""

    id: str = Field(default_factory=_new_id)
    name: str = Field(default="Workflow", min_length=1, max_length=255)
    description: Optional[str] = None
    process_template_id: Optional[str] = None
    sub_process_template_id: Optional[str] = None
    status: WorkflowStatus = WorkflowStatus.DRAFT
    version: int = Field(default=1, ge=1)
    is_default: bool = True
    canvas_settings: CanvasSettings = Field(default_factory=CanvasSettings)
    nodes: list[Node] = Field(default_factory=list)
    edges: list[Edge] = Field(default_factory=list)

    published_at: Optional[datetime] = None
    created_at: datetime = Field(default_factory=_utcnow)
    updated_at: datetime = Field(default_factory=_utcnow)

    @field_validator("nodes")
    @classmethod
    def validate_unique_node_ids(cls, v: list[Node]) -> list[Node]:
        """Ensure all node IDs are unique."""
        ids = [node.id for node in v]
        if len(ids) != len(set(ids)):
            duplicates = [x for x in ids if ids.count(x) > 1]
            raise ValueError(f"Duplicate node IDs found: {set(duplicates)}")
        return v

    @field_validator("edges")
    @classmethod
    def validate_unique_edge_ids(cls, v: list[Edge]) -> list[Edge]:
        ids = [edge.id for edge in v]
        if len(ids) != len(set(ids)):
            duplicates = [x for x in ids if ids.count(x) > 1]
            raise ValueError(f"Duplicate edge IDs found: {set(duplicates)}")
        return v

    @property
    def template_pair(self) -> tuple[Optional[str], Optional[str]]:
        """The (process template, sub-process template) pair this graph belongs to."""
        return (self.process_template_id, self.sub_process_template_id)

    def get_node(self, node_id: str) -> Optional[Node]:
        """Get node by ID."""
        for node in self.nodes:
            if node.id == node_id:
                return node
        return None

    def nodes_of_kind(self, kind: NodeKind) -> list[Node]:
        return [node for node in self.nodes if node.kind == kind]

    def outgoing_edges(self, node_id: str) -> list[Edge]:
        return [edge for edge in self.edges if edge.source_node_id == node_id]

    def incoming_edges(self, node_id: str) -> list[Edge]:
        return [edge for edge in self.edges if edge.target_node_id == node_id]

    def to_persisted(self) -> dict[str, Any]:
        """Serialize to the layout a storage layer round-trips."""
        return {
            "id": self.id,
            "name": self.name,
            "description": self.description,
            "process_template_id": self.process_template_id,
            "sub_process_template_id": self.sub_process_template_id,
            "status": self.status.value,
            "version": self.version,
            "is_default": self.is_default,
            "canvas_settings": self.canvas_settings.model_dump(mode="json"),
            "published_at": self.published_at.isoformat() if self.published_at else None,
            "nodes": [
                {
                    "id": node.id,
                    "kind": node.kind.value,
                    "label": node.label,
                    "position": node.position.model_dump(mode="json"),
                    "config": node.config.model_dump(mode="json"),
                    "width": node.width,
                    "height": node.height,
                }
                for node in self.nodes
            ],
            "edges": [edge.model_dump(mode="json") for edge in self.edges],
        }

    @classmethod
    def from_persisted(cls, payload: dict[str, Any]) -> "WorkflowGraph":
        """Re-hydrate a graph from its persisted layout."""
        return cls.model_validate(payload)


# ==================== Reference data ====================

class TaskTemplate(BaseModel):
    id: str
    title: str
    default_duration_days: Optional[int] = Field(default=None, ge=0)


class SubProcessTemplate(BaseModel):
    id: str
    name: str


class DirectoryEntry(BaseModel):
    """A user, group or department."""

    id: str
    name: str


class CustomFieldDefinition(BaseModel):
    name: str = Field(..., min_length=1)
    label: str


class ReferenceData(BaseModel):
    """Read-only data supplied by collaborators."""

    task_templates: list[TaskTemplate] = Field(default_factory=list)
    sub_process_templates: list[SubProcessTemplate] = Field(default_factory=list)
    users: list[DirectoryEntry] = Field(default_factory=list)
    groups: list[DirectoryEntry] = Field(default_factory=list)
    departments: list[DirectoryEntry] = Field(default_factory=list)
    custom_fields: list[CustomFieldDefinition] = Field(default_factory=list)

    def get_task_template(self, template_id: str) -> Optional[TaskTemplate]:
        for template in self.task_templates:
            if template.id == template_id:
                return template
        return None


# ==================== Runtime context ====================

class ExecutionContext(BaseModel):
    """
    Data of a running process instance, as seen by the execution semantics.

    Populated by the external runtime; the graph model only reads it.
    """

    entity_type: Literal["task", "request"] = "request"
    entity_id: Optional[str] = None
    requester_id: Optional[str] = None
    assignee_id: Optional[str] = None
    task_owner_id: Optional[str] = None
    department_id: Optional[str] = None
    manager_id: Optional[str] = None
    target_manager_id: Optional[str] = None
    priority: Optional[str] = None
    status: Optional[str] = None
    custom_fields: dict[str, Any] = Field(default_factory=dict)
    variables: dict[str, Any] = Field(default_factory=dict)
    selected_sub_processes: list[str] = Field(default_factory=list)
