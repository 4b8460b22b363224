"""
Execution semantics of the node kinds.

The runtime that walks a published graph is an external collaborator. This
module gives it an executable contract: condition evaluation, fork branch
activation, join synchronization, approval gates, and the rules behind task,
assignment, notification, status change, variable, sub-process and datalake
nodes. Nothing here dispatches work or delivers messages.
"""

import logging
import math
import re
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, Optional

from process_workflow.core import catalog
from process_workflow.core.errors import TriggerNotAllowedError
from process_workflow.core.models import (
    ApprovalMode,
    AssignmentNodeConfig,
    AssignmentType,
    BranchMode,
    ConditionNodeConfig,
    ConditionOperator,
    DatalakeSyncNodeConfig,
    Edge,
    ExecutionContext,
    ForkNodeConfig,
    JoinNodeConfig,
    JoinTimeoutAction,
    JoinType,
    NodeKind,
    NotificationChannel,
    NotificationNodeConfig,
    SetVariableNodeConfig,
    StatusChangeNodeConfig,
    StatusTriggerEvent,
    SubProcessNodeConfig,
    TaskNodeConfig,
    TaskOutcome,
    TaskStatus,
    TriggerAllowedBy,
    TriggerMode,
    ValidationNodeConfig,
    ValidationTimeoutAction,
    VariableMode,
    VariableType,
    WorkflowGraph,
)
from process_workflow.core.state_machine import (
    JoinState,
    JoinStateMachine,
    StateTransition,
    ValidationState,
    ValidationStateMachine,
)
from process_workflow.template.resolver import TemplateContext, VariableResolver

logger = logging.getLogger(__name__)

CUSTOM_FIELD_PREFIX = "custom:"


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


# ==================== Routing ====================

def next_edges(graph: WorkflowGraph, node_id: str, port: str) -> list[Edge]:
    """Edges leaving `node_id` through `port`."""
    node = graph.get_node(node_id)
    if node is None:
        return []
    ports = catalog.output_ports(node)
    edges = []
    for edge in graph.outgoing_edges(node_id):
        handle = edge.source_handle
        if handle is None and len(ports) == 1:
            handle = ports[0]
        if handle == port:
            edges.append(edge)
    return edges


# ==================== Condition ====================

def lookup_field(field_name: str, context: ExecutionContext) -> Any:
    """
    Read a field from the execution context.

    `custom:<name>` reads a custom field only. Plain names try custom fields,
    then the built-in context fields, then workflow variables.
    """
    if field_name.startswith(CUSTOM_FIELD_PREFIX):
        return context.custom_fields.get(field_name[len(CUSTOM_FIELD_PREFIX):])
    if context.custom_fields.get(field_name) is not None:
        return context.custom_fields[field_name]
    if field_name in ExecutionContext.model_fields:
        value = getattr(context, field_name)
        if value is not None:
            return value
    return context.variables.get(field_name)


def _as_number(value: Any) -> Optional[float]:
    if isinstance(value, bool) or value is None:
        return None
    if isinstance(value, (int, float)):
        return float(value)
    try:
        return float(str(value).strip())
    except ValueError:
        return None


def _as_text(value: Any) -> str:
    if value is None:
        return ""
    if isinstance(value, bool):
        return "true" if value else "false"
    return str(value)


def _is_empty(value: Any) -> bool:
    if value is None:
        return True
    if isinstance(value, str):
        return not value.strip()
    if isinstance(value, (list, tuple, set, dict)):
        return len(value) == 0
    return False


def compare(actual: Any, operator: ConditionOperator, expected: Any) -> bool:
    """
    Apply a condition operator.

    Comparison is numeric when both sides coerce to numbers, otherwise textual.
    """
    if operator == ConditionOperator.IS_EMPTY:
        return _is_empty(actual)
    if operator == ConditionOperator.IS_NOT_EMPTY:
        return not _is_empty(actual)

    if operator == ConditionOperator.CONTAINS:
        if isinstance(actual, (list, tuple, set)):
            return any(_as_text(item) == _as_text(expected) for item in actual)
        return _as_text(expected) in _as_text(actual)

    left, right = _as_number(actual), _as_number(expected)
    numeric = left is not None and right is not None

    if operator == ConditionOperator.EQUALS:
        return left == right if numeric else _as_text(actual) == _as_text(expected)
    if operator == ConditionOperator.NOT_EQUALS:
        return left != right if numeric else _as_text(actual) != _as_text(expected)

    if actual is None:
        return False
    if operator == ConditionOperator.GREATER_THAN:
        return left > right if numeric else _as_text(actual) > _as_text(expected)
    if operator == ConditionOperator.LESS_THAN:
        return left < right if numeric else _as_text(actual) < _as_text(expected)
    return False


class ConditionEvaluator:
    """Evaluates a condition node against an execution context."""

    YES_PORT = "yes"
    NO_PORT = "no"

    def __init__(self, context: ExecutionContext):
        self.context = context

    def evaluate(self, config: ConditionNodeConfig) -> bool:
        actual = lookup_field(config.field, self.context)
        if actual is None:
            logger.warning(
                f"Condition field '{config.field}' is missing from the context; "
                "evaluating it as empty"
            )
        return compare(actual, config.operator, config.value)

    def route(self, config: ConditionNodeConfig) -> str:
        """Return the single port that fires."""
        return self.YES_PORT if self.evaluate(config) else self.NO_PORT


# ==================== Fork ====================

SIMPLE_CONDITION_PATTERN = re.compile(r"^\s*([\w:.\-]+)\s*(==|!=|>|<)\s*(.+?)\s*$")

SIMPLE_OPERATORS = {
    "==": ConditionOperator.EQUALS,
    "!=": ConditionOperator.NOT_EQUALS,
    ">": ConditionOperator.GREATER_THAN,
    "<": ConditionOperator.LESS_THAN,
}


def evaluate_simple_condition(expression: Optional[str], context: ExecutionContext) -> bool:
    """
    Evaluate a branch condition of the form `field ==|!=|>|< value`.

    An empty or unparseable expression keeps the branch active.
    """
    if not expression or not expression.strip():
        return True
    match = SIMPLE_CONDITION_PATTERN.match(expression)
    if not match:
        logger.debug(f"Unparseable branch condition {expression!r}; branch stays active")
        return True
    field_name, symbol, raw_value = match.groups()
    value = raw_value.strip("'\"")
    return compare(lookup_field(field_name, context), SIMPLE_OPERATORS[symbol], value)


@dataclass
class BranchActivation:
    """One parallel branch started by a fork."""

    port: str
    branch_id: str
    name: str
    sub_process_id: Optional[str] = None


class ForkBranchResolver:
    """Determines which branches a fork starts. Branches carry no ordering."""

    def __init__(self, context: ExecutionContext):
        self.context = context

    def resolve(self, config: ForkNodeConfig) -> list[BranchActivation]:
        if config.branch_mode == BranchMode.STATIC:
            return [
                BranchActivation(port=branch.id, branch_id=branch.id, name=branch.name)
                for branch in config.branches
                if evaluate_simple_condition(branch.condition, self.context)
            ]

        selected = list(dict.fromkeys(self.context.selected_sub_processes))
        if config.sub_process_ids:
            allowed = set(config.sub_process_ids)
            selected = [sp_id for sp_id in selected if sp_id in allowed]

        activations = []
        for index, sp_id in enumerate(selected):
            name = config.branch_labels[index] if index < len(config.branch_labels) else sp_id
            port = f"sp_{sp_id}" if config.sub_process_ids else catalog.DEFAULT_PORT
            activations.append(BranchActivation(
                port=port,
                branch_id=f"sp_{sp_id}",
                name=name,
                sub_process_id=sp_id,
            ))
        return activations


# ==================== Join ====================

def join_inputs(graph: WorkflowGraph, join_node_id: str) -> list[str]:
    """
    Input handles of a join, or source ids when unnamed.

    Used for joins that merge paths not started by a fork. Joins closing a
    fork wait on `join_expected_branches` instead.
    """
    return [
        edge.target_handle or edge.source_node_id
        for edge in graph.incoming_edges(join_node_id)
    ]


def join_expected_branches(
    graph: WorkflowGraph,
    join_node_id: str,
    fork_node_id: str,
    activations: list[BranchActivation],
) -> list[str]:
    """
    Branch ids of a fork's activations that lead to a join.

    Each activation is traced from the fork port it leaves through. Branches
    the fork did not start, or that end without reaching the join, are not
    waited for. Completions are then reported under the same branch ids,
    whichever join input the branch was wired to.

    Args:
        graph: Published graph being executed
        join_node_id: Join closing the fork
        fork_node_id: Fork that produced `activations`
        activations: Result of ForkBranchResolver.resolve for that fork

    Returns:
        Branch ids in activation order, without duplicates
    """
    expected = []
    for activation in activations:
        starts = [edge.target_node_id for edge in next_edges(graph, fork_node_id, activation.port)]
        if _leads_to(graph, starts, join_node_id, fork_node_id):
            expected.append(activation.branch_id)
        else:
            logger.debug(
                f"Branch {activation.branch_id} of fork {fork_node_id} "
                f"does not reach join {join_node_id}"
            )
    return list(dict.fromkeys(expected))


def _leads_to(graph: WorkflowGraph, starts: list[str], target_id: str, fork_node_id: str) -> bool:
    seen = {fork_node_id}
    queue = deque(starts)
    while queue:
        node_id = queue.popleft()
        if node_id == target_id:
            return True
        if node_id in seen:
            continue
        seen.add(node_id)
        queue.extend(edge.target_node_id for edge in graph.outgoing_edges(node_id))
    return False


class JoinSynchronizer:
    """
    Synchronization barrier of a join node.

    Waiting(required, received) -> Fired | Failed. Completions are
    idempotent and anything arriving after the barrier settled is ignored.
    """

    def __init__(
        self,
        config: JoinNodeConfig,
        expected_branches: list[str],
        node_id: Optional[str] = None,
    ):
        self.config = config
        self.node_id = node_id
        self.expected_branches = list(dict.fromkeys(expected_branches))
        self.received: set[str] = set()
        self.notifications: list[str] = []
        self.started_at: Optional[datetime] = None
        self._machine = JoinStateMachine()

    @property
    def state(self) -> JoinState:
        return self._machine.state

    @property
    def history(self) -> list[StateTransition]:
        return self._machine.history

    @property
    def required_count(self) -> int:
        """Completions needed before the barrier can fire."""
        if self.config.join_type == JoinType.OR:
            return 1
        if self.config.join_type == JoinType.N_OF_M:
            return self.config.required_count or 1
        return max(len(self.expected_branches), 1)

    def start(self, now: Optional[datetime] = None) -> None:
        if self.started_at is None:
            self.started_at = now or _utcnow()

    def deadline(self) -> Optional[datetime]:
        if self.config.timeout_hours is None or self.started_at is None:
            return None
        return self.started_at + timedelta(hours=self.config.timeout_hours)

    def complete(self, branch_id: str, now: Optional[datetime] = None) -> bool:
        """
        Record a branch completion.

        Returns:
            True only for the completion that fires the join
        """
        self.start(now)
        if self._machine.is_terminal:
            logger.debug(f"Join {self.node_id}: ignoring {branch_id} after {self.state.value}")
            return False
        if self.expected_branches and branch_id not in self.expected_branches:
            logger.warning(f"Join {self.node_id}: unexpected branch {branch_id}")
            return False
        if branch_id in self.received:
            return False

        self.received.add(branch_id)
        if not self._should_fire():
            return False

        self._machine.transition(
            JoinState.FIRED,
            reason=f"{self.config.join_type.value} satisfied",
            triggered_by=branch_id,
            metadata={"received": sorted(self.received)},
        )
        logger.info(f"Join {self.node_id} fired after {len(self.received)} completion(s)")
        return True

    def _should_fire(self) -> bool:
        if not set(self.config.required_branch_ids).issubset(self.received):
            return False
        if self.config.join_type == JoinType.AND and self.expected_branches:
            return set(self.expected_branches).issubset(self.received)
        return len(self.received) >= self.required_count

    def on_timeout(self) -> JoinState:
        """Apply the configured timeout action."""
        if self._machine.is_terminal:
            return self.state

        action = self.config.on_timeout_action
        logger.info(f"Join {self.node_id} timed out; applying {action.value}")
        if action == JoinTimeoutAction.CONTINUE:
            self._machine.transition(JoinState.FIRED, reason="timeout", triggered_by="timeout")
        elif action == JoinTimeoutAction.FAIL:
            self._machine.transition(JoinState.FAILED, reason="timeout", triggered_by="timeout")
        else:
            self.notifications.append(
                f"Join {self.node_id} still waiting: {len(self.received)}/"
                f"{self.required_count} branch(es) completed"
            )
        return self.state


# ==================== Validation ====================

@dataclass
class ApprovalDecision:
    approver_id: str
    approved: bool
    comment: Optional[str] = None
    decided_at: datetime = field(default_factory=_utcnow)


class ValidationGate:
    """
    Approval gate of a validation node.

    In manual trigger mode entering the node leaves the gate INERT until an
    allowed actor triggers it. `bypass_manual` is set for the node entered
    through a previous gate's `auto_trigger_next`.
    """

    def __init__(
        self,
        config: ValidationNodeConfig,
        context: ExecutionContext,
        approvers: Optional[list[str]] = None,
        node_id: Optional[str] = None,
        bypass_manual: bool = False,
    ):
        self.config = config
        self.context = context
        self.approvers = list(dict.fromkeys(approvers or []))
        self.node_id = node_id
        self.bypass_manual = bypass_manual
        self.decisions: dict[str, ApprovalDecision] = {}
        self.notifications: list[str] = []
        self.triggered_at: Optional[datetime] = None
        self._machine = ValidationStateMachine()

    @property
    def state(self) -> ValidationState:
        return self._machine.state

    @property
    def history(self) -> list[StateTransition]:
        return self._machine.history

    @property
    def requires_manual_trigger(self) -> bool:
        return self.config.trigger_mode == TriggerMode.MANUAL and not self.bypass_manual

    # ---- Triggering ----

    def enter(self, now: Optional[datetime] = None) -> ValidationState:
        """Called when the runtime reaches the node."""
        if self.state == ValidationState.INERT and not self.requires_manual_trigger:
            self._open(now, triggered_by="system")
        return self.state

    def can_trigger(self, actor_id: Optional[str]) -> bool:
        if not actor_id:
            return False
        allowed_by = self.config.trigger_allowed_by
        if allowed_by == TriggerAllowedBy.TASK_OWNER:
            return actor_id == self.context.task_owner_id
        if allowed_by == TriggerAllowedBy.REQUESTER:
            return actor_id == self.context.requester_id
        if allowed_by == TriggerAllowedBy.SPECIFIC_USER:
            return actor_id == self.config.trigger_user_id
        return False

    def trigger(self, actor_id: str, now: Optional[datetime] = None) -> ValidationState:
        """
        Start a manual gate.

        Raises:
            TriggerNotAllowedError: The actor does not satisfy trigger_allowed_by
        """
        if self.state != ValidationState.INERT:
            return self.state
        if not self.can_trigger(actor_id):
            raise TriggerNotAllowedError(
                f"User '{actor_id}' is not allowed to trigger this validation",
                node_id=self.node_id,
            )
        self._open(now, triggered_by=actor_id)
        return self.state

    def _open(self, now: Optional[datetime], triggered_by: str) -> None:
        self.triggered_at = now or _utcnow()
        self._machine.transition(ValidationState.PENDING, reason="opened", triggered_by=triggered_by)

    @property
    def due_at(self) -> Optional[datetime]:
        if self.triggered_at is None or self.config.sla_hours is None:
            return None
        return self.triggered_at + timedelta(hours=self.config.sla_hours)

    @property
    def reminder_at(self) -> Optional[datetime]:
        if self.triggered_at is None or self.config.reminder_hours is None:
            return None
        return self.triggered_at + timedelta(hours=self.config.reminder_hours)

    # ---- Decisions ----

    def delegate(self, approver_id: str, delegate_id: str) -> None:
        if not self.config.allow_delegation:
            raise ValueError("Delegation is not allowed on this validation")
        if approver_id not in self.approvers:
            raise ValueError(f"'{approver_id}' is not an approver")
        self.approvers[self.approvers.index(approver_id)] = delegate_id

    def approve(self, approver_id: str, comment: Optional[str] = None) -> ValidationState:
        return self._decide(approver_id, True, comment)

    def reject(self, approver_id: str, comment: Optional[str] = None) -> ValidationState:
        return self._decide(approver_id, False, comment)

    def _decide(self, approver_id: str, approved: bool, comment: Optional[str]) -> ValidationState:
        if not self._machine.is_decidable:
            raise ValueError(f"Validation is {self.state.value}; no decision can be recorded")
        if self.approvers and approver_id not in self.approvers:
            raise ValueError(f"'{approver_id}' is not an approver of this validation")
        if approver_id in self.decisions:
            return self.state

        self.decisions[approver_id] = ApprovalDecision(approver_id, approved, comment)
        outcome = self._outcome()
        if outcome is not None:
            self._machine.transition(outcome, reason=self.config.approval_mode.value, triggered_by=approver_id)
        return self.state

    def _outcome(self) -> Optional[ValidationState]:
        approvals = sum(1 for d in self.decisions.values() if d.approved)
        rejections = len(self.decisions) - approvals
        mode = self.config.approval_mode

        if mode == ApprovalMode.SINGLE:
            return ValidationState.APPROVED if approvals else ValidationState.REJECTED

        if mode == ApprovalMode.ALL:
            if rejections:
                return ValidationState.REJECTED
            if not self.approvers or set(self.approvers).issubset(self.decisions):
                return ValidationState.APPROVED
            return None

        quorum = self.config.quorum_count or 1
        if approvals >= quorum:
            return ValidationState.APPROVED
        if self.approvers and set(self.approvers).issubset(self.decisions):
            return ValidationState.REJECTED
        return None

    # ---- SLA ----

    def is_overdue(self, now: Optional[datetime] = None) -> bool:
        due = self.due_at
        return due is not None and (now or _utcnow()) >= due

    def on_sla_breach(self) -> ValidationState:
        """
        Apply on_timeout_action once the SLA has elapsed.

        With `escalate`, the first breach moves the gate to ESCALATED and a
        breach while already escalated expires it.
        """
        if not self._machine.is_decidable:
            return self.state

        action = self.config.on_timeout_action
        logger.info(
            f"Validation {self.node_id} breached its SLA; "
            f"applying {action.value if action else 'expire'}"
        )
        if action == ValidationTimeoutAction.AUTO_APPROVE:
            self._machine.transition(ValidationState.APPROVED, reason="sla", triggered_by="timeout")
        elif action == ValidationTimeoutAction.AUTO_REJECT:
            self._machine.transition(ValidationState.REJECTED, reason="sla", triggered_by="timeout")
        elif action == ValidationTimeoutAction.ESCALATE:
            if self.state == ValidationState.PENDING:
                self._machine.transition(ValidationState.ESCALATED, reason="sla", triggered_by="timeout")
            else:
                self._machine.transition(ValidationState.EXPIRED, reason="sla escalated", triggered_by="timeout")
        elif action == ValidationTimeoutAction.NOTIFY:
            self.notifications.append(f"Validation {self.node_id} is overdue")
        else:
            self._machine.transition(ValidationState.EXPIRED, reason="sla", triggered_by="timeout")
        return self.state

    def outcome_port(self) -> Optional[str]:
        if self.state == ValidationState.APPROVED:
            return "approved"
        if self.state in (ValidationState.REJECTED, ValidationState.EXPIRED):
            return "rejected"
        return None


def next_validation_target(graph: WorkflowGraph, node_id: str) -> Optional[str]:
    """
    The validation node whose manual gate is bypassed after `node_id` approves.

    Only the immediate next validation is returned: the bypass does not
    propagate further down the chain.
    """
    node = graph.get_node(node_id)
    if node is None or not isinstance(node.config, ValidationNodeConfig):
        return None
    if not node.config.auto_trigger_next:
        return None
    if node.config.next_validation_node_id:
        target = graph.get_node(node.config.next_validation_node_id)
        return target.id if target and target.kind == NodeKind.VALIDATION else None
    for edge in next_edges(graph, node_id, "approved"):
        target = graph.get_node(edge.target_node_id)
        if target and target.kind == NodeKind.VALIDATION:
            return target.id
    return None


# ==================== Task and assignment ====================

def route_task_outcome(config: TaskNodeConfig, outcome: TaskOutcome) -> str:
    """Map how a task concluded to the output port taken."""
    if config.requires_validation:
        return TaskOutcome.VALIDATION_REQUEST.value
    return TaskOutcome(outcome).value


@dataclass
class AssignmentResult:
    target_type: AssignmentType
    target_id: Optional[str]
    initial_status: TaskStatus


def resolve_assignment(config: AssignmentNodeConfig, context: ExecutionContext) -> AssignmentResult:
    targets = {
        AssignmentType.USER: config.assignee_id,
        AssignmentType.GROUP: config.group_id,
        AssignmentType.DEPARTMENT: config.department_id,
        AssignmentType.MANAGER: context.manager_id,
        AssignmentType.REQUESTER: context.requester_id,
    }
    return AssignmentResult(
        target_type=config.assignment_type,
        target_id=targets[config.assignment_type],
        initial_status=TaskStatus.TODO if config.auto_start else TaskStatus.TO_ASSIGN,
    )


# ==================== Notification ====================

@dataclass
class RenderedNotification:
    channels: list[NotificationChannel]
    recipient_type: str
    recipient: Optional[str]
    subject: str
    body: str
    action_url: Optional[str] = None


def render_notification(
    config: NotificationNodeConfig,
    context: ExecutionContext,
    template_context: Optional[TemplateContext] = None,
) -> RenderedNotification:
    """Resolve the notification templates. Delivery is left to the runtime."""
    resolver = VariableResolver(template_context or TemplateContext(
        custom_fields=dict(context.custom_fields),
        variables=dict(context.variables),
    ))
    recipients = {
        "requester": context.requester_id,
        "assignee": context.assignee_id,
        "user": config.recipient_id,
        "group": config.recipient_id,
        "department": config.recipient_id,
        "email": config.recipient_email,
        "approvers": None,  # Resolved by the runtime from the preceding validation
    }
    return RenderedNotification(
        channels=list(config.channels),
        recipient_type=config.recipient_type,
        recipient=recipients[config.recipient_type],
        subject=resolver.resolve(config.subject_template),
        body=resolver.resolve(config.body_template),
        action_url=resolver.resolve(config.action_url_template) if config.action_url_template else None,
    )


# ==================== Status change ====================

class StatusChangeRule:
    def __init__(self, config: StatusChangeNodeConfig):
        self.config = config

    def matches(self, event: StatusTriggerEvent) -> bool:
        return StatusTriggerEvent(event) == self.config.trigger_event

    def apply(self, event: StatusTriggerEvent, current: TaskStatus) -> TaskStatus:
        """Return the new status when `event` matches the trigger, else `current`."""
        if self.matches(event):
            return self.config.new_status
        return TaskStatus(current)

    def target_task(self, graph: WorkflowGraph, node_id: str) -> Optional[str]:
        """The configured task node, or the nearest upstream task."""
        if self.config.target_task_node_id:
            return self.config.target_task_node_id
        seen = {node_id}
        queue = deque([node_id])
        while queue:
            current = queue.popleft()
            for edge in graph.incoming_edges(current):
                source = graph.get_node(edge.source_node_id)
                if source is None or source.id in seen:
                    continue
                if source.kind == NodeKind.TASK:
                    return source.id
                seen.add(source.id)
                queue.append(source.id)
        return None


# ==================== Variables ====================

TRUE_VALUES = {"true", "1", "yes", "oui", "vrai"}
FALSE_VALUES = {"false", "0", "no", "non", "faux", ""}

AUTONUMBER_PERIODS = {
    "never": None,
    "daily": "%Y-%m-%d",
    "monthly": "%Y-%m",
    "yearly": "%Y",
}


def coerce_variable(value: Any, variable_type: VariableType) -> Any:
    """
    Convert a raw value to the declared variable type.

    Raises:
        ValueError: If the value cannot be converted
    """
    if value is None:
        return None
    if variable_type == VariableType.TEXT:
        return _as_text(value)
    if variable_type == VariableType.BOOLEAN:
        if isinstance(value, bool):
            return value
        text = str(value).strip().lower()
        if text in TRUE_VALUES:
            return True
        if text in FALSE_VALUES:
            return False
        raise ValueError(f"Cannot convert {value!r} to boolean")
    if variable_type == VariableType.INTEGER:
        number = _as_number(value)
        if number is None or not math.isfinite(number) or number != int(number):
            raise ValueError(f"Cannot convert {value!r} to integer")
        return int(number)
    if variable_type == VariableType.DECIMAL:
        number = _as_number(value)
        if number is None or not math.isfinite(number):
            raise ValueError(f"Cannot convert {value!r} to decimal")
        return number
    if variable_type == VariableType.DATETIME:
        if isinstance(value, datetime):
            return value
        return datetime.fromisoformat(str(value))
    return value


class WorkflowVariables:
    """Workflow-scoped variables written by set_variable nodes."""

    def __init__(self, values: Optional[dict[str, Any]] = None):
        self.values: dict[str, Any] = dict(values or {})
        self._accessible: set[str] = set()
        self._counters: dict[tuple[str, str], int] = {}

    def apply(
        self,
        config: SetVariableNodeConfig,
        template_context: Optional[TemplateContext] = None,
        now: Optional[datetime] = None,
    ) -> Any:
        """
        Create or overwrite the variable described by `config`.

        Returns:
            The stored, typed value
        """
        now = now or _utcnow()

        if config.variable_type == VariableType.AUTONUMBER:
            value = self._next_autonumber(config, now)
        elif config.mode == VariableMode.SYSTEM:
            value = now if config.variable_type == VariableType.DATETIME else self._next_autonumber(config, now)
        elif config.variable_type == VariableType.DATETIME and config.datetime_mode == "execution":
            value = now
        elif config.variable_type == VariableType.DATETIME and config.datetime_mode == "fixed":
            value = coerce_variable(config.datetime_value, VariableType.DATETIME)
        elif config.mode == VariableMode.EXPRESSION:
            context = template_context or TemplateContext()
            merged = TemplateContext(
                system=context.system,
                custom_fields=context.custom_fields,
                variables={**context.variables, **self.values},
            )
            raw = VariableResolver(merged).resolve(config.expression)
            try:
                value = coerce_variable(raw, config.variable_type)
            except ValueError as e:
                # Unresolved placeholders must not block execution
                logger.warning(
                    f"Variable '{config.variable_name}': {e}; storing no value"
                )
                value = None
        else:
            value = coerce_variable(config.fixed_value, config.variable_type)

        self.values[config.variable_name] = value
        if config.accessible_to_subprocesses:
            self._accessible.add(config.variable_name)
        else:
            self._accessible.discard(config.variable_name)
        return value

    def _next_autonumber(self, config: SetVariableNodeConfig, now: datetime) -> str:
        fmt = AUTONUMBER_PERIODS[config.autonumber_reset]
        period = now.strftime(fmt) if fmt else ""
        key = (config.variable_name, period)
        self._counters[key] = self._counters.get(key, 0) + 1
        prefix = config.autonumber_prefix or ""
        return f"{prefix}{self._counters[key]:0{config.autonumber_padding}d}"

    def export_for_subprocess(self) -> dict[str, Any]:
        """Variables flagged accessible to sub-processes."""
        return {name: self.values[name] for name in self._accessible if name in self.values}


# ==================== Sub-process and datalake ====================

def should_delegate(config: SubProcessNodeConfig, context: ExecutionContext) -> bool:
    """Whether the runtime should instantiate the configured sub-process."""
    if not config.sub_process_template_id:
        return False
    if config.branch_on_selection:
        return config.sub_process_template_id in context.selected_sub_processes
    return True


def datalake_outcome_port(succeeded: bool) -> str:
    return "success" if succeeded else "error"


def datalake_retry_delays(config: DatalakeSyncNodeConfig) -> list[float]:
    """Backoff delays in seconds before each retry, doubling every attempt."""
    return [config.retry_backoff_seconds * (2 ** attempt) for attempt in range(config.retry_count)]
