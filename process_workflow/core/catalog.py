"""
Node type catalog.

Central tables keyed by node kind: configuration model, default configuration,
output ports and publish-time completeness rules. Editor code and the invariant
checker consult these tables instead of switching on the kind themselves.
"""

import re
from dataclasses import dataclass
from typing import Any, Optional, Union

from pydantic import ValidationError

from process_workflow.core.errors import (
    ConfigSchemaMismatchError,
    InvalidKindError,
    InvalidPortError,
)
from process_workflow.core.models import (
    CONFIG_MODELS,
    ApprovalMode,
    BaseNodeConfig,
    BranchMode,
    DatalakeSyncNodeConfig,
    ForkNodeConfig,
    JoinNodeConfig,
    JoinType,
    Node,
    NodeKind,
    NotificationNodeConfig,
    SetVariableNodeConfig,
    SubProcessNodeConfig,
    TaskNodeConfig,
    TaskOutcome,
    TriggerAllowedBy,
    TriggerMode,
    ValidationNodeConfig,
    VariableMode,
)

DEFAULT_PORT = "out"

VARIABLE_NAME_PATTERN = re.compile(r"^[a-zA-Z_][a-zA-Z0-9_]*$")


@dataclass(frozen=True)
class NodeTypeSpec:
    """Static description of a node kind."""

    kind: NodeKind
    config_model: type[BaseNodeConfig]
    addable: bool = True          # Can the editor add it from the palette
    deletable: bool = True
    accepts_input: bool = True
    single_slot_inputs: bool = False  # Each input handle takes at most one edge


NODE_TYPES: dict[NodeKind, NodeTypeSpec] = {
    kind: NodeTypeSpec(kind=kind, config_model=model)
    for kind, model in CONFIG_MODELS.items()
}
NODE_TYPES[NodeKind.START] = NodeTypeSpec(
    kind=NodeKind.START,
    config_model=CONFIG_MODELS[NodeKind.START],
    addable=False,
    deletable=False,
    accepts_input=False,
)
NODE_TYPES[NodeKind.END] = NodeTypeSpec(
    kind=NodeKind.END,
    config_model=CONFIG_MODELS[NodeKind.END],
    addable=False,
    deletable=False,
)
NODE_TYPES[NodeKind.JOIN] = NodeTypeSpec(
    kind=NodeKind.JOIN,
    config_model=CONFIG_MODELS[NodeKind.JOIN],
    single_slot_inputs=True,
)


def parse_kind(value: Union[str, NodeKind]) -> NodeKind:
    """Convert a raw kind string to NodeKind, rejecting unknown values."""
    if isinstance(value, NodeKind):
        return value
    try:
        return NodeKind(value)
    except ValueError:
        raise InvalidKindError(f"Unknown node kind: {value!r}") from None


def get_spec(kind: Union[str, NodeKind]) -> NodeTypeSpec:
    return NODE_TYPES[parse_kind(kind)]


def default_config(kind: Union[str, NodeKind]) -> BaseNodeConfig:
    """Return a fresh default configuration for a node kind."""
    return get_spec(kind).config_model()


def validate_config(
    kind: Union[str, NodeKind],
    config: Union[BaseNodeConfig, dict[str, Any], None],
    base: Optional[BaseNodeConfig] = None,
    node_id: Optional[str] = None,
) -> BaseNodeConfig:
    """
    Validate a configuration against the schema of `kind`.

    A dict is merged over `base` (or the kind default) before validation, so
    partial updates are accepted. A config model of another kind is rejected.

    Raises:
        ConfigSchemaMismatchError: If the shape does not match the kind
    """
    spec = get_spec(kind)

    if config is None:
        return (base.model_copy(deep=True) if base is not None else spec.config_model())

    if isinstance(config, BaseNodeConfig):
        if type(config) is not spec.config_model:
            raise ConfigSchemaMismatchError(
                f"{type(config).__name__} does not match node kind '{spec.kind.value}'",
                node_id=node_id,
            )
        return config.model_copy(deep=True)

    if not isinstance(config, dict):
        raise ConfigSchemaMismatchError(
            f"Config for kind '{spec.kind.value}' must be an object", node_id=node_id
        )

    current = base if base is not None else spec.config_model()
    merged = {**current.model_dump(), **config}
    try:
        return spec.config_model.model_validate(merged)
    except ValidationError as e:
        raise ConfigSchemaMismatchError(
            f"Invalid config for node kind '{spec.kind.value}': {e.error_count()} error(s)",
            node_id=node_id,
            errors=e.errors(include_url=False, include_context=False),
        ) from e


# ==================== Ports ====================

def output_ports(node: Node) -> list[str]:
    """Get the output ports (source handles) a node currently exposes."""
    kind = node.kind
    config = node.config

    if kind == NodeKind.END:
        return []
    if kind == NodeKind.TASK:
        assert isinstance(config, TaskNodeConfig)
        if config.requires_validation:
            return [TaskOutcome.VALIDATION_REQUEST.value]
        return [outcome.value for outcome in TaskOutcome]
    if kind == NodeKind.VALIDATION:
        return ["approved", "rejected"]
    if kind == NodeKind.CONDITION:
        return ["yes", "no"]
    if kind == NodeKind.FORK:
        assert isinstance(config, ForkNodeConfig)
        return fork_ports(config)
    if kind == NodeKind.DATALAKE_SYNC:
        return ["success", "error"]
    return [DEFAULT_PORT]


def fork_ports(config: ForkNodeConfig) -> list[str]:
    if config.branch_mode == BranchMode.STATIC:
        return [branch.id for branch in config.branches]
    if config.sub_process_ids:
        return [f"sp_{sub_process_id}" for sub_process_id in config.sub_process_ids]
    return [DEFAULT_PORT]


def required_port_groups(node: Node) -> list[tuple[str, ...]]:
    """
    Ports that must lead to an end for the graph to be publishable.

    Each group is satisfied when at least one of its ports has an edge to a
    node from which an end is reachable.
    """
    kind = node.kind
    if kind == NodeKind.END:
        return []
    if kind == NodeKind.TASK:
        return [tuple(output_ports(node))]
    if kind == NodeKind.VALIDATION:
        return [("approved",)]
    if kind == NodeKind.DATALAKE_SYNC:
        return [("success",)]
    return [(port,) for port in output_ports(node)]


def optional_ports(node: Node) -> list[str]:
    """Ports that may legitimately stay unconnected."""
    required = {port for group in required_port_groups(node) if len(group) == 1 for port in group}
    if node.kind == NodeKind.TASK:
        return []
    return [port for port in output_ports(node) if port not in required]


def normalize_source_handle(node: Node, handle: Optional[str]) -> str:
    """
    Resolve the output port an edge leaves from.

    Single-output nodes accept no handle. Multi-output nodes must name one
    of their ports.

    Raises:
        InvalidPortError: If the node has no such output port
    """
    ports = output_ports(node)
    if not ports:
        raise InvalidPortError(
            f"Node '{node.id}' of kind '{node.kind.value}' has no output", node_id=node.id
        )
    if handle is None:
        if len(ports) == 1:
            return ports[0]
        raise InvalidPortError(
            f"Node '{node.id}' has several outputs {ports}; a source handle is required",
            node_id=node.id,
        )
    if handle not in ports:
        raise InvalidPortError(
            f"Node '{node.id}' has no output port '{handle}'. Valid ports: {ports}",
            node_id=node.id,
        )
    return handle


# ==================== Completeness ====================

def check_completeness(node: Node) -> list[str]:
    """
    Return publish-time problems with a node's configuration.

    A configuration can be schema-valid while still missing data it needs to
    execute; such nodes can be edited freely but block publishing.
    """
    config = node.config
    problems: list[str] = []

    if isinstance(config, ValidationNodeConfig):
        if config.approver_type in ("user", "group", "department") and not config.approver_id:
            problems.append(f"approver_type '{config.approver_type}' requires approver_id")
        if config.approver_type == "role" and not config.approver_role:
            problems.append("approver_type 'role' requires approver_role")
        if config.approval_mode == ApprovalMode.QUORUM and config.quorum_count is None:
            problems.append("approval_mode 'quorum' requires quorum_count")
        if config.trigger_mode == TriggerMode.MANUAL:
            if config.trigger_allowed_by is None:
                problems.append("trigger_mode 'manual' requires trigger_allowed_by")
            elif (
                config.trigger_allowed_by == TriggerAllowedBy.SPECIFIC_USER
                and not config.trigger_user_id
            ):
                problems.append("trigger_allowed_by 'specific_user' requires trigger_user_id")

    elif isinstance(config, NotificationNodeConfig):
        if config.recipient_type == "email" and not config.recipient_email:
            problems.append("recipient_type 'email' requires recipient_email")
        if config.recipient_type in ("user", "group", "department") and not config.recipient_id:
            problems.append(f"recipient_type '{config.recipient_type}' requires recipient_id")
        if not config.subject_template.strip():
            problems.append("subject_template must not be empty")

    elif isinstance(config, ForkNodeConfig):
        if config.branch_mode == BranchMode.STATIC and len(config.branches) < 2:
            problems.append("static fork requires at least 2 branches")

    elif isinstance(config, JoinNodeConfig):
        if config.join_type == JoinType.N_OF_M and config.required_count is None:
            problems.append("join_type 'n_of_m' requires required_count")

    elif isinstance(config, SetVariableNodeConfig):
        if not VARIABLE_NAME_PATTERN.match(config.variable_name):
            problems.append(f"invalid variable_name {config.variable_name!r}")
        if config.mode == VariableMode.EXPRESSION and not config.expression:
            problems.append("mode 'expression' requires expression")

    elif isinstance(config, SubProcessNodeConfig):
        if not config.sub_process_template_id:
            problems.append("sub_process_template_id is required")

    elif isinstance(config, DatalakeSyncNodeConfig):
        if not config.tables:
            problems.append("at least one table is required")

    return problems


def describe_catalog() -> list[dict[str, Any]]:
    """Describe every node kind with its default configuration and ports."""
    described = []
    for kind, spec in NODE_TYPES.items():
        config = spec.config_model()
        sample = Node(kind=kind, config=config)
        described.append({
            "kind": kind.value,
            "addable": spec.addable,
            "deletable": spec.deletable,
            "default_config": config.model_dump(mode="json"),
            "output_ports": output_ports(sample),
        })
    return described
