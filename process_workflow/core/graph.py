"""
In-memory store for a single workflow graph version.

Nodes and edges live in id-addressed arenas. Every structural mutation goes
through this class so invariants are checked in one place: a mutation either
applies completely or raises before touching the arenas.
"""

import logging
from datetime import datetime, timezone
from typing import Any, Optional, Union
from uuid import uuid4

from process_workflow.core import catalog
from process_workflow.core.errors import (
    DanglingReferenceError,
    DuplicatePortError,
    GraphNotEditableError,
    GraphValidationFailed,
    InvalidPortError,
    MinimumBranchesError,
    MultipleStartsError,
    NotAddableError,
    NotFoundError,
    ProtectedNodeError,
    UnreachableEndError,
)
from process_workflow.core.models import (
    BaseNodeConfig,
    BranchMode,
    CanvasSettings,
    Edge,
    ForkBranch,
    ForkNodeConfig,
    Node,
    NodeKind,
    Position,
    ReferenceData,
    TaskNodeConfig,
    WorkflowGraph,
    WorkflowStatus,
)
from process_workflow.core.state_machine import (
    InvalidStateTransitionError,
    WorkflowStatusMachine,
)
from process_workflow.core.validator import GraphValidator, ValidationResult

logger = logging.getLogger(__name__)

MIN_FORK_BRANCHES = 2

UPDATABLE_NODE_FIELDS = {"label", "position", "config", "width", "height"}


def derive_task_duration(
    template_ids: list[str],
    reference: ReferenceData,
) -> Optional[int]:
    """
    Sum the default durations of the selected task templates.

    Templates without a default duration count as zero. Returns None when
    nothing is selected.
    """
    if not template_ids:
        return None
    total = 0
    for template_id in template_ids:
        template = reference.get_task_template(template_id)
        if template and template.default_duration_days:
            total += template.default_duration_days
    return total


class WorkflowGraphStore:
    """
    Mutable arena of nodes and edges for one workflow version.

    The store is not thread-safe on its own; callers serialize access per
    graph (see WorkflowEditorService).
    """

    def __init__(
        self,
        graph: WorkflowGraph,
        reference: Optional[ReferenceData] = None,
        min_fork_branches: int = MIN_FORK_BRANCHES,
    ):
        self._graph = graph.model_copy(update={"nodes": [], "edges": []}, deep=True)
        self._nodes: dict[str, Node] = {n.id: n.model_copy(deep=True) for n in graph.nodes}
        self._edges: dict[str, Edge] = {e.id: e.model_copy(deep=True) for e in graph.edges}
        self.reference = reference or ReferenceData()
        self.min_fork_branches = min_fork_branches

    # ==================== Construction ====================

    @classmethod
    def create(
        cls,
        name: str,
        description: Optional[str] = None,
        process_template_id: Optional[str] = None,
        sub_process_template_id: Optional[str] = None,
        reference: Optional[ReferenceData] = None,
        start_label: str = "Début",
        end_label: str = "Fin",
        start_position: Position = Position(x=100, y=200),
        end_position: Position = Position(x=600, y=200),
        min_fork_branches: int = MIN_FORK_BRANCHES,
    ) -> "WorkflowGraphStore":
        """Create an empty draft pre-populated with a start and an end node."""
        graph = WorkflowGraph(
            name=name,
            description=description,
            process_template_id=process_template_id,
            sub_process_template_id=sub_process_template_id,
            nodes=[
                Node(
                    kind=NodeKind.START,
                    label=start_label,
                    position=start_position,
                    config=catalog.default_config(NodeKind.START),
                ),
                Node(
                    kind=NodeKind.END,
                    label=end_label,
                    position=end_position,
                    config=catalog.default_config(NodeKind.END),
                ),
            ],
        )
        return cls(graph, reference=reference, min_fork_branches=min_fork_branches)

    # ==================== Accessors ====================

    @property
    def id(self) -> str:
        return self._graph.id

    @property
    def status(self) -> WorkflowStatus:
        return self._graph.status

    @property
    def version(self) -> int:
        return self._graph.version

    @property
    def is_editable(self) -> bool:
        return self._graph.status == WorkflowStatus.DRAFT

    @property
    def graph(self) -> WorkflowGraph:
        """Materialize the current state as an independent WorkflowGraph."""
        return self._graph.model_copy(
            update={
                "nodes": [n.model_copy(deep=True) for n in self._nodes.values()],
                "edges": [e.model_copy(deep=True) for e in self._edges.values()],
            },
            deep=True,
        )

    def get_node(self, node_id: str) -> Node:
        try:
            return self._nodes[node_id]
        except KeyError:
            raise NotFoundError("node", node_id) from None

    def get_edge(self, edge_id: str) -> Edge:
        try:
            return self._edges[edge_id]
        except KeyError:
            raise NotFoundError("edge", edge_id) from None

    @property
    def nodes(self) -> list[Node]:
        return list(self._nodes.values())

    @property
    def edges(self) -> list[Edge]:
        return list(self._edges.values())

    def count_kind(self, kind: NodeKind) -> int:
        return sum(1 for node in self._nodes.values() if node.kind == kind)

    # ==================== Node operations ====================

    def add_node(
        self,
        kind: Union[str, NodeKind],
        position: Union[Position, dict[str, float], None] = None,
        label: Optional[str] = None,
        config: Union[BaseNodeConfig, dict[str, Any], None] = None,
    ) -> Node:
        """
        Add a node of `kind`.

        Raises:
            InvalidKindError: Unknown kind
            NotAddableError: start/end nodes are only pre-seeded
            ConfigSchemaMismatchError: config does not match the kind
        """
        self._ensure_editable()
        node_kind = catalog.parse_kind(kind)
        spec = catalog.get_spec(node_kind)
        if not spec.addable:
            raise NotAddableError(f"Nodes of kind '{node_kind.value}' cannot be added")

        node_id = str(uuid4())
        validated = catalog.validate_config(node_kind, config, node_id=node_id)
        if isinstance(validated, TaskNodeConfig) and isinstance(config, dict):
            validated = self._apply_task_duration(validated, config)

        node = Node(
            id=node_id,
            kind=node_kind,
            label=label if label is not None else node_kind.value,
            position=Position.model_validate(position or {}),
            config=validated,
        )
        self._nodes[node.id] = node
        self._touch()
        logger.debug(f"Added {node_kind.value} node {node.id} to graph {self.id}")
        return node

    def update_node(self, node_id: str, updates: dict[str, Any]) -> bool:
        """
        Apply partial updates to a node.

        Only label, position, config, width and height can change. A config
        update is merged over the current config and validated against the
        node's own kind.

        Raises:
            NotFoundError: Unknown node
            ConfigSchemaMismatchError: Config does not match the node kind
        """
        self._ensure_editable()
        node = self.get_node(node_id)

        unknown = set(updates) - UPDATABLE_NODE_FIELDS
        if unknown:
            raise ValueError(f"Cannot update node fields: {sorted(unknown)}")

        changes: dict[str, Any] = {}
        if "label" in updates:
            changes["label"] = str(updates["label"])
        if "position" in updates:
            changes["position"] = Position.model_validate(updates["position"])
        if "width" in updates:
            changes["width"] = updates["width"]
        if "height" in updates:
            changes["height"] = updates["height"]
        if "config" in updates:
            raw = updates["config"]
            config = catalog.validate_config(node.kind, raw, base=node.config, node_id=node_id)
            if isinstance(config, TaskNodeConfig) and isinstance(raw, dict):
                config = self._apply_task_duration(config, raw, previous=node.config)
            changes["config"] = config

        updated = node.model_copy(update=changes)
        # Re-run the node validators on the result
        Node.model_validate(updated.model_dump())
        self._nodes[node_id] = updated
        self._touch()
        return True

    def delete_node(self, node_id: str) -> bool:
        """
        Delete a node and every edge touching it.

        Raises:
            NotFoundError: Unknown node
            ProtectedNodeError: start/end nodes cannot be deleted
        """
        self._ensure_editable()
        node = self.get_node(node_id)
        if not catalog.get_spec(node.kind).deletable:
            raise ProtectedNodeError(
                f"Node '{node_id}' of kind '{node.kind.value}' cannot be deleted",
                node_id=node_id,
            )

        incident = [
            edge_id for edge_id, edge in self._edges.items()
            if edge.source_node_id == node_id or edge.target_node_id == node_id
        ]
        for edge_id in incident:
            del self._edges[edge_id]
        del self._nodes[node_id]
        self._touch()
        logger.debug(f"Deleted node {node_id} and {len(incident)} incident edge(s)")
        return True

    # ==================== Fork branches ====================

    def add_fork_branch(self, node_id: str, name: Optional[str] = None) -> ForkBranch:
        """Append a branch (and output port) to a static fork."""
        self._ensure_editable()
        node = self._get_fork(node_id)
        config = node.config
        assert isinstance(config, ForkNodeConfig)

        existing = {branch.id for branch in config.branches}
        index = len(config.branches) + 1
        while f"branch_{index}" in existing:
            index += 1
        branch = ForkBranch(id=f"branch_{index}", name=name or f"Branche {index}")

        new_config = config.model_copy(update={"branches": [*config.branches, branch]}, deep=True)
        self._nodes[node_id] = node.model_copy(update={"config": new_config})
        self._touch()
        return branch

    def remove_fork_branch(self, node_id: str, branch_id: str) -> bool:
        """
        Remove a branch from a static fork, with the edges leaving its port.

        Raises:
            NotFoundError: Unknown node or branch
            MinimumBranchesError: The fork would drop below the minimum
        """
        self._ensure_editable()
        node = self._get_fork(node_id)
        config = node.config
        assert isinstance(config, ForkNodeConfig)

        if branch_id not in {branch.id for branch in config.branches}:
            raise NotFoundError("branch", branch_id)
        if (
            config.branch_mode == BranchMode.STATIC
            and len(config.branches) <= self.min_fork_branches
        ):
            raise MinimumBranchesError(
                f"A static fork needs at least {self.min_fork_branches} branches",
                node_id=node_id,
            )

        remaining = [branch for branch in config.branches if branch.id != branch_id]
        new_config = config.model_copy(update={"branches": remaining}, deep=True)
        stale_edges = [
            edge_id for edge_id, edge in self._edges.items()
            if edge.source_node_id == node_id and edge.source_handle == branch_id
        ]
        for edge_id in stale_edges:
            del self._edges[edge_id]
        self._nodes[node_id] = node.model_copy(update={"config": new_config})
        self._touch()
        return True

    def _get_fork(self, node_id: str) -> Node:
        node = self.get_node(node_id)
        if node.kind != NodeKind.FORK:
            raise InvalidPortError(f"Node '{node_id}' is not a fork", node_id=node_id)
        return node

    # ==================== Edge operations ====================

    def add_edge(
        self,
        source_id: str,
        target_id: str,
        source_handle: Optional[str] = None,
        target_handle: Optional[str] = None,
        label: Optional[str] = None,
        branch_label: Optional[str] = None,
        animated: bool = True,
    ) -> Edge:
        """
        Connect two nodes.

        Raises:
            DanglingReferenceError: Source or target does not exist
            InvalidPortError: Unknown output port, self-loop, edge into start
            DuplicatePortError: A single-slot input handle is already connected
        """
        self._ensure_editable()
        source = self._nodes.get(source_id)
        target = self._nodes.get(target_id)
        if source is None or target is None:
            missing = source_id if source is None else target_id
            raise DanglingReferenceError(f"Edge references non-existent node '{missing}'")
        if source_id == target_id:
            raise InvalidPortError(f"Node '{source_id}' cannot connect to itself", node_id=source_id)

        port = catalog.normalize_source_handle(source, source_handle)

        target_spec = catalog.get_spec(target.kind)
        if not target_spec.accepts_input:
            raise InvalidPortError(
                f"Node '{target_id}' of kind '{target.kind.value}' accepts no input",
                node_id=target_id,
            )
        if target_spec.single_slot_inputs:
            target_handle = self._claim_input_slot(target_id, target_handle)

        edge = Edge(
            source_node_id=source_id,
            target_node_id=target_id,
            source_handle=port,
            target_handle=target_handle,
            label=label,
            branch_label=branch_label,
            animated=animated,
        )
        self._edges[edge.id] = edge
        self._touch()
        return edge

    def delete_edge(self, edge_id: str) -> bool:
        self._ensure_editable()
        if edge_id not in self._edges:
            return False
        del self._edges[edge_id]
        self._touch()
        return True

    def _claim_input_slot(self, target_id: str, target_handle: Optional[str]) -> str:
        used = {
            edge.target_handle for edge in self._edges.values()
            if edge.target_node_id == target_id
        }
        if target_handle is None:
            index = 1
            while f"branch_{index}" in used:
                index += 1
            return f"branch_{index}"
        if target_handle in used:
            raise DuplicatePortError(
                f"Input '{target_handle}' of node '{target_id}' is already connected",
                node_id=target_id,
            )
        return target_handle

    # ==================== Publishing ====================

    def validate(self) -> ValidationResult:
        return GraphValidator(self.graph).validate()

    def publish(self) -> bool:
        """
        Validate the graph and flip it to active, incrementing the version.

        Raises:
            GraphNotEditableError: The graph is not a draft
            MultipleStartsError: The graph does not have exactly one start
            UnreachableEndError: No end, or a required output cannot reach one
            GraphValidationFailed: Any other structural error
        """
        self._ensure_editable()
        result = self.validate()
        if not result.is_valid:
            codes = {error.code for error in result.errors}
            summary = "; ".join(error.message for error in result.errors)
            if codes & {"NO_START", "MULTIPLE_STARTS"}:
                raise MultipleStartsError(summary, result)
            if codes & {"NO_END", "UNREACHABLE_END"}:
                raise UnreachableEndError(summary, result)
            raise GraphValidationFailed(summary, result)

        now = datetime.now(timezone.utc)
        self._graph = self._graph.model_copy(update={
            "status": WorkflowStatus.ACTIVE,
            "version": self._graph.version + 1,
            "published_at": now,
            "updated_at": now,
        })
        logger.info(f"Published workflow {self.id} as version {self._graph.version}")
        return True

    def set_status(self, status: WorkflowStatus, reason: Optional[str] = None) -> None:
        """
        Move a published graph between active, inactive and archived.

        Raises:
            GraphNotEditableError: The lifecycle does not allow the move
        """
        machine = WorkflowStatusMachine(self._graph.status)
        try:
            machine.transition(status, reason=reason)
        except InvalidStateTransitionError as e:
            raise GraphNotEditableError(str(e)) from e
        self._graph = self._graph.model_copy(update={"status": status})

    def new_draft(self) -> "WorkflowGraphStore":
        """Clone this graph into a new editable draft. This store is unchanged."""
        draft = self.graph.model_copy(update={
            "status": WorkflowStatus.DRAFT,
            "published_at": None,
            "updated_at": datetime.now(timezone.utc),
        })
        return WorkflowGraphStore(
            draft, reference=self.reference, min_fork_branches=self.min_fork_branches
        )

    def save_canvas_settings(self, zoom: float, x: float, y: float) -> None:
        if self._graph.status == WorkflowStatus.ARCHIVED:
            raise GraphNotEditableError(f"Workflow {self.id} is archived")
        self._graph = self._graph.model_copy(
            update={"canvas_settings": CanvasSettings(zoom=zoom, x=x, y=y)}
        )

    # ==================== Helpers ====================

    def _apply_task_duration(
        self,
        config: TaskNodeConfig,
        raw: dict[str, Any],
        previous: Optional[TaskNodeConfig] = None,
    ) -> TaskNodeConfig:
        if "duration_days" in raw:
            return config.model_copy(update={"duration_overridden": True})
        if config.duration_overridden or "task_template_ids" not in raw:
            return config
        if previous is not None and previous.task_template_ids == config.task_template_ids:
            return config
        derived = derive_task_duration(config.task_template_ids, self.reference)
        if derived is None:
            return config
        return config.model_copy(update={"duration_days": derived})

    def _ensure_editable(self) -> None:
        if not self.is_editable:
            raise GraphNotEditableError(
                f"Workflow {self.id} is {self._graph.status.value}; edit a new draft instead"
            )

    def _touch(self) -> None:
        self._graph = self._graph.model_copy(update={"updated_at": datetime.now(timezone.utc)})
