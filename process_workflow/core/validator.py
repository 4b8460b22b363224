"""
Workflow graph validation.

Checks the structural invariants a graph must satisfy before it can be
published: a single start, reachable ends, valid ports and complete node
configurations. Cycles are reported as warnings using Kahn's algorithm since
loops are legitimate in approval flows.
"""

from collections import defaultdict, deque
from dataclasses import dataclass, field
from typing import Any, Optional

from process_workflow.core import catalog
from process_workflow.core.models import (
    Edge,
    JoinNodeConfig,
    JoinType,
    Node,
    NodeKind,
    StatusChangeNodeConfig,
    ValidationNodeConfig,
    WorkflowGraph,
)


@dataclass
class ValidationError:
    """Represents a single validation error."""

    code: str
    message: str
    node_id: Optional[str] = None
    details: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {
            "code": self.code,
            "message": self.message,
            "node_id": self.node_id,
            "details": self.details,
        }


@dataclass
class ValidationResult:
    """Result of graph validation."""

    is_valid: bool
    errors: list[ValidationError] = field(default_factory=list)
    warnings: list[ValidationError] = field(default_factory=list)

    # Computed graph properties
    reachable_from_start: set[str] = field(default_factory=set)
    can_reach_end: set[str] = field(default_factory=set)

    def add_error(
        self,
        code: str,
        message: str,
        node_id: Optional[str] = None,
        **details: Any,
    ) -> None:
        """Add a validation error."""
        self.errors.append(ValidationError(code, message, node_id, details))
        self.is_valid = False

    def add_warning(
        self,
        code: str,
        message: str,
        node_id: Optional[str] = None,
        **details: Any,
    ) -> None:
        """Add a validation warning."""
        self.warnings.append(ValidationError(code, message, node_id, details))

    def error_codes(self) -> set[str]:
        return {error.code for error in self.errors}

    def to_dict(self) -> dict[str, Any]:
        return {
            "is_valid": self.is_valid,
            "errors": [error.to_dict() for error in self.errors],
            "warnings": [warning.to_dict() for warning in self.warnings],
        }


class GraphValidator:
    """
    Validates a workflow graph.

    Structural errors block publishing. Warnings (disconnected nodes, cycles,
    unused optional ports) are reported but do not.
    """

    def __init__(self, graph: WorkflowGraph):
        self.graph = graph
        self._node_map: dict[str, Node] = {node.id: node for node in graph.nodes}
        self._valid_edges: list[Edge] = []
        self._adjacency_list: dict[str, list[str]] = defaultdict(list)
        self._reverse_adjacency: dict[str, list[str]] = defaultdict(list)

    def validate(self) -> ValidationResult:
        """
        Perform full validation of the graph.

        Returns:
            ValidationResult with errors and warnings
        """
        result = ValidationResult(is_valid=True)

        self._validate_start_and_end(result)
        self._validate_edges(result)
        self._validate_configs(result)
        self._compute_reachability(result)
        self._check_required_ports(result)
        self._check_unreachable_nodes(result)
        self._check_unused_optional_ports(result)
        self._detect_cycles(result)

        return result

    # ==================== Structure ====================

    def _validate_start_and_end(self, result: ValidationResult) -> None:
        starts = self.graph.nodes_of_kind(NodeKind.START)
        ends = self.graph.nodes_of_kind(NodeKind.END)

        if not starts:
            result.add_error(code="NO_START", message="Workflow has no start node")
        elif len(starts) > 1:
            result.add_error(
                code="MULTIPLE_STARTS",
                message=f"Workflow has {len(starts)} start nodes; exactly one is required",
                start_nodes=[node.id for node in starts],
            )
        if not ends:
            result.add_error(code="NO_END", message="Workflow has no end node")

    def _validate_edges(self, result: ValidationResult) -> None:
        """Check edge references, ports and single-slot inputs."""
        used_slots: dict[tuple[str, str], str] = {}

        for edge in self.graph.edges:
            source = self._node_map.get(edge.source_node_id)
            target = self._node_map.get(edge.target_node_id)
            if source is None or target is None:
                missing = edge.source_node_id if source is None else edge.target_node_id
                result.add_error(
                    code="DANGLING_EDGE",
                    message=f"Edge '{edge.id}' references non-existent node '{missing}'",
                    edge_id=edge.id,
                )
                continue

            port = self._edge_port(source, edge)
            if port is None:
                result.add_error(
                    code="INVALID_PORT",
                    message=(
                        f"Edge '{edge.id}' leaves node '{source.id}' through unknown "
                        f"port '{edge.source_handle}'"
                    ),
                    node_id=source.id,
                    edge_id=edge.id,
                    valid_ports=catalog.output_ports(source),
                )
                continue
            if not catalog.get_spec(target.kind).accepts_input or source.id == target.id:
                result.add_error(
                    code="INVALID_PORT",
                    message=f"Edge '{edge.id}' cannot enter node '{target.id}'",
                    node_id=target.id,
                    edge_id=edge.id,
                )
                continue

            if catalog.get_spec(target.kind).single_slot_inputs and edge.target_handle:
                slot = (target.id, edge.target_handle)
                if slot in used_slots:
                    result.add_error(
                        code="DUPLICATE_PORT",
                        message=(
                            f"Input '{edge.target_handle}' of node '{target.id}' is connected "
                            f"by edges '{used_slots[slot]}' and '{edge.id}'"
                        ),
                        node_id=target.id,
                        edge_id=edge.id,
                    )
                    continue
                used_slots[slot] = edge.id

            self._valid_edges.append(edge)
            self._adjacency_list[source.id].append(target.id)
            self._reverse_adjacency[target.id].append(source.id)

    def _validate_configs(self, result: ValidationResult) -> None:
        """Check per-kind completeness and references to other nodes."""
        for node in self.graph.nodes:
            for problem in catalog.check_completeness(node):
                result.add_error(
                    code="INCOMPLETE_CONFIG",
                    message=f"Node '{node.label or node.id}': {problem}",
                    node_id=node.id,
                )

            config = node.config
            if isinstance(config, JoinNodeConfig) and config.join_type == JoinType.N_OF_M:
                incoming = len(self.graph.incoming_edges(node.id))
                if config.required_count is not None and config.required_count > incoming:
                    result.add_error(
                        code="INCOMPLETE_CONFIG",
                        message=(
                            f"Join '{node.label or node.id}' requires {config.required_count} "
                            f"branches but only {incoming} are connected"
                        ),
                        node_id=node.id,
                    )

            if isinstance(config, ValidationNodeConfig) and config.next_validation_node_id:
                self._check_reference(
                    result, node, config.next_validation_node_id, NodeKind.VALIDATION,
                    "next_validation_node_id",
                )
            if isinstance(config, StatusChangeNodeConfig) and config.target_task_node_id:
                self._check_reference(
                    result, node, config.target_task_node_id, NodeKind.TASK,
                    "target_task_node_id",
                )

    def _check_reference(
        self,
        result: ValidationResult,
        node: Node,
        referenced_id: str,
        expected_kind: NodeKind,
        field_name: str,
    ) -> None:
        referenced = self._node_map.get(referenced_id)
        if referenced is None or referenced.kind != expected_kind:
            result.add_error(
                code="INVALID_CONFIG",
                message=(
                    f"Node '{node.label or node.id}': {field_name} must reference a "
                    f"{expected_kind.value} node"
                ),
                node_id=node.id,
                referenced_node_id=referenced_id,
            )

    # ==================== Reachability ====================

    def _compute_reachability(self, result: ValidationResult) -> None:
        """Compute nodes reachable from start and nodes that can reach an end."""
        ends = [node.id for node in self.graph.nodes_of_kind(NodeKind.END)]
        can_reach_end = set(ends)
        queue = deque(ends)
        while queue:
            node_id = queue.popleft()
            for predecessor in self._reverse_adjacency[node_id]:
                if predecessor not in can_reach_end:
                    can_reach_end.add(predecessor)
                    queue.append(predecessor)
        result.can_reach_end = can_reach_end

        starts = self.graph.nodes_of_kind(NodeKind.START)
        if len(starts) != 1:
            return
        visited: set[str] = set()
        stack = [starts[0].id]
        while stack:
            node_id = stack.pop()
            if node_id in visited:
                continue
            visited.add(node_id)
            stack.extend(n for n in self._adjacency_list[node_id] if n not in visited)
        result.reachable_from_start = visited

    def _check_required_ports(self, result: ValidationResult) -> None:
        """Every required port of a node reachable from start must lead to an end."""
        # Without a start or an end the structural errors already say enough
        if not result.reachable_from_start or not result.can_reach_end:
            return

        for node_id in sorted(result.reachable_from_start):
            node = self._node_map[node_id]
            leading = self._ports_leading_to_end(node, result.can_reach_end)
            for group in catalog.required_port_groups(node):
                if not leading.intersection(group):
                    ports = "' or '".join(group)
                    result.add_error(
                        code="UNREACHABLE_END",
                        message=(
                            f"Output '{ports}' of node '{node.label or node.id}' "
                            "has no path to an end node"
                        ),
                        node_id=node.id,
                        ports=list(group),
                    )

    def _ports_leading_to_end(self, node: Node, can_reach_end: set[str]) -> set[str]:
        ports = set()
        for edge in self._valid_edges:
            if edge.source_node_id == node.id and edge.target_node_id in can_reach_end:
                port = self._edge_port(node, edge)
                if port is not None:
                    ports.add(port)
        return ports

    def _check_unreachable_nodes(self, result: ValidationResult) -> None:
        if not result.reachable_from_start:
            return
        unreachable = sorted(set(self._node_map) - result.reachable_from_start)
        if unreachable:
            result.add_warning(
                code="UNREACHABLE_NODES",
                message=f"Nodes {unreachable} are not reachable from the start node",
                unreachable_nodes=unreachable,
            )

    def _check_unused_optional_ports(self, result: ValidationResult) -> None:
        for node in self.graph.nodes:
            connected = {
                self._edge_port(node, edge)
                for edge in self._valid_edges
                if edge.source_node_id == node.id
            }
            for port in catalog.optional_ports(node):
                if port not in connected:
                    result.add_warning(
                        code="UNUSED_OPTIONAL_PORT",
                        message=f"Output '{port}' of node '{node.label or node.id}' is not connected",
                        node_id=node.id,
                        port=port,
                    )

    # ==================== Cycles ====================

    def _detect_cycles(self, result: ValidationResult) -> None:
        """
        Report cycles using Kahn's algorithm.

        Nodes left with a positive in-degree after repeatedly removing
        zero in-degree nodes lie on, or downstream of, a cycle.
        """
        in_degree = {node_id: 0 for node_id in self._node_map}
        for edge in self._valid_edges:
            in_degree[edge.target_node_id] += 1

        queue = deque([node_id for node_id, degree in in_degree.items() if degree == 0])
        processed = 0
        while queue:
            node_id = queue.popleft()
            processed += 1
            for neighbor in self._adjacency_list[node_id]:
                in_degree[neighbor] -= 1
                if in_degree[neighbor] == 0:
                    queue.append(neighbor)

        if processed != len(self._node_map):
            remaining = {node_id for node_id, degree in in_degree.items() if degree > 0}
            cycle_nodes = self._find_cycle_nodes(remaining)
            result.add_warning(
                code="CYCLE_DETECTED",
                message=f"Workflow contains a loop involving nodes: {cycle_nodes}",
                cycle_nodes=cycle_nodes,
            )

    def _find_cycle_nodes(self, candidates: set[str]) -> list[str]:
        """Find nodes that are part of a cycle using DFS."""
        visited: set[str] = set()
        rec_stack: set[str] = set()
        cycle_path: list[str] = []

        def dfs(node: str, path: list[str]) -> bool:
            visited.add(node)
            rec_stack.add(node)
            path.append(node)

            for neighbor in self._adjacency_list.get(node, []):
                if neighbor not in candidates:
                    continue
                if neighbor not in visited:
                    if dfs(neighbor, path):
                        return True
                elif neighbor in rec_stack:
                    cycle_start = path.index(neighbor)
                    cycle_path.extend(path[cycle_start:])
                    return True

            path.pop()
            rec_stack.remove(node)
            return False

        for node in sorted(candidates):
            if node not in visited:
                if dfs(node, []):
                    break

        return cycle_path if cycle_path else sorted(candidates)

    # ==================== Helpers ====================

    @staticmethod
    def _edge_port(node: Node, edge: Edge) -> Optional[str]:
        """Resolve the port an edge uses, or None when the node has no such port."""
        ports = catalog.output_ports(node)
        if edge.source_handle is None:
            return ports[0] if len(ports) == 1 else None
        return edge.source_handle if edge.source_handle in ports else None
