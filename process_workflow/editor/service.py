"""
Workflow editor service.

Asynchronous entry point for the editor and collaborator layers. Every
operation on a workflow runs under that workflow's lock; publishing also
holds a service-wide lock because it demotes other workflows of the same
template pair.
"""

import asyncio
import logging
from contextlib import asynccontextmanager
from typing import Any, AsyncGenerator, Optional, Union

from process_workflow.config.settings import EditorSettings
from process_workflow.core.errors import (
    GraphNotEditableError,
    NotFoundError,
    PublishError,
    WorkflowGraphError,
)
from process_workflow.core.graph import WorkflowGraphStore
from process_workflow.core.models import (
    BaseNodeConfig,
    CanvasSettings,
    Edge,
    ForkBranch,
    Node,
    NodeKind,
    Position,
    ReferenceData,
    SetVariableNodeConfig,
    WorkflowGraph,
    WorkflowStatus,
)
from process_workflow.core.validator import GraphValidator, ValidationResult
from process_workflow.storage.base import GraphRepository
from process_workflow.template.resolver import available_variables

logger = logging.getLogger(__name__)

# Statuses a published snapshot can be in before it is superseded
LIVE_STATUSES = {WorkflowStatus.ACTIVE, WorkflowStatus.INACTIVE}


class WorkflowEditorService:
    """
    Authoring operations on workflow graphs.

    Edits always land in a draft: editing a published workflow clones its
    graph into a new draft first, leaving the published snapshot untouched.
    """

    def __init__(
        self,
        repository: GraphRepository,
        reference: Optional[ReferenceData] = None,
        settings: Optional[EditorSettings] = None,
    ):
        self.repository = repository
        self.reference = reference or ReferenceData()
        self.settings = settings or EditorSettings()
        self._locks: dict[str, asyncio.Lock] = {}
        self._publish_lock = asyncio.Lock()

    def _lock(self, workflow_id: str) -> asyncio.Lock:
        lock = self._locks.get(workflow_id)
        if lock is None:
            lock = self._locks[workflow_id] = asyncio.Lock()
        return lock

    def _store(self, graph: WorkflowGraph) -> WorkflowGraphStore:
        return WorkflowGraphStore(
            graph,
            reference=self.reference,
            min_fork_branches=self.settings.min_fork_branches,
        )

    async def _get_graph(self, workflow_id: str) -> WorkflowGraph:
        graph = await self.repository.get(workflow_id)
        if graph is None:
            raise NotFoundError("workflow", workflow_id)
        return graph

    @asynccontextmanager
    async def _editing(
        self,
        workflow_id: str,
        operation: str,
    ) -> AsyncGenerator[WorkflowGraphStore, None]:
        """Load a draft store under the workflow lock and save it if the block succeeds."""
        async with self._lock(workflow_id):
            store = self._store(await self._get_graph(workflow_id))
            if not store.is_editable:
                logger.info(
                    f"Workflow {workflow_id} is {store.status.value}; "
                    f"editing a new draft of version {store.version}"
                )
                store = store.new_draft()
            try:
                yield store
            except WorkflowGraphError as e:
                logger.warning(f"Rejected {operation} on workflow {workflow_id}: {e.message}")
                raise
            await self.repository.save(store.graph)
            logger.debug(f"Applied {operation} to workflow {workflow_id}")

    # ==================== Workflows ====================

    async def create_workflow(
        self,
        name: str,
        description: Optional[str] = None,
        process_template_id: Optional[str] = None,
        sub_process_template_id: Optional[str] = None,
    ) -> WorkflowGraph:
        """Create a draft with its start and end nodes."""
        store = WorkflowGraphStore.create(
            name=name,
            description=description,
            process_template_id=process_template_id,
            sub_process_template_id=sub_process_template_id,
            reference=self.reference,
            start_label=self.settings.start_label,
            end_label=self.settings.end_label,
            start_position=Position(x=self.settings.start_x, y=self.settings.start_y),
            end_position=Position(x=self.settings.end_x, y=self.settings.end_y),
            min_fork_branches=self.settings.min_fork_branches,
        )
        store.save_canvas_settings(zoom=self.settings.default_zoom, x=0.0, y=0.0)
        graph = store.graph
        await self.repository.save(graph)
        logger.info(f"Created workflow {graph.id} ({name})")
        return graph

    async def get_workflow(self, workflow_id: str) -> WorkflowGraph:
        return await self._get_graph(workflow_id)

    async def list_workflows(self) -> list[WorkflowGraph]:
        return await self.repository.list_workflows()

    async def list_versions(self, workflow_id: str) -> list[WorkflowGraph]:
        await self._get_graph(workflow_id)
        return await self.repository.list_versions(workflow_id)

    async def get_version(self, workflow_id: str, version: int) -> WorkflowGraph:
        graph = await self.repository.get_version(workflow_id, version)
        if graph is None:
            raise NotFoundError("version", f"{workflow_id}@{version}")
        return graph

    async def validate_workflow(self, workflow_id: str) -> ValidationResult:
        return GraphValidator(await self._get_graph(workflow_id)).validate()

    async def get_available_variables(self, workflow_id: str) -> list[dict[str, str]]:
        """Template placeholders usable in this workflow's notifications and expressions."""
        graph = await self._get_graph(workflow_id)
        names = [
            node.config.variable_name
            for node in graph.nodes_of_kind(NodeKind.SET_VARIABLE)
            if isinstance(node.config, SetVariableNodeConfig)
        ]
        return available_variables(self.reference.custom_fields, names)

    # ==================== Nodes ====================

    async def add_node(
        self,
        workflow_id: str,
        kind: Union[str, NodeKind],
        position: Union[Position, dict[str, float], None] = None,
        label: Optional[str] = None,
        config: Union[BaseNodeConfig, dict[str, Any], None] = None,
    ) -> Node:
        async with self._editing(workflow_id, "add_node") as store:
            return store.add_node(kind, position=position, label=label, config=config)

    async def update_node(
        self,
        workflow_id: str,
        node_id: str,
        updates: dict[str, Any],
    ) -> Node:
        async with self._editing(workflow_id, "update_node") as store:
            store.update_node(node_id, updates)
            return store.get_node(node_id)

    async def delete_node(self, workflow_id: str, node_id: str) -> bool:
        async with self._editing(workflow_id, "delete_node") as store:
            return store.delete_node(node_id)

    async def add_fork_branch(
        self,
        workflow_id: str,
        node_id: str,
        name: Optional[str] = None,
    ) -> ForkBranch:
        async with self._editing(workflow_id, "add_fork_branch") as store:
            return store.add_fork_branch(node_id, name)

    async def remove_fork_branch(self, workflow_id: str, node_id: str, branch_id: str) -> bool:
        async with self._editing(workflow_id, "remove_fork_branch") as store:
            return store.remove_fork_branch(node_id, branch_id)

    # ==================== Edges ====================

    async def add_edge(
        self,
        workflow_id: str,
        source_id: str,
        target_id: str,
        source_handle: Optional[str] = None,
        target_handle: Optional[str] = None,
        label: Optional[str] = None,
        branch_label: Optional[str] = None,
    ) -> Edge:
        async with self._editing(workflow_id, "add_edge") as store:
            return store.add_edge(
                source_id,
                target_id,
                source_handle=source_handle,
                target_handle=target_handle,
                label=label,
                branch_label=branch_label,
            )

    async def delete_edge(self, workflow_id: str, edge_id: str) -> bool:
        async with self._editing(workflow_id, "delete_edge") as store:
            return store.delete_edge(edge_id)

    # ==================== Canvas ====================

    async def save_canvas_settings(
        self,
        workflow_id: str,
        zoom: float,
        x: float,
        y: float,
    ) -> CanvasSettings:
        """Store the viewport on the current graph without opening a new draft."""
        async with self._lock(workflow_id):
            store = self._store(await self._get_graph(workflow_id))
            store.save_canvas_settings(zoom, x, y)
            graph = store.graph
            await self.repository.save(graph)
            return graph.canvas_settings

    # ==================== Publishing ====================

    async def publish_workflow(self, workflow_id: str) -> WorkflowGraph:
        """
        Publish the current draft.

        Validation, the version bump, the snapshot and the demotion of other
        live graphs happen in one critical section.

        The snapshot is stored under the bumped version, so the version a
        snapshot carries is the version that went live. A new graph starts
        at 1 and its first published snapshot is version 2.

        Raises:
            NotFoundError: Unknown workflow
            GraphNotEditableError: Nothing to publish, the graph is not a draft
            PublishError: The draft failed validation and is left as it was
        """
        async with self._publish_lock, self._lock(workflow_id):
            store = self._store(await self._get_graph(workflow_id))
            if not store.is_editable:
                raise GraphNotEditableError(
                    f"Workflow {workflow_id} is {store.status.value}; there is no draft to publish"
                )
            try:
                store.publish()
            except PublishError as e:
                logger.warning(
                    f"Publish of workflow {workflow_id} rejected: "
                    f"{[error.code for error in e.result.errors]}"
                )
                raise

            published = store.graph
            await self._archive_previous_versions(published)
            await self._demote_template_pair(published)
            await self.repository.add_version(published)
            await self.repository.save(published)

        logger.info(f"Workflow {workflow_id} published as version {published.version}")
        return published

    async def _archive_previous_versions(self, published: WorkflowGraph) -> None:
        for snapshot in await self.repository.list_versions(published.id):
            if snapshot.status in LIVE_STATUSES:
                await self.repository.set_version_status(
                    published.id, snapshot.version, WorkflowStatus.ARCHIVED
                )

    async def _demote_template_pair(self, published: WorkflowGraph) -> None:
        """Only one graph per template pair stays active."""
        if published.template_pair == (None, None):
            return

        for other in await self.repository.find_by_template_pair(*published.template_pair):
            if other.id == published.id:
                continue
            async with self._lock(other.id):
                current = await self.repository.get(other.id)
                if current is not None and current.status == WorkflowStatus.ACTIVE:
                    store = self._store(current)
                    store.set_status(WorkflowStatus.INACTIVE, reason=f"superseded by {published.id}")
                    await self.repository.save(store.graph)
                for snapshot in await self.repository.list_versions(other.id):
                    if snapshot.status == WorkflowStatus.ACTIVE:
                        await self.repository.set_version_status(
                            other.id, snapshot.version, WorkflowStatus.INACTIVE
                        )
                logger.info(f"Workflow {other.id} demoted to inactive by {published.id}")
