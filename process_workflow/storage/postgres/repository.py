"""
Repository layer for workflow graph data access.

Provides high-level data access methods with proper transaction handling.
"""

from typing import Any, Optional

from sqlalchemy import and_, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from process_workflow.core.models import (
    CanvasSettings,
    Edge,
    Node,
    Position,
    WorkflowGraph,
    WorkflowStatus,
)
from process_workflow.storage.base import GraphRepository
from process_workflow.storage.postgres.database import Database
from process_workflow.storage.postgres.models import (
    WorkflowEdgeModel,
    WorkflowNodeModel,
    WorkflowTemplateModel,
    WorkflowTemplateVersionModel,
)


# ==================== Conversion ====================

EDGE_COLUMNS = (
    "source_node_id",
    "target_node_id",
    "source_handle",
    "target_handle",
    "label",
    "branch_label",
    "animated",
)


def node_fields(node: Node) -> dict[str, Any]:
    return {
        "kind": node.kind.value,
        "label": node.label,
        "position_x": node.position.x,
        "position_y": node.position.y,
        "width": node.width,
        "height": node.height,
        "config": node.config.model_dump(mode="json"),
    }


def edge_fields(edge: Edge) -> dict[str, Any]:
    return {
        "source_node_id": edge.source_node_id,
        "target_node_id": edge.target_node_id,
        "source_handle": edge.source_handle,
        "target_handle": edge.target_handle,
        "label": edge.label,
        "branch_label": edge.branch_label,
        "animated": edge.animated,
    }


def template_fields(graph: WorkflowGraph) -> dict[str, Any]:
    return {
        "name": graph.name,
        "description": graph.description,
        "process_template_id": graph.process_template_id,
        "sub_process_template_id": graph.sub_process_template_id,
        "status": graph.status.value,
        "version": graph.version,
        "is_default": graph.is_default,
        "canvas_settings": graph.canvas_settings.model_dump(mode="json"),
        "published_at": graph.published_at,
        "updated_at": graph.updated_at,
    }


def model_to_graph(model: WorkflowTemplateModel) -> WorkflowGraph:
    """Convert database model to domain model."""
    return WorkflowGraph(
        id=model.id,
        name=model.name,
        description=model.description,
        process_template_id=model.process_template_id,
        sub_process_template_id=model.sub_process_template_id,
        status=WorkflowStatus(model.status),
        version=model.version,
        is_default=model.is_default,
        canvas_settings=CanvasSettings(**(model.canvas_settings or {})),
        nodes=[
            Node(
                id=node.id,
                kind=node.kind,
                label=node.label,
                position=Position(x=node.position_x, y=node.position_y),
                config=node.config,
                width=node.width,
                height=node.height,
            )
            for node in model.nodes
        ],
        edges=[
            Edge(id=edge.id, **{key: getattr(edge, key) for key in EDGE_COLUMNS})
            for edge in model.edges
        ],
        published_at=model.published_at,
        created_at=model.created_at,
        updated_at=model.updated_at,
    )


def version_model_to_graph(model: WorkflowTemplateVersionModel) -> WorkflowGraph:
    """Rehydrate a snapshot. The status column wins over the snapshot copy."""
    graph = WorkflowGraph.from_persisted(model.snapshot)
    return graph.model_copy(update={"status": WorkflowStatus(model.status)})


class WorkflowGraphRepository:
    """
    Repository for workflow graphs and published versions.

    All methods operate within the provided session's transaction.
    """

    def __init__(self, session: AsyncSession):
        self.session = session

    # ==================== Current graph Operations ====================

    async def get_template(self, workflow_id: str) -> Optional[WorkflowTemplateModel]:
        result = await self.session.execute(
            select(WorkflowTemplateModel)
            .where(WorkflowTemplateModel.id == workflow_id)
        )
        return result.scalar_one_or_none()

    async def save_graph(self, graph: WorkflowGraph) -> WorkflowTemplateModel:
        """
        Insert or update the current graph.

        Child rows are updated in place, added or removed so that the row
        set matches the graph exactly.
        """
        model = await self.get_template(graph.id)
        if model is None:
            model = WorkflowTemplateModel(id=graph.id, created_at=graph.created_at)
            model.nodes = []
            model.edges = []
            self.session.add(model)

        for key, value in template_fields(graph).items():
            setattr(model, key, value)

        existing_nodes = {node.id: node for node in model.nodes}
        node_models = []
        for node in graph.nodes:
            node_model = existing_nodes.get(node.id) or WorkflowNodeModel(id=node.id)
            for key, value in node_fields(node).items():
                setattr(node_model, key, value)
            node_models.append(node_model)
        model.nodes = node_models

        existing_edges = {edge.id: edge for edge in model.edges}
        edge_models = []
        for edge in graph.edges:
            edge_model = existing_edges.get(edge.id) or WorkflowEdgeModel(id=edge.id)
            for key, value in edge_fields(edge).items():
                setattr(edge_model, key, value)
            edge_models.append(edge_model)
        model.edges = edge_models

        await self.session.flush()
        return model

    async def list_templates(
        self,
        process_template_id: Optional[str] = None,
        sub_process_template_id: Optional[str] = None,
        status: Optional[WorkflowStatus] = None,
        by_pair: bool = False,
    ) -> list[WorkflowTemplateModel]:
        query = select(WorkflowTemplateModel)
        conditions = []
        if by_pair:
            conditions.append(
                WorkflowTemplateModel.process_template_id.is_(None)
                if process_template_id is None
                else WorkflowTemplateModel.process_template_id == process_template_id
            )
            conditions.append(
                WorkflowTemplateModel.sub_process_template_id.is_(None)
                if sub_process_template_id is None
                else WorkflowTemplateModel.sub_process_template_id == sub_process_template_id
            )
        if status is not None:
            conditions.append(WorkflowTemplateModel.status == status.value)
        if conditions:
            query = query.where(and_(*conditions))
        result = await self.session.execute(query.order_by(WorkflowTemplateModel.created_at))
        return list(result.scalars().all())

    # ==================== Version Operations ====================

    async def create_version(self, graph: WorkflowGraph) -> WorkflowTemplateVersionModel:
        model = WorkflowTemplateVersionModel(
            workflow_id=graph.id,
            version=graph.version,
            status=graph.status.value,
            snapshot=graph.to_persisted(),
            published_at=graph.published_at,
        )
        self.session.add(model)
        await self.session.flush()
        return model

    async def get_version(
        self,
        workflow_id: str,
        version: int,
    ) -> Optional[WorkflowTemplateVersionModel]:
        result = await self.session.execute(
            select(WorkflowTemplateVersionModel).where(
                and_(
                    WorkflowTemplateVersionModel.workflow_id == workflow_id,
                    WorkflowTemplateVersionModel.version == version,
                )
            )
        )
        return result.scalar_one_or_none()

    async def list_versions(self, workflow_id: str) -> list[WorkflowTemplateVersionModel]:
        result = await self.session.execute(
            select(WorkflowTemplateVersionModel)
            .where(WorkflowTemplateVersionModel.workflow_id == workflow_id)
            .order_by(WorkflowTemplateVersionModel.version)
        )
        return list(result.scalars().all())

    async def update_version_status(
        self,
        workflow_id: str,
        version: int,
        new_status: WorkflowStatus,
    ) -> None:
        await self.session.execute(
            update(WorkflowTemplateVersionModel)
            .where(
                and_(
                    WorkflowTemplateVersionModel.workflow_id == workflow_id,
                    WorkflowTemplateVersionModel.version == version,
                )
            )
            .values(status=new_status.value)
        )


class PostgresGraphRepository(GraphRepository):
    """GraphRepository backed by PostgreSQL, one session per call."""

    def __init__(self, database: Database):
        self.database = database

    async def get(self, workflow_id: str) -> Optional[WorkflowGraph]:
        async with self.database.session() as session:
            model = await WorkflowGraphRepository(session).get_template(workflow_id)
            return model_to_graph(model) if model else None

    async def save(self, graph: WorkflowGraph) -> None:
        async with self.database.session() as session:
            await WorkflowGraphRepository(session).save_graph(graph)

    async def list_workflows(self) -> list[WorkflowGraph]:
        async with self.database.session() as session:
            models = await WorkflowGraphRepository(session).list_templates()
            return [model_to_graph(model) for model in models]

    async def find_by_template_pair(
        self,
        process_template_id: Optional[str],
        sub_process_template_id: Optional[str],
        status: Optional[WorkflowStatus] = None,
    ) -> list[WorkflowGraph]:
        async with self.database.session() as session:
            models = await WorkflowGraphRepository(session).list_templates(
                process_template_id, sub_process_template_id, status, by_pair=True
            )
            return [model_to_graph(model) for model in models]

    async def add_version(self, graph: WorkflowGraph) -> None:
        async with self.database.session() as session:
            await WorkflowGraphRepository(session).create_version(graph)

    async def get_version(self, workflow_id: str, version: int) -> Optional[WorkflowGraph]:
        async with self.database.session() as session:
            model = await WorkflowGraphRepository(session).get_version(workflow_id, version)
            return version_model_to_graph(model) if model else None

    async def list_versions(self, workflow_id: str) -> list[WorkflowGraph]:
        async with self.database.session() as session:
            models = await WorkflowGraphRepository(session).list_versions(workflow_id)
            return [version_model_to_graph(model) for model in models]

    async def set_version_status(
        self,
        workflow_id: str,
        version: int,
        status: WorkflowStatus,
    ) -> None:
        async with self.database.session() as session:
            await WorkflowGraphRepository(session).update_version_status(workflow_id, version, status)
