"""
FastAPI routes for the workflow editor API.

Implements the authoring endpoints:
- POST /workflows - Create a draft with its start and end nodes
- POST/PATCH/DELETE /workflows/:id/nodes - Edit nodes
- POST/DELETE /workflows/:id/edges - Connect nodes
- POST /workflows/:id/validate - Structural report
- POST /workflows/:id/publish - Publish the draft as a new version
- GET /node-kinds - Catalog of node kinds
- GET /health - Health check

Every graph mutation goes through the editor service, which opens a new draft
when the workflow is already published.
"""

from typing import Any, Optional

from fastapi import APIRouter, Depends, HTTPException, Request, status
from pydantic import BaseModel, ConfigDict, Field

from process_workflow.core import catalog
from process_workflow.core.errors import (
    ConfigSchemaMismatchError,
    GraphNotEditableError,
    MinimumBranchesError,
    NotAddableError,
    NotFoundError,
    ProtectedNodeError,
    PublishError,
    WorkflowGraphError,
)
from process_workflow.core.models import CanvasSettings, Position, WorkflowGraph
from process_workflow.editor.service import WorkflowEditorService

router = APIRouter(prefix="/v1", tags=["workflows"])


# ==================== Request/Response Models ====================

class WorkflowCreateRequest(BaseModel):
    """Request body for workflow creation."""

    name: str = Field(..., min_length=1, max_length=255)
    description: Optional[str] = None
    process_template_id: Optional[str] = None
    sub_process_template_id: Optional[str] = None

    model_config = ConfigDict(
        json_schema_extra={
            "example": {
                "name": "Onboarding",
                "process_template_id": "proc-onboarding",
            }
        }
    )


class NodeCreateRequest(BaseModel):
    """Request body for adding a node."""

    kind: str = Field(..., description="Node kind, see GET /v1/node-kinds")
    position: Position = Field(default_factory=Position)
    label: Optional[str] = None
    config: Optional[dict[str, Any]] = Field(
        default=None,
        description="Partial configuration merged over the kind defaults",
    )

    model_config = ConfigDict(
        json_schema_extra={
            "example": {
                "kind": "condition",
                "position": {"x": 320, "y": 200},
                "config": {"field": "priority", "operator": "equals", "value": "high"},
            }
        }
    )


class NodeUpdateRequest(BaseModel):
    """Partial node update. Only the fields sent are changed."""

    model_config = ConfigDict(extra="forbid")

    label: Optional[str] = None
    position: Optional[Position] = None
    config: Optional[dict[str, Any]] = None
    width: Optional[float] = None
    height: Optional[float] = None


class BranchCreateRequest(BaseModel):
    name: Optional[str] = None


class EdgeCreateRequest(BaseModel):
    """Request body for connecting two nodes."""

    source_node_id: str = Field(..., min_length=1)
    target_node_id: str = Field(..., min_length=1)
    source_handle: Optional[str] = Field(default=None, description="Output port of the source")
    target_handle: Optional[str] = Field(default=None, description="Input slot of the target")
    label: Optional[str] = None
    branch_label: Optional[str] = None


class CanvasRequest(BaseModel):
    zoom: float = Field(..., gt=0)
    x: float
    y: float


class WorkflowSummary(BaseModel):
    """Listing entry for a workflow."""

    id: str
    name: str
    status: str
    version: int
    process_template_id: Optional[str] = None
    sub_process_template_id: Optional[str] = None
    published_at: Optional[str] = None


class DeleteResponse(BaseModel):
    id: str
    deleted: bool


class HealthResponse(BaseModel):
    """Health check response."""

    status: str
    version: str
    services: dict[str, str]


# ==================== Dependency Injection ====================

async def get_editor(request: Request) -> WorkflowEditorService:
    """Get editor service from app state."""
    return request.app.state.editor


# ==================== Error mapping ====================

CONFLICT_ERRORS = (
    ProtectedNodeError,
    NotAddableError,
    GraphNotEditableError,
    MinimumBranchesError,
)


def to_http_exception(error: WorkflowGraphError) -> HTTPException:
    """Translate a graph error into the matching HTTP error."""
    detail: dict[str, Any] = {"code": error.code, "message": error.message}
    if error.node_id:
        detail["node_id"] = error.node_id

    if isinstance(error, NotFoundError):
        status_code = status.HTTP_404_NOT_FOUND
    elif isinstance(error, PublishError):
        status_code = status.HTTP_409_CONFLICT
        detail["errors"] = error.result.to_dict()["errors"]
    elif isinstance(error, CONFLICT_ERRORS):
        status_code = status.HTTP_409_CONFLICT
    else:
        status_code = status.HTTP_422_UNPROCESSABLE_ENTITY
        if isinstance(error, ConfigSchemaMismatchError):
            detail["errors"] = error.errors

    return HTTPException(status_code=status_code, detail=detail)


def graph_payload(graph: WorkflowGraph) -> dict[str, Any]:
    payload = graph.to_persisted()
    payload["created_at"] = graph.created_at.isoformat()
    payload["updated_at"] = graph.updated_at.isoformat()
    return payload


def summarize(graph: WorkflowGraph) -> WorkflowSummary:
    return WorkflowSummary(
        id=graph.id,
        name=graph.name,
        status=graph.status.value,
        version=graph.version,
        process_template_id=graph.process_template_id,
        sub_process_template_id=graph.sub_process_template_id,
        published_at=graph.published_at.isoformat() if graph.published_at else None,
    )


# ==================== Workflow Routes ====================

@router.post(
    "/workflows",
    status_code=status.HTTP_201_CREATED,
    summary="Create a workflow",
    description="Create a draft graph pre-seeded with one start and one end node.",
)
async def create_workflow(
    request: WorkflowCreateRequest,
    editor: WorkflowEditorService = Depends(get_editor),
) -> dict[str, Any]:
    graph = await editor.create_workflow(
        name=request.name,
        description=request.description,
        process_template_id=request.process_template_id,
        sub_process_template_id=request.sub_process_template_id,
    )
    return graph_payload(graph)


@router.get(
    "/workflows",
    response_model=list[WorkflowSummary],
    summary="List workflows",
)
async def list_workflows(
    editor: WorkflowEditorService = Depends(get_editor),
) -> list[WorkflowSummary]:
    return [summarize(graph) for graph in await editor.list_workflows()]


@router.get(
    "/workflows/{workflow_id}",
    summary="Get a workflow",
    description="Current graph of a workflow in its persisted layout.",
)
async def get_workflow(
    workflow_id: str,
    editor: WorkflowEditorService = Depends(get_editor),
) -> dict[str, Any]:
    try:
        return graph_payload(await editor.get_workflow(workflow_id))
    except WorkflowGraphError as e:
        raise to_http_exception(e) from e


@router.get(
    "/workflows/{workflow_id}/variables",
    summary="List template variables",
    description="Placeholders usable in notification templates and expressions.",
)
async def get_available_variables(
    workflow_id: str,
    editor: WorkflowEditorService = Depends(get_editor),
) -> list[dict[str, str]]:
    try:
        return await editor.get_available_variables(workflow_id)
    except WorkflowGraphError as e:
        raise to_http_exception(e) from e


# ==================== Node Routes ====================

@router.post(
    "/workflows/{workflow_id}/nodes",
    status_code=status.HTTP_201_CREATED,
    summary="Add a node",
)
async def add_node(
    workflow_id: str,
    request: NodeCreateRequest,
    editor: WorkflowEditorService = Depends(get_editor),
) -> dict[str, Any]:
    try:
        node = await editor.add_node(
            workflow_id,
            kind=request.kind,
            position=request.position,
            label=request.label,
            config=request.config,
        )
    except WorkflowGraphError as e:
        raise to_http_exception(e) from e
    return node.model_dump(mode="json")


@router.patch(
    "/workflows/{workflow_id}/nodes/{node_id}",
    summary="Update a node",
    description="Partial update; a config update is merged over the current config.",
)
async def update_node(
    workflow_id: str,
    node_id: str,
    request: NodeUpdateRequest,
    editor: WorkflowEditorService = Depends(get_editor),
) -> dict[str, Any]:
    updates = request.model_dump(exclude_unset=True)
    try:
        node = await editor.update_node(workflow_id, node_id, updates)
    except WorkflowGraphError as e:
        raise to_http_exception(e) from e
    return node.model_dump(mode="json")


@router.delete(
    "/workflows/{workflow_id}/nodes/{node_id}",
    response_model=DeleteResponse,
    summary="Delete a node",
    description="Deletes the node and every edge touching it. Start and end are protected.",
)
async def delete_node(
    workflow_id: str,
    node_id: str,
    editor: WorkflowEditorService = Depends(get_editor),
) -> DeleteResponse:
    try:
        deleted = await editor.delete_node(workflow_id, node_id)
    except WorkflowGraphError as e:
        raise to_http_exception(e) from e
    return DeleteResponse(id=node_id, deleted=deleted)


@router.post(
    "/workflows/{workflow_id}/nodes/{node_id}/branches",
    status_code=status.HTTP_201_CREATED,
    summary="Add a fork branch",
)
async def add_fork_branch(
    workflow_id: str,
    node_id: str,
    request: Optional[BranchCreateRequest] = None,
    editor: WorkflowEditorService = Depends(get_editor),
) -> dict[str, Any]:
    name = request.name if request else None
    try:
        branch = await editor.add_fork_branch(workflow_id, node_id, name)
    except WorkflowGraphError as e:
        raise to_http_exception(e) from e
    return branch.model_dump(mode="json")


@router.delete(
    "/workflows/{workflow_id}/nodes/{node_id}/branches/{branch_id}",
    response_model=DeleteResponse,
    summary="Remove a fork branch",
    description="Removes the branch and the edges leaving its port.",
)
async def remove_fork_branch(
    workflow_id: str,
    node_id: str,
    branch_id: str,
    editor: WorkflowEditorService = Depends(get_editor),
) -> DeleteResponse:
    try:
        deleted = await editor.remove_fork_branch(workflow_id, node_id, branch_id)
    except WorkflowGraphError as e:
        raise to_http_exception(e) from e
    return DeleteResponse(id=branch_id, deleted=deleted)


# ==================== Edge Routes ====================

@router.post(
    "/workflows/{workflow_id}/edges",
    status_code=status.HTTP_201_CREATED,
    summary="Connect two nodes",
)
async def add_edge(
    workflow_id: str,
    request: EdgeCreateRequest,
    editor: WorkflowEditorService = Depends(get_editor),
) -> dict[str, Any]:
    try:
        edge = await editor.add_edge(
            workflow_id,
            request.source_node_id,
            request.target_node_id,
            source_handle=request.source_handle,
            target_handle=request.target_handle,
            label=request.label,
            branch_label=request.branch_label,
        )
    except WorkflowGraphError as e:
        raise to_http_exception(e) from e
    return edge.model_dump(mode="json")


@router.delete(
    "/workflows/{workflow_id}/edges/{edge_id}",
    response_model=DeleteResponse,
    summary="Delete an edge",
)
async def delete_edge(
    workflow_id: str,
    edge_id: str,
    editor: WorkflowEditorService = Depends(get_editor),
) -> DeleteResponse:
    try:
        deleted = await editor.delete_edge(workflow_id, edge_id)
    except WorkflowGraphError as e:
        raise to_http_exception(e) from e
    return DeleteResponse(id=edge_id, deleted=deleted)


# ==================== Lifecycle Routes ====================

@router.post(
    "/workflows/{workflow_id}/validate",
    summary="Validate a workflow",
    description="Structural report with errors and warnings. Never changes the graph.",
)
async def validate_workflow(
    workflow_id: str,
    editor: WorkflowEditorService = Depends(get_editor),
) -> dict[str, Any]:
    try:
        result = await editor.validate_workflow(workflow_id)
    except WorkflowGraphError as e:
        raise to_http_exception(e) from e
    return result.to_dict()


@router.post(
    "/workflows/{workflow_id}/publish",
    summary="Publish a workflow",
    description=(
        "Validate the draft and publish it as the next version. "
        "Other live versions of the same template pair are demoted."
    ),
)
async def publish_workflow(
    workflow_id: str,
    editor: WorkflowEditorService = Depends(get_editor),
) -> dict[str, Any]:
    try:
        graph = await editor.publish_workflow(workflow_id)
    except WorkflowGraphError as e:
        raise to_http_exception(e) from e
    return graph_payload(graph)


@router.get(
    "/workflows/{workflow_id}/versions",
    response_model=list[WorkflowSummary],
    summary="List published versions",
)
async def list_versions(
    workflow_id: str,
    editor: WorkflowEditorService = Depends(get_editor),
) -> list[WorkflowSummary]:
    try:
        versions = await editor.list_versions(workflow_id)
    except WorkflowGraphError as e:
        raise to_http_exception(e) from e
    return [summarize(graph) for graph in versions]


@router.get(
    "/workflows/{workflow_id}/versions/{version}",
    summary="Get a published version",
)
async def get_version(
    workflow_id: str,
    version: int,
    editor: WorkflowEditorService = Depends(get_editor),
) -> dict[str, Any]:
    try:
        return graph_payload(await editor.get_version(workflow_id, version))
    except WorkflowGraphError as e:
        raise to_http_exception(e) from e


@router.put(
    "/workflows/{workflow_id}/canvas",
    response_model=CanvasSettings,
    summary="Save the canvas viewport",
)
async def save_canvas_settings(
    workflow_id: str,
    request: CanvasRequest,
    editor: WorkflowEditorService = Depends(get_editor),
) -> CanvasSettings:
    try:
        return await editor.save_canvas_settings(workflow_id, request.zoom, request.x, request.y)
    except WorkflowGraphError as e:
        raise to_http_exception(e) from e


# ==================== Catalog Routes ====================

@router.get(
    "/node-kinds",
    summary="List node kinds",
    description="Every node kind with its default configuration and output ports.",
)
async def list_node_kinds() -> list[dict[str, Any]]:
    return catalog.describe_catalog()


# ==================== Health Check Routes ====================

@router.get(
    "/health",
    response_model=HealthResponse,
    summary="Health check",
    description="Check the health status of the storage and coordination services.",
)
async def health_check(request: Request) -> HealthResponse:
    """Check health of all services."""
    from sqlalchemy import text
    from process_workflow import __version__

    services = {}

    database = getattr(request.app.state, "database", None)
    if database is None:
        services["storage"] = "healthy (memory)"
    else:
        try:
            async with database.session() as session:
                await session.execute(text("SELECT 1"))
            services["storage"] = "healthy (postgres)"
        except Exception:
            services["storage"] = "unhealthy"

    redis_connection = getattr(request.app.state, "redis", None)
    if redis_connection is not None:
        healthy = await redis_connection.health_check()
        services["redis"] = "healthy" if healthy else "unhealthy"

    unhealthy_count = sum(1 for s in services.values() if "unhealthy" in s)
    if unhealthy_count == 0:
        overall_status = "healthy"
    elif unhealthy_count == len(services):
        overall_status = "unhealthy"
    else:
        overall_status = "degraded"

    return HealthResponse(
        status=overall_status,
        version=__version__,
        services=services,
    )
