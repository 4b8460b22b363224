"""
In-process graph repository.

Used by tests and by the service when no database is configured. Graphs are
stored as deep copies so callers cannot mutate stored state.
"""

from typing import Optional

from process_workflow.core.models import WorkflowGraph, WorkflowStatus
from process_workflow.storage.base import GraphRepository


class InMemoryGraphRepository(GraphRepository):
    def __init__(self):
        self._graphs: dict[str, WorkflowGraph] = {}
        self._versions: dict[str, dict[int, WorkflowGraph]] = {}

    async def get(self, workflow_id: str) -> Optional[WorkflowGraph]:
        graph = self._graphs.get(workflow_id)
        return graph.model_copy(deep=True) if graph else None

    async def save(self, graph: WorkflowGraph) -> None:
        self._graphs[graph.id] = graph.model_copy(deep=True)

    async def list_workflows(self) -> list[WorkflowGraph]:
        return [graph.model_copy(deep=True) for graph in self._graphs.values()]

    async def find_by_template_pair(
        self,
        process_template_id: Optional[str],
        sub_process_template_id: Optional[str],
        status: Optional[WorkflowStatus] = None,
    ) -> list[WorkflowGraph]:
        return [
            graph.model_copy(deep=True)
            for graph in self._graphs.values()
            if graph.template_pair == (process_template_id, sub_process_template_id)
            and (status is None or graph.status == status)
        ]

    async def add_version(self, graph: WorkflowGraph) -> None:
        versions = self._versions.setdefault(graph.id, {})
        if graph.version in versions:
            raise ValueError(f"Version {graph.version} of workflow {graph.id} already exists")
        versions[graph.version] = graph.model_copy(deep=True)

    async def get_version(self, workflow_id: str, version: int) -> Optional[WorkflowGraph]:
        graph = self._versions.get(workflow_id, {}).get(version)
        return graph.model_copy(deep=True) if graph else None

    async def list_versions(self, workflow_id: str) -> list[WorkflowGraph]:
        versions = self._versions.get(workflow_id, {})
        return [versions[v].model_copy(deep=True) for v in sorted(versions)]

    async def set_version_status(
        self,
        workflow_id: str,
        version: int,
        status: WorkflowStatus,
    ) -> None:
        versions = self._versions.get(workflow_id, {})
        if version in versions:
            versions[version] = versions[version].model_copy(update={"status": status})
