"""
Repository interface for workflow graphs.

A workflow id identifies the editable "current" graph (draft or the latest
published state) and a list of immutable published version snapshots.
"""

from abc import ABC, abstractmethod
from typing import Optional

from process_workflow.core.models import WorkflowGraph, WorkflowStatus


class GraphRepository(ABC):
    """Persistence of current graphs and their published versions."""

    @abstractmethod
    async def get(self, workflow_id: str) -> Optional[WorkflowGraph]:
        """Get the current graph of a workflow."""

    @abstractmethod
    async def save(self, graph: WorkflowGraph) -> None:
        """Insert or replace the current graph, nodes and edges included."""

    @abstractmethod
    async def list_workflows(self) -> list[WorkflowGraph]:
        pass

    @abstractmethod
    async def find_by_template_pair(
        self,
        process_template_id: Optional[str],
        sub_process_template_id: Optional[str],
        status: Optional[WorkflowStatus] = None,
    ) -> list[WorkflowGraph]:
        """Current graphs bound to a (process, sub-process) template pair."""

    @abstractmethod
    async def add_version(self, graph: WorkflowGraph) -> None:
        """Store a published snapshot. (workflow id, version) is unique."""

    @abstractmethod
    async def get_version(self, workflow_id: str, version: int) -> Optional[WorkflowGraph]:
        pass

    @abstractmethod
    async def list_versions(self, workflow_id: str) -> list[WorkflowGraph]:
        """Published snapshots, oldest first."""

    @abstractmethod
    async def set_version_status(
        self,
        workflow_id: str,
        version: int,
        status: WorkflowStatus,
    ) -> None:
        pass
