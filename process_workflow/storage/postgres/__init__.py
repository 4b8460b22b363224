"""PostgreSQL storage layer."""

from process_workflow.storage.postgres.models import (
    Base,
    WorkflowEdgeModel,
    WorkflowNodeModel,
    WorkflowTemplateModel,
    WorkflowTemplateVersionModel,
)
from process_workflow.storage.postgres.repository import PostgresGraphRepository, WorkflowGraphRepository
from process_workflow.storage.postgres.database import Database

__all__ = [
    "Base",
    "WorkflowTemplateModel",
    "WorkflowNodeModel",
    "WorkflowEdgeModel",
    "WorkflowTemplateVersionModel",
    "WorkflowGraphRepository",
    "PostgresGraphRepository",
    "Database",
]
