"""Storage layer for workflow graph persistence."""

from process_workflow.storage.base import GraphRepository
from process_workflow.storage.memory import InMemoryGraphRepository
from process_workflow.storage.postgres.repository import PostgresGraphRepository

__all__ = ["GraphRepository", "InMemoryGraphRepository", "PostgresGraphRepository"]
