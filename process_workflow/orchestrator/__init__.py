"""Runtime coordination helpers for joins and deadlines."""

from process_workflow.orchestrator.coordinator import JoinCoordinator
from process_workflow.orchestrator.timeouts import TimeoutScheduler

__all__ = ["JoinCoordinator", "TimeoutScheduler"]
