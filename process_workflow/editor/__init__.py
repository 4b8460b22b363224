"""Asynchronous authoring operations."""

from process_workflow.editor.service import WorkflowEditorService

__all__ = ["WorkflowEditorService"]
