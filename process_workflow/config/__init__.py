"""Configuration management."""

from process_workflow.config.settings import (
    EditorSettings,
    Environment,
    Settings,
    StorageBackend,
    get_settings,
)

__all__ = ["EditorSettings", "Environment", "Settings", "StorageBackend", "get_settings"]
