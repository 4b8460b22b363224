"""FastAPI application and routes."""

from process_workflow.api.app import create_app
from process_workflow.api.routes import router

__all__ = ["create_app", "router"]
