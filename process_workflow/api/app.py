"""
FastAPI application factory.

Creates and configures the workflow editor API application.
"""

import logging
from contextlib import asynccontextmanager
from pathlib import Path
from typing import AsyncGenerator, Optional

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from process_workflow import __version__
from process_workflow.api.routes import router
from process_workflow.config import Settings, StorageBackend, get_settings
from process_workflow.core.models import ReferenceData
from process_workflow.editor.service import WorkflowEditorService
from process_workflow.orchestrator import JoinCoordinator, TimeoutScheduler
from process_workflow.storage import GraphRepository, InMemoryGraphRepository, PostgresGraphRepository
from process_workflow.storage.postgres.database import Database
from process_workflow.storage.redis.connection import close_redis, get_redis_connection

logger = logging.getLogger(__name__)


def load_reference_data(settings: Settings) -> ReferenceData:
    """Read task templates, directory entries and custom fields from disk."""
    if not settings.reference_data_path:
        return ReferenceData()
    path = Path(settings.reference_data_path)
    reference = ReferenceData.model_validate_json(path.read_text(encoding="utf-8"))
    logger.info(
        f"Loaded reference data from {path}: {len(reference.task_templates)} task templates, "
        f"{len(reference.custom_fields)} custom fields"
    )
    return reference


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """
    Application lifespan manager.

    Handles startup and shutdown events. An editor injected through
    create_app() is kept and no storage is opened for it.
    """
    settings = get_settings()

    # Startup
    logger.info("Starting Process Workflow Editor...")

    database: Optional[Database] = None
    if getattr(app.state, "editor", None) is None:
        repository: GraphRepository
        if settings.storage_backend == StorageBackend.POSTGRES:
            database = Database(settings.postgres)
            await database.init()
            app.state.database = database
            repository = PostgresGraphRepository(database)
            logger.info("Database connection established")
        else:
            repository = InMemoryGraphRepository()
            logger.info("Using in-memory graph storage")

        app.state.editor = WorkflowEditorService(
            repository,
            reference=load_reference_data(settings),
            settings=settings.editor,
        )

    if settings.redis_enabled:
        connection = await get_redis_connection()
        app.state.redis = connection
        coordinator = JoinCoordinator(
            connection.client,
            ttl_seconds=settings.redis.join_state_ttl_seconds,
        )
        await coordinator.init()
        app.state.join_coordinator = coordinator
        logger.info("Redis connection established")

    app.state.timeouts = TimeoutScheduler()

    logger.info(
        f"Process Workflow Editor started - Environment: {settings.environment.value}, "
        f"storage: {settings.storage_backend.value}"
    )

    yield

    # Shutdown
    logger.info("Shutting down Process Workflow Editor...")

    await app.state.timeouts.shutdown()

    if database is not None:
        await database.close()

    if settings.redis_enabled:
        await close_redis()

    logger.info("Process Workflow Editor shutdown complete")


def create_app(editor: Optional[WorkflowEditorService] = None) -> FastAPI:
    """
    Create and configure the FastAPI application.

    Args:
        editor: Pre-built editor service; when omitted the lifespan builds
            one on the configured storage backend
    """
    settings = get_settings()

    # Configure logging
    logging.basicConfig(
        level=getattr(logging, settings.log_level.upper()),
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )

    app = FastAPI(
        title=settings.app_name,
        description="Authoring API for process workflow graphs",
        version=__version__,
        lifespan=lifespan,
        docs_url="/docs" if settings.is_development else None,
        redoc_url="/redoc" if settings.is_development else None,
    )

    if editor is not None:
        app.state.editor = editor

    # Add CORS middleware
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"] if settings.is_development else [],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    # Include routers
    app.include_router(router)

    # Root endpoint
    @app.get("/", tags=["root"])
    async def root():
        return {
            "name": settings.app_name,
            "version": __version__,
            "status": "running",
        }

    return app


# Application instance for uvicorn
app = create_app()
