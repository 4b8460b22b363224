"""
Pytest fixtures and configuration for tests.
"""

from typing import AsyncGenerator
from unittest.mock import AsyncMock, MagicMock

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient

from process_workflow.api.app import create_app
from process_workflow.config import EditorSettings, Environment, Settings
from process_workflow.core.graph import WorkflowGraphStore
from process_workflow.core.models import (
    CustomFieldDefinition,
    ExecutionContext,
    NodeKind,
    ReferenceData,
    SubProcessTemplate,
    TaskTemplate,
)
from process_workflow.editor.service import WorkflowEditorService
from process_workflow.storage.memory import InMemoryGraphRepository


@pytest.fixture
def test_settings() -> Settings:
    """Create test settings."""
    return Settings(
        environment=Environment.TEST,
        debug=True,
        log_level="DEBUG",
    )


@pytest.fixture
def reference_data() -> ReferenceData:
    """Task templates with default durations and a couple of custom fields."""
    return ReferenceData(
        task_templates=[
            TaskTemplate(id="tpl-review", title="Revue", default_duration_days=3),
            TaskTemplate(id="tpl-sign", title="Signature", default_duration_days=2),
            TaskTemplate(id="tpl-archive", title="Archivage"),
        ],
        sub_process_templates=[
            SubProcessTemplate(id="sp-legal", name="Juridique"),
            SubProcessTemplate(id="sp-finance", name="Finance"),
        ],
        custom_fields=[
            CustomFieldDefinition(name="code_projet", label="Code projet"),
            CustomFieldDefinition(name="montant", label="Montant"),
        ],
    )


@pytest.fixture
def store(reference_data) -> WorkflowGraphStore:
    """A fresh draft with its start and end nodes."""
    return WorkflowGraphStore.create(name="Onboarding", reference=reference_data)


@pytest.fixture
def start_end(store) -> tuple[str, str]:
    """Ids of the pre-seeded start and end nodes."""
    start = next(n for n in store.nodes if n.kind == NodeKind.START)
    end = next(n for n in store.nodes if n.kind == NodeKind.END)
    return start.id, end.id


@pytest.fixture
def linear_store(store, start_end) -> WorkflowGraphStore:
    """Publishable graph: start -> task -> end, every task outcome wired to end."""
    start_id, end_id = start_end
    task = store.add_node("task", label="Revue", config={"task_template_ids": ["tpl-review"]})
    store.add_edge(start_id, task.id)
    store.add_edge(task.id, end_id, source_handle="completed")
    return store


@pytest.fixture
def execution_context() -> ExecutionContext:
    return ExecutionContext(
        entity_id="req-1",
        requester_id="u-requester",
        assignee_id="u-assignee",
        task_owner_id="u-owner",
        manager_id="u-manager",
        priority="high",
        custom_fields={"code_projet": "X1", "montant": 1500},
    )


@pytest.fixture
def repository() -> InMemoryGraphRepository:
    return InMemoryGraphRepository()


@pytest.fixture
def editor(repository, reference_data) -> WorkflowEditorService:
    return WorkflowEditorService(
        repository,
        reference=reference_data,
        settings=EditorSettings(),
    )


@pytest_asyncio.fixture
async def client(editor) -> AsyncGenerator[AsyncClient, None]:
    """HTTP client bound to an app serving the in-memory editor."""
    app = create_app(editor=editor)
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as http_client:
        yield http_client


@pytest.fixture
def mock_redis():
    """Create a mock Redis client with proper async methods."""
    mock = MagicMock()
    mock.hset = AsyncMock()
    mock.hget = AsyncMock(return_value=None)
    mock.smembers = AsyncMock(return_value=set())
    mock.delete = AsyncMock()
    mock.exists = AsyncMock(return_value=False)

    # Pipeline mock
    pipe_mock = MagicMock()
    pipe_mock.hset = MagicMock()
    pipe_mock.expire = MagicMock()
    pipe_mock.execute = AsyncMock(return_value=[])
    pipe_mock.__aenter__ = AsyncMock(return_value=pipe_mock)
    pipe_mock.__aexit__ = AsyncMock(return_value=None)
    mock.pipeline = MagicMock(return_value=pipe_mock)

    # Each register_script call hands back its own awaitable script
    mock.register_script = MagicMock(side_effect=lambda script: AsyncMock(return_value=0))

    return mock
