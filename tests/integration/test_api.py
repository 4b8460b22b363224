"""
Integration tests for the HTTP API.

Requests go through the ASGI app in process; the editor service is the
in-memory one from conftest.
"""

import pytest


async def create_linear(client) -> dict:
    """Create start -> task -> end over HTTP and return ids."""
    response = await client.post("/v1/workflows", json={"name": "Achats", "process_template_id": "pt-1"})
    assert response.status_code == 201
    workflow = response.json()
    start = next(n for n in workflow["nodes"] if n["kind"] == "start")
    end = next(n for n in workflow["nodes"] if n["kind"] == "end")

    response = await client.post(
        f"/v1/workflows/{workflow['id']}/nodes",
        json={"kind": "task", "label": "Revue", "config": {"task_template_ids": ["tpl-review"]}},
    )
    assert response.status_code == 201
    task = response.json()

    for body in (
        {"source_node_id": start["id"], "target_node_id": task["id"]},
        {"source_node_id": task["id"], "target_node_id": end["id"], "source_handle": "completed"},
    ):
        response = await client.post(f"/v1/workflows/{workflow['id']}/edges", json=body)
        assert response.status_code == 201

    return {"workflow": workflow["id"], "start": start["id"], "end": end["id"], "task": task["id"]}


class TestWorkflowEndpoints:
    @pytest.mark.asyncio
    async def test_create_and_get(self, client):
        """Test creating a workflow and reading it back."""
        response = await client.post("/v1/workflows", json={"name": "Onboarding"})
        assert response.status_code == 201
        created = response.json()
        assert created["status"] == "draft"
        assert len(created["nodes"]) == 2

        response = await client.get(f"/v1/workflows/{created['id']}")
        assert response.status_code == 200
        assert response.json()["name"] == "Onboarding"

        response = await client.get("/v1/workflows")
        assert [w["id"] for w in response.json()] == [created["id"]]

    @pytest.mark.asyncio
    async def test_create_requires_a_name(self, client):
        """Test an empty name is rejected with 422."""
        response = await client.post("/v1/workflows", json={"name": ""})
        assert response.status_code == 422

    @pytest.mark.asyncio
    async def test_unknown_workflow(self, client):
        """Test a missing workflow returns 404."""
        response = await client.get("/v1/workflows/missing")
        assert response.status_code == 404
        assert response.json()["detail"]["code"] == "NOT_FOUND"

    @pytest.mark.asyncio
    async def test_variables(self, client):
        """Test the available variables endpoint."""
        ids = await create_linear(client)
        response = await client.get(f"/v1/workflows/{ids['workflow']}/variables")

        assert response.status_code == 200
        tokens = {v["token"] for v in response.json()}
        assert "{champ:montant}" in tokens


class TestNodeEndpoints:
    @pytest.mark.asyncio
    async def test_add_and_update_node(self, client):
        """Test adding and updating a node."""
        ids = await create_linear(client)

        response = await client.patch(
            f"/v1/workflows/{ids['workflow']}/nodes/{ids['task']}",
            json={"label": "Revue finale", "config": {"duration_days": 7}},
        )

        assert response.status_code == 200
        node = response.json()
        assert node["label"] == "Revue finale"
        assert node["config"]["duration_days"] == 7
        assert node["config"]["duration_overridden"] is True

    @pytest.mark.asyncio
    async def test_unknown_kind(self, client):
        """Test an unknown node kind returns 422."""
        ids = await create_linear(client)
        response = await client.post(f"/v1/workflows/{ids['workflow']}/nodes", json={"kind": "timer"})

        assert response.status_code == 422
        assert response.json()["detail"]["code"] == "INVALID_KIND"

    @pytest.mark.asyncio
    async def test_config_of_another_kind(self, client):
        """Test a config of another kind returns 422."""
        ids = await create_linear(client)
        response = await client.patch(
            f"/v1/workflows/{ids['workflow']}/nodes/{ids['task']}",
            json={"config": {"join_type": "and"}},
        )

        assert response.status_code == 422
        detail = response.json()["detail"]
        assert detail["code"] == "CONFIG_SCHEMA_MISMATCH"
        assert detail["errors"]

    @pytest.mark.asyncio
    async def test_update_rejects_unknown_fields(self, client):
        """Test unknown update fields return 422."""
        ids = await create_linear(client)
        response = await client.patch(
            f"/v1/workflows/{ids['workflow']}/nodes/{ids['task']}",
            json={"kind": "fork"},
        )
        assert response.status_code == 422

    @pytest.mark.asyncio
    async def test_start_is_protected(self, client):
        """Test deleting the start node returns 409."""
        ids = await create_linear(client)
        response = await client.delete(f"/v1/workflows/{ids['workflow']}/nodes/{ids['start']}")

        assert response.status_code == 409
        assert response.json()["detail"]["code"] == "PROTECTED_NODE"

    @pytest.mark.asyncio
    async def test_start_is_not_addable(self, client):
        """Test adding a start node returns 409."""
        ids = await create_linear(client)
        response = await client.post(f"/v1/workflows/{ids['workflow']}/nodes", json={"kind": "start"})
        assert response.status_code == 409

    @pytest.mark.asyncio
    async def test_delete_node(self, client):
        """Test deleting a node."""
        ids = await create_linear(client)

        response = await client.delete(f"/v1/workflows/{ids['workflow']}/nodes/{ids['task']}")

        assert response.json() == {"id": ids["task"], "deleted": True}
        workflow = (await client.get(f"/v1/workflows/{ids['workflow']}")).json()
        assert workflow["edges"] == []

    @pytest.mark.asyncio
    async def test_fork_branches(self, client):
        """Test adding and removing fork branches."""
        ids = await create_linear(client)
        fork = (await client.post(f"/v1/workflows/{ids['workflow']}/nodes", json={"kind": "fork"})).json()

        response = await client.post(
            f"/v1/workflows/{ids['workflow']}/nodes/{fork['id']}/branches",
            json={"name": "Juridique"},
        )
        assert response.status_code == 201
        assert response.json()["id"] == "branch_3"

        base = f"/v1/workflows/{ids['workflow']}/nodes/{fork['id']}/branches"
        assert (await client.delete(f"{base}/branch_3")).status_code == 200
        response = await client.delete(f"{base}/branch_2")
        assert response.status_code == 409
        assert response.json()["detail"]["code"] == "MINIMUM_BRANCHES"


class TestEdgeEndpoints:
    @pytest.mark.asyncio
    async def test_invalid_port(self, client):
        """Test an invalid source handle returns 422."""
        ids = await create_linear(client)
        condition = (await client.post(
            f"/v1/workflows/{ids['workflow']}/nodes", json={"kind": "condition"},
        )).json()

        response = await client.post(
            f"/v1/workflows/{ids['workflow']}/edges",
            json={"source_node_id": condition["id"], "target_node_id": ids["end"], "source_handle": "maybe"},
        )

        assert response.status_code == 422
        assert response.json()["detail"]["code"] == "INVALID_PORT"

    @pytest.mark.asyncio
    async def test_delete_edge(self, client):
        """Test deleting an edge."""
        ids = await create_linear(client)
        workflow = (await client.get(f"/v1/workflows/{ids['workflow']}")).json()
        edge_id = workflow["edges"][0]["id"]

        response = await client.delete(f"/v1/workflows/{ids['workflow']}/edges/{edge_id}")
        assert response.json()["deleted"] is True

        response = await client.delete(f"/v1/workflows/{ids['workflow']}/edges/{edge_id}")
        assert response.json()["deleted"] is False


class TestLifecycleEndpoints:
    @pytest.mark.asyncio
    async def test_validate(self, client):
        """Test validating a publishable draft."""
        ids = await create_linear(client)
        response = await client.post(f"/v1/workflows/{ids['workflow']}/validate")

        assert response.status_code == 200
        assert response.json()["is_valid"] is True

    @pytest.mark.asyncio
    async def test_publish_and_versions(self, client):
        """Test publishing and listing versions."""
        ids = await create_linear(client)

        response = await client.post(f"/v1/workflows/{ids['workflow']}/publish")
        assert response.status_code == 200
        published = response.json()
        assert published["status"] == "active"
        assert published["version"] == 2
        assert published["published_at"] is not None

        response = await client.get(f"/v1/workflows/{ids['workflow']}/versions")
        assert [(v["version"], v["status"]) for v in response.json()] == [(2, "active")]

        response = await client.get(f"/v1/workflows/{ids['workflow']}/versions/2")
        assert response.status_code == 200
        assert len(response.json()["nodes"]) == 3

        response = await client.get(f"/v1/workflows/{ids['workflow']}/versions/7")
        assert response.status_code == 404

    @pytest.mark.asyncio
    async def test_publish_invalid_draft(self, client):
        """Test publishing an invalid draft returns 409 with its errors."""
        response = await client.post("/v1/workflows", json={"name": "Vide"})
        workflow_id = response.json()["id"]

        response = await client.post(f"/v1/workflows/{workflow_id}/publish")

        assert response.status_code == 409
        detail = response.json()["detail"]
        assert detail["code"] == "UNREACHABLE_END"
        assert detail["errors"][0]["code"] == "UNREACHABLE_END"

    @pytest.mark.asyncio
    async def test_publish_twice(self, client):
        """Test publishing without a draft returns 409."""
        ids = await create_linear(client)
        await client.post(f"/v1/workflows/{ids['workflow']}/publish")

        response = await client.post(f"/v1/workflows/{ids['workflow']}/publish")

        assert response.status_code == 409
        assert response.json()["detail"]["code"] == "GRAPH_NOT_EDITABLE"

    @pytest.mark.asyncio
    async def test_canvas(self, client):
        """Test saving canvas settings."""
        ids = await create_linear(client)
        response = await client.put(
            f"/v1/workflows/{ids['workflow']}/canvas",
            json={"zoom": 1.25, "x": 10, "y": 20},
        )

        assert response.status_code == 200
        assert response.json() == {"zoom": 1.25, "x": 10.0, "y": 20.0}

        response = await client.put(
            f"/v1/workflows/{ids['workflow']}/canvas",
            json={"zoom": 0, "x": 0, "y": 0},
        )
        assert response.status_code == 422


class TestCatalogAndHealth:
    @pytest.mark.asyncio
    async def test_node_kinds(self, client):
        """Test the node kind catalog endpoint."""
        response = await client.get("/v1/node-kinds")

        assert response.status_code == 200
        kinds = {entry["kind"]: entry for entry in response.json()}
        assert len(kinds) == 13
        assert kinds["validation"]["output_ports"] == ["approved", "rejected"]

    @pytest.mark.asyncio
    async def test_health(self, client):
        """Test the health endpoint reports storage status."""
        response = await client.get("/v1/health")

        assert response.status_code == 200
        body = response.json()
        assert body["status"] == "healthy"
        assert body["services"] == {"storage": "healthy (memory)"}

    @pytest.mark.asyncio
    async def test_root(self, client):
        """Test the root endpoint."""
        response = await client.get("/")
        assert response.json()["status"] == "running"
