import httpx
import pytest

from deploy_engine.main import create_app


@pytest.fixture
async def client(orchestrator):
    app = create_app()
    app.state.orchestrator = orchestrator
    transport = httpx.ASGITransport(app=app)
    async with httpx.AsyncClient(transport=transport, base_url="http://test") as client:
        yield client


async def _create(client, **body):
    response = await client.post("/v1/deployments", json=body)
    assert response.status_code == 201, response.text
    return response.json()


async def test_root(client):
    response = await client.get("/")
    assert response.status_code == 200
    assert response.json()["endpoints"]["deployments"] == "/v1/deployments"


async def test_create_and_get(client):
    created = await _create(client, repository_url="https://example.com/acme/shop.git", deployment_id="shop-1")

    assert created["deployment_id"] == "shop-1"
    assert created["status"] == "initiated"
    assert "cancelled" in created["allowed_transitions"]

    response = await client.get("/v1/deployments/shop-1")
    assert response.status_code == 200
    assert response.json()["repository_url"] == "https://example.com/acme/shop.git"

    listed = await client.get("/v1/deployments", params={"status": "initiated"})
    assert [d["deployment_id"] for d in listed.json()] == ["shop-1"]


async def test_duplicate_deployment_id(client):
    await _create(client, deployment_id="dup")
    response = await client.post("/v1/deployments", json={"deployment_id": "dup"})
    assert response.status_code == 422


async def test_unknown_deployment_is_404(client):
    response = await client.get("/v1/deployments/missing")

    assert response.status_code == 404
    assert response.json()["detail"]["code"] == "DEPLOYMENT_NOT_FOUND"


async def test_transitions(client):
    created = await _create(client)
    dep_id = created["deployment_id"]

    response = await client.post(f"/v1/deployments/{dep_id}/transitions", json={"status": "deployed"})
    assert response.status_code == 409
    assert response.json()["detail"]["code"] == "INVALID_TRANSITION"

    response = await client.post(
        f"/v1/deployments/{dep_id}/transitions",
        json={"status": "gathering", "metadata": {"by": "api"}},
    )
    assert response.status_code == 200
    body = response.json()
    assert body["status"] == "gathering"
    assert body["previous_status"] == "initiated"

    response = await client.post(f"/v1/deployments/{dep_id}/transitions", json={"status": "bogus"})
    assert response.status_code == 422


async def test_gate_endpoints(client):
    dep_id = (await _create(client))["deployment_id"]

    statuses = (await client.get(f"/v1/deployments/{dep_id}/gate")).json()
    assert statuses["file_generation"]["complete"] is False

    checklist = (await client.get(f"/v1/deployments/{dep_id}/gate/iac_generation")).json()
    assert checklist["dependencies"] == ["credential_collection", "env_collection"]
    assert checklist["details"]["complete"] is False

    response = await client.post(f"/v1/deployments/{dep_id}/gate/file_generation/complete", json={})
    assert response.status_code == 200
    assert response.json()["already_complete"] is False

    again = await client.post(f"/v1/deployments/{dep_id}/gate/file_generation/complete", json={})
    assert again.json()["already_complete"] is True
    assert again.json()["completed_at"] == response.json()["completed_at"]

    # completed gate steps are only cleared by failure transitions
    reset = await client.delete(f"/v1/deployments/{dep_id}/gate/file_generation")
    assert reset.status_code == 405
    assert (await client.get(f"/v1/deployments/{dep_id}/gate")).json()["file_generation"]["complete"] is True

    unknown = await client.get(f"/v1/deployments/{dep_id}/gate/painting")
    assert unknown.status_code == 422


async def test_gate_blocks_transition(client):
    dep_id = (await _create(client))["deployment_id"]
    for status in ("github_input", "analyzing", "env_collection"):
        response = await client.post(f"/v1/deployments/{dep_id}/transitions", json={"status": status})
        assert response.status_code == 200, response.text

    response = await client.post(
        f"/v1/deployments/{dep_id}/transitions", json={"status": "credential_collection"}
    )

    assert response.status_code == 409
    detail = response.json()["detail"]
    assert detail["code"] == "GATE_BLOCKED"
    assert detail["context"]["blocking_step"] == "file_generation"


async def test_can_proceed(client):
    dep_id = (await _create(client))["deployment_id"]
    url = f"/v1/deployments/{dep_id}/gate/credential_collection/can-proceed"

    blocked = (await client.get(url)).json()
    assert blocked["can_proceed"] is False
    assert blocked["blocking_step"] == "file_generation"
    assert blocked["reason"].startswith("Dependency step 'file_generation' not complete")

    await client.post(f"/v1/deployments/{dep_id}/gate/file_generation/complete", json={})
    assert (await client.get(url)).json() == {
        "step": "credential_collection",
        "can_proceed": True,
        "blocking_step": None,
        "reason": "All dependencies complete",
    }

    unknown = await client.get(f"/v1/deployments/{dep_id}/gate/painting/can-proceed")
    assert unknown.status_code == 422
    missing = await client.get("/v1/deployments/missing/gate/file_generation/can-proceed")
    assert missing.status_code == 404


async def test_run_command_and_logs(client):
    dep_id = (await _create(client))["deployment_id"]

    response = await client.post(f"/v1/deployments/{dep_id}/commands", json={"command": "echo api"})
    assert response.status_code == 200
    assert response.json()["stdout"] == "api\n"
    assert response.json()["exit_code"] == 0

    failed = await client.post(f"/v1/deployments/{dep_id}/commands", json={"command": "exit 5"})
    assert failed.status_code == 200
    assert failed.json()["success"] is False

    logs = (await client.get(f"/v1/deployments/{dep_id}/logs", params={"source": "cli"})).json()
    assert "api" in [entry["message"] for entry in logs]

    escape = await client.post(
        f"/v1/deployments/{dep_id}/commands", json={"command": "pwd", "cwd": "../.."}
    )
    assert escape.status_code == 422
    assert escape.json()["detail"]["code"] == "WORKSPACE_ESCAPE"

    dangerous = await client.post(f"/v1/deployments/{dep_id}/commands", json={"command": "rm -rf /"})
    assert dangerous.status_code == 422
    assert dangerous.json()["detail"]["code"] == "VALIDATION_ERROR"


async def test_plan_and_execution(client, orchestrator):
    dep_id = (await _create(client))["deployment_id"]
    workspace = orchestrator.workspaces.get(dep_id)
    workspace.write_text("package.json", '{"name": "shop"}')

    assert (await client.get(f"/v1/deployments/{dep_id}/plan")).status_code == 404

    plan = (await client.post(f"/v1/deployments/{dep_id}/plan")).json()
    assert plan["steps"][0]["name"] == "Validate Prerequisites"
    assert (await client.get(f"/v1/deployments/{dep_id}/plan")).json()["steps"] == plan["steps"]

    # INITIATED cannot enter PLAN_EXECUTION
    response = await client.post(f"/v1/deployments/{dep_id}/execution", json={})
    assert response.status_code == 409
    assert (await client.get(f"/v1/deployments/{dep_id}/execution")).status_code == 404

    cancel = await client.post(f"/v1/deployments/{dep_id}/execution/cancel")
    assert cancel.json() == {"deployment_id": dep_id, "cancelled": False}


async def test_approvals(client, orchestrator):
    dep_id = (await _create(client))["deployment_id"]
    orchestrator.workspaces.get(dep_id).write_text("package.json", '{"name": "shop"}')

    # nothing to approve before a plan exists
    early = await client.post(f"/v1/deployments/{dep_id}/approvals/1/approve", json={})
    assert early.status_code == 422
    assert not orchestrator.approvals.pending_for(dep_id)

    plan = (await client.post(f"/v1/deployments/{dep_id}/plan")).json()
    step_id = next(step["id"] for step in plan["steps"] if step["requires_approval"])

    response = await client.post(
        f"/v1/deployments/{dep_id}/approvals/{step_id}/approve", json={"approver": "alice"}
    )
    assert response.status_code == 200
    assert response.json()["success"] is True

    again = await client.post(f"/v1/deployments/{dep_id}/approvals/{step_id}/reject", json={"reason": "late"})
    assert again.json()["success"] is False
    assert again.json()["message"] == f"Step {step_id} was already decided"

    not_gated = await client.post(f"/v1/deployments/{dep_id}/approvals/1/approve", json={})
    assert not_gated.status_code == 422


async def test_cleanup(client, orchestrator):
    dep_id = (await _create(client))["deployment_id"]
    root = orchestrator.workspaces.get(dep_id).root

    response = await client.post(f"/v1/deployments/{dep_id}/cleanup")

    assert response.status_code == 204
    assert not root.exists()
