import json

import httpx
import pytest

from deploy_engine.db.models import LogLevel, LogSource
from deploy_engine.services.verification import ArtifactVerifier, HttpVerificationClient, VerificationError


def _client(handler) -> HttpVerificationClient:
    return HttpVerificationClient(
        "http://verifier.test/",
        api_key="secret",
        timeout=5,
        transport=httpx.MockTransport(handler),
    )


async def test_http_client_posts_step():
    seen = {}

    def handler(request: httpx.Request) -> httpx.Response:
        seen["url"] = str(request.url)
        seen["api_key"] = request.headers.get("X-API-Key")
        seen["body"] = json.loads(request.content)
        return httpx.Response(200, json={"complete": True, "detail": "all good"})

    client = _client(handler)
    try:
        report = await client.verify("dep-1", "iac_generation")
    finally:
        await client.close()

    assert report.complete is True
    assert report.detail == "all good"
    assert seen == {
        "url": "http://verifier.test/v1/verify",
        "api_key": "secret",
        "body": {"deployment_id": "dep-1", "step": "iac_generation"},
    }


async def test_http_client_reason_fallback():
    client = _client(lambda request: httpx.Response(200, json={"reason": "no .env"}))
    try:
        report = await client.verify("dep-1", "env_collection")
    finally:
        await client.close()

    assert report.complete is False
    assert report.detail == "no .env"


async def test_http_client_error_status():
    client = _client(lambda request: httpx.Response(503, text="maintenance"))
    try:
        with pytest.raises(VerificationError) as excinfo:
            await client.verify("dep-1", "sandbox_testing")
    finally:
        await client.close()

    assert "503" in excinfo.value.message


async def test_http_client_connection_error():
    def handler(request):
        raise httpx.ConnectError("refused", request=request)

    client = _client(handler)
    try:
        with pytest.raises(VerificationError):
            await client.verify("dep-1", "sandbox_testing")
    finally:
        await client.close()


async def test_gate_turns_verifier_errors_into_failed_checks(orchestrator, deployment):
    def handler(request):
        raise httpx.ConnectError("refused", request=request)

    orchestrator.gate.verifier = _client(handler)
    try:
        check = await orchestrator.gate.check_step_completion(deployment.deployment_id, "env_collection")
    finally:
        await orchestrator.gate.verifier.close()

    assert not check.complete
    assert check.reason.startswith("Verification error:")


@pytest.fixture
def verifier(orchestrator) -> ArtifactVerifier:
    return ArtifactVerifier(orchestrator.workspaces, orchestrator.deployments, orchestrator.logs, orchestrator.settings)


async def test_artifact_verifier_credentials_need_explicit_mark(verifier, deployment):
    report = await verifier.verify(deployment.deployment_id, "credential_collection")
    assert not report.complete


async def test_artifact_verifier_iac_validation_failure(verifier, orchestrator, deployment):
    dep_id = deployment.deployment_id
    await orchestrator.audit.record(
        dep_id,
        LogLevel.ERROR,
        "Command failed with code 1",
        LogSource.IAC,
        metadata={"event": "end", "command": "terraform validate", "exit_code": 1},
    )

    report = await verifier.verify(dep_id, "iac_generation")

    assert not report.complete
    assert report.detail == "Validation failed: terraform validate"


async def test_artifact_verifier_deployment_state(verifier, orchestrator, deployment):
    dep_id = deployment.deployment_id
    assert not (await verifier.verify(dep_id, "deployment")).complete

    orchestrator.workspaces.get(dep_id).write_text("terraform/terraform.tfstate", "{}")
    assert (await verifier.verify(dep_id, "deployment")).complete


async def test_artifact_verifier_unreadable_sandbox_results(verifier, orchestrator, deployment):
    dep_id = deployment.deployment_id
    orchestrator.workspaces.get(dep_id).write_text(".deploy/sandbox_results.json", "{not json")

    report = await verifier.verify(dep_id, "sandbox_testing")

    assert not report.complete
    assert report.detail.startswith("Unreadable sandbox results")


async def test_artifact_verifier_unknown_step(verifier, deployment):
    report = await verifier.verify(deployment.deployment_id, "painting")
    assert report.detail == "No verification rule for step: painting"
