import json

import pytest

from deploy_engine.db.models import DeploymentStatus, LogLevel, LogSource
from deploy_engine.engine.gate import GateStep, coerce_gate_step, step_for_command
from deploy_engine.errors import GateBlockedError, InvalidTransitionError, ValidationError


S = DeploymentStatus


def _write_container_files(orchestrator, deployment_id):
    workspace = orchestrator.workspaces.get(deployment_id)
    workspace.write_text("Dockerfile", "FROM node:20-alpine\n")
    workspace.write_text("docker-compose.yml", "services:\n  app:\n    build: .\n")
    return workspace


def test_step_for_command():
    assert step_for_command("terraform validate") is GateStep.IAC_GENERATION
    assert step_for_command("tofu fmt -check") is GateStep.IAC_GENERATION
    assert step_for_command("docker build -t app .") is GateStep.FILE_GENERATION
    assert step_for_command("docker compose up -d") is GateStep.FILE_GENERATION
    assert step_for_command("npm test") is None
    assert step_for_command("npm test", S.PLANNING) is GateStep.IAC_GENERATION
    assert step_for_command("npm test", S.GATHERING) is None


def test_coerce_gate_step():
    assert coerce_gate_step("FILE_GENERATION") is GateStep.FILE_GENERATION
    with pytest.raises(ValidationError):
        coerce_gate_step("painting")


async def test_file_generation_requires_container_files(orchestrator, deployment):
    dep_id = deployment.deployment_id

    check = await orchestrator.gate.check_step_completion(dep_id, "file_generation")
    assert not check.complete
    assert check.reason == "Missing required files: Dockerfile, docker-compose.yml"

    _write_container_files(orchestrator, dep_id)

    check = await orchestrator.gate.check_step_completion(dep_id, GateStep.FILE_GENERATION)
    assert check.complete
    optional = [item for item in check.checks if not item.required]
    assert {item.name for item in optional} == {"deploy.sh exists", "build.sh exists", ".dockerignore exists"}
    assert not any(item.passed for item in optional)


async def test_env_collection_uses_env_file(orchestrator, deployment):
    dep_id = deployment.deployment_id
    workspace = orchestrator.workspaces.get(dep_id)

    workspace.write_text(".env", "# nothing yet\n")
    check = await orchestrator.gate.check_step_completion(dep_id, "env_collection")
    assert not check.complete
    assert check.reason == ".env has no variables"

    workspace.write_text(".env", "DATABASE_URL=postgres://db\nPORT=3000\n")
    check = await orchestrator.gate.check_step_completion(dep_id, "env_collection")
    assert check.complete


async def test_iac_generation_needs_config_and_validation(orchestrator, deployment):
    dep_id = deployment.deployment_id
    workspace = orchestrator.workspaces.get(dep_id)
    workspace.write_text("terraform/main.tf", 'terraform {}\n')

    check = await orchestrator.gate.check_step_completion(dep_id, "iac_generation")
    assert not check.complete
    assert check.reason == "IaC configuration not validated"

    await orchestrator.audit.record(
        dep_id,
        LogLevel.INFO,
        "Command completed in 12ms",
        LogSource.IAC,
        metadata={"event": "end", "command": "terraform validate", "exit_code": 0},
    )
    check = await orchestrator.gate.check_step_completion(dep_id, "iac_generation")
    assert check.complete


async def test_sandbox_results_file(orchestrator, deployment):
    dep_id = deployment.deployment_id
    workspace = orchestrator.workspaces.get(dep_id)

    workspace.write_text(".deploy/sandbox_results.json", json.dumps({"passed": False}))
    assert not (await orchestrator.gate.check_step_completion(dep_id, "sandbox_testing")).complete

    workspace.write_text(".deploy/sandbox_results.json", json.dumps({"passed": True}))
    assert (await orchestrator.gate.check_step_completion(dep_id, "sandbox_testing")).complete


async def test_unknown_deployment_is_incomplete(orchestrator):
    check = await orchestrator.gate.check_step_completion("missing", "env_collection")
    assert not check.complete
    assert check.reason == "Deployment not found"


async def test_mark_step_complete_is_idempotent(orchestrator, deployment):
    dep_id = deployment.deployment_id
    subscription = orchestrator.subscribe(dep_id)

    first = await orchestrator.gate.mark_step_complete(dep_id, "credential_collection", {"by": "alice"})
    second = await orchestrator.gate.mark_step_complete(dep_id, "credential_collection", {"by": "bob"})

    assert first["already_complete"] is False
    assert second["already_complete"] is True
    assert second["completed_at"] == first["completed_at"]
    assert second["metadata"] == {"by": "alice"}

    emitted = [event.type for event in subscription.drain()]
    assert emitted.count("gate_step_completed") == 1

    check = await orchestrator.gate.check_step_completion(dep_id, "credential_collection")
    assert check.complete
    assert check.checks[0].name == "recorded"


async def test_explain_reports_blocking_dependency(orchestrator, deployment):
    dep_id = deployment.deployment_id

    ok, blocking, reason = await orchestrator.gate.explain(dep_id, "iac_generation")
    assert not ok
    assert blocking == "credential_collection"
    assert reason.startswith("Dependency step 'credential_collection' not complete")

    await orchestrator.gate.mark_step_complete(dep_id, "credential_collection")
    ok, blocking, _ = await orchestrator.gate.explain(dep_id, "iac_generation")
    assert not ok
    assert blocking == "env_collection"

    await orchestrator.gate.mark_step_complete(dep_id, "env_collection")
    assert await orchestrator.gate.can_proceed_to_next_step(dep_id, "iac_generation")


async def test_reset_step(orchestrator, deployment):
    dep_id = deployment.deployment_id
    await orchestrator.gate.mark_step_complete(dep_id, "sandbox_testing")

    assert await orchestrator.gate.reset_step(dep_id, "sandbox_testing")
    assert not await orchestrator.gate.reset_step(dep_id, "sandbox_testing")

    reloaded = await orchestrator.get_deployment(dep_id)
    assert "sandbox_testing" not in reloaded.step_status


async def test_checklist_and_statuses(orchestrator, deployment):
    dep_id = deployment.deployment_id

    checklist = await orchestrator.gate.get_step_checklist(dep_id, "iac_generation")
    assert checklist["requirements"] == ["terraform/main.tf"]
    assert checklist["dependencies"] == ["credential_collection", "env_collection"]
    assert checklist["complete"] is False

    statuses = await orchestrator.gate.get_step_statuses(dep_id)
    assert list(statuses) == [step.value for step in GateStep]


async def test_auto_complete_after_docker_build(orchestrator, deployment):
    dep_id = deployment.deployment_id

    assert await orchestrator.gate.auto_complete_for_command(dep_id, "docker build -t app .") is None

    _write_container_files(orchestrator, dep_id)
    marked = await orchestrator.gate.auto_complete_for_command(dep_id, "docker build -t app .")

    assert marked == "file_generation"
    reloaded = await orchestrator.get_deployment(dep_id)
    record = reloaded.step_status["file_generation"]
    assert record["metadata"]["auto_completed"] is True
    assert record["metadata"]["trigger_command"] == "docker build -t app ."

    # Already recorded: nothing more to do
    assert await orchestrator.gate.auto_complete_for_command(dep_id, "docker build -t app .") is None


async def test_successful_command_triggers_auto_complete(orchestrator, deployment):
    dep_id = deployment.deployment_id
    _write_container_files(orchestrator, dep_id)

    await orchestrator.run_command(dep_id, "echo docker build done")
    await orchestrator.background.join(timeout=5)

    reloaded = await orchestrator.get_deployment(dep_id)
    assert reloaded.step_status["file_generation"]["complete"] is True


async def test_auto_complete_swallows_errors(orchestrator):
    assert await orchestrator.gate.auto_complete_for_command("missing", "docker build .") is None


async def test_advance_is_gate_checked(orchestrator, deployment):
    dep_id = deployment.deployment_id
    for status in (S.GITHUB_INPUT, S.ANALYZING, S.ENV_COLLECTION):
        await orchestrator.advance(dep_id, status)

    with pytest.raises(GateBlockedError) as excinfo:
        await orchestrator.advance(dep_id, S.CREDENTIAL_COLLECTION)
    assert excinfo.value.blocking_step == "file_generation"
    assert (await orchestrator.get_deployment(dep_id)).status is S.ENV_COLLECTION

    await orchestrator.gate.mark_step_complete(dep_id, "file_generation")
    updated = await orchestrator.advance(dep_id, S.CREDENTIAL_COLLECTION)
    assert updated.status is S.CREDENTIAL_COLLECTION


async def test_advance_checks_transition_before_gate(orchestrator, deployment):
    with pytest.raises(InvalidTransitionError):
        await orchestrator.advance(deployment.deployment_id, S.SANDBOX_TESTING)


async def test_failure_status_resets_gate_step(orchestrator, deployment):
    dep_id = deployment.deployment_id
    gate = orchestrator.gate
    for step in ("file_generation", "env_collection", "credential_collection", "iac_generation"):
        await gate.mark_step_complete(dep_id, step)

    for status in (S.GITHUB_INPUT, S.ANALYZING, S.PLANNING, S.VALIDATING, S.VALIDATION_FAILED):
        await orchestrator.advance(dep_id, status)

    reloaded = await orchestrator.get_deployment(dep_id)
    assert "iac_generation" not in reloaded.step_status
    assert reloaded.step_status["file_generation"]["complete"] is True
