import asyncio

import pytest

from deploy_engine.db.models import LogSource
from deploy_engine.errors import (
    CommandCancelledError,
    CommandExecutionError,
    ConflictError,
    DeploymentNotFoundError,
    ValidationError,
)
from deploy_engine.services.commands import check_command, infer_source


@pytest.mark.parametrize(
    "command,source",
    [
        ("terraform plan", LogSource.IAC),
        ("/usr/local/bin/tofu init", LogSource.IAC),
        ("docker compose up -d", LogSource.DOCKER),
        ("git status", LogSource.GIT),
        ("aws sts get-caller-identity", LogSource.CLOUD),
        ("npm install", LogSource.CLI),
        ("echo 'unterminated", LogSource.CLI),
    ],
)
def test_infer_source(command, source):
    assert infer_source(command) is source


@pytest.mark.parametrize(
    "command",
    [
        "rm -rf /",
        "rm -rf ../other",
        "sudo rm -rf /var/lib",
        "mkfs.ext4 /dev/sda1",
        "dd if=/dev/zero of=/dev/sda",
        "echo x > /dev/sda",
        "shutdown -h now",
        "chmod -R 777 /",
        ":(){ :|:& };:",
        "",
        "echo " + "x" * 10_000,
    ],
)
def test_check_command_rejects(command):
    with pytest.raises(ValidationError):
        check_command(command)


@pytest.mark.parametrize(
    "command", ["rm -rf node_modules", "rm -rf dist build .next", "terraform destroy -auto-approve"]
)
def test_check_command_allows(command):
    check_command(command)


async def test_dangerous_command_is_not_run(orchestrator, deployment):
    dep_id = deployment.deployment_id

    with pytest.raises(ValidationError) as excinfo:
        await orchestrator.run_command(dep_id, "rm -rf /")

    assert excinfo.value.code == "VALIDATION_ERROR"
    assert not orchestrator.commands.is_busy(dep_id)
    assert await orchestrator.list_logs(dep_id, source="cli") == []


async def _wait_until_busy(orchestrator, deployment_id, timeout=5.0):
    for _ in range(int(timeout / 0.02)):
        if orchestrator.commands.is_busy(deployment_id):
            return
        await asyncio.sleep(0.02)
    raise AssertionError("command never started")


async def test_run_command_writes_audit_markers(orchestrator, deployment):
    dep_id = deployment.deployment_id

    result = await orchestrator.run_command(dep_id, "echo hello")
    await orchestrator.background.join(timeout=2)

    assert result.success
    assert result.stdout == "hello\n"

    logs = await orchestrator.list_logs(dep_id, source="cli")
    events = [(entry["metadata"] or {}).get("event") for entry in logs]
    assert events[0] == "start"
    assert events[-1] == "end"
    assert "hello" in [entry["message"] for entry in logs]
    assert logs[-1]["metadata"]["status"] == "completed"
    assert logs[-1]["metadata"]["exit_code"] == 0


async def test_failed_command_is_recorded(orchestrator, deployment):
    dep_id = deployment.deployment_id

    result = await orchestrator.run_command(dep_id, "echo broken >&2; exit 3")

    assert result.exit_code == 3
    logs = await orchestrator.list_logs(dep_id, level="error")
    assert any(entry["message"] == "broken" for entry in logs)
    assert logs[-1]["metadata"]["status"] == "failed"


async def test_check_raises_command_execution_error(orchestrator, deployment):
    with pytest.raises(CommandExecutionError) as excinfo:
        await orchestrator.run_command(deployment.deployment_id, "echo nope >&2; exit 7", check=True)

    assert excinfo.value.exit_code == 7
    assert excinfo.value.stderr == "nope\n"
    assert excinfo.value.context["command"] == "echo nope >&2; exit 7"


async def test_output_is_published(orchestrator, deployment):
    dep_id = deployment.deployment_id
    subscription = orchestrator.subscribe(dep_id)

    await orchestrator.run_command(dep_id, "echo streamed")

    types = [event.type for event in subscription.drain()]
    assert types[0] == "command_started"
    assert "command_output" in types
    assert types[-1] == "command_finished"
    subscription.close()


async def test_second_command_conflicts(orchestrator, deployment):
    dep_id = deployment.deployment_id
    first = asyncio.create_task(orchestrator.run_command(dep_id, "sleep 10", timeout=30))
    await _wait_until_busy(orchestrator, dep_id)

    with pytest.raises(ConflictError):
        await orchestrator.run_command(dep_id, "echo second")

    assert orchestrator.commands.cancel(dep_id)
    with pytest.raises(CommandCancelledError):
        await first
    assert not orchestrator.commands.is_busy(dep_id)


async def test_different_deployments_run_concurrently(orchestrator, deployment):
    other = await orchestrator.create_deployment()

    results = await asyncio.gather(
        orchestrator.run_command(deployment.deployment_id, "sleep 0.3; echo a"),
        orchestrator.run_command(other.deployment_id, "sleep 0.3; echo b"),
    )

    assert [r.stdout for r in results] == ["a\n", "b\n"]


async def test_cwd_is_relative_to_workspace(orchestrator, deployment):
    dep_id = deployment.deployment_id

    result = await orchestrator.run_command(dep_id, "pwd", cwd="sub/dir")

    workspace = orchestrator.workspaces.get(dep_id)
    assert result.stdout.strip().endswith("sub/dir")
    assert workspace.is_dir("sub/dir")


async def test_cwd_cannot_escape_workspace(orchestrator, deployment):
    with pytest.raises(ValidationError):
        await orchestrator.run_command(deployment.deployment_id, "pwd", cwd="../../")


async def test_unknown_iac_operation(orchestrator, deployment):
    with pytest.raises(ValidationError) as excinfo:
        await orchestrator.run_iac(deployment.deployment_id, "explode")
    assert "apply" in excinfo.value.context["allowed"]


async def test_run_command_unknown_deployment(orchestrator):
    with pytest.raises(DeploymentNotFoundError):
        await orchestrator.run_command("missing", "echo hi")


async def test_cleanup_removes_owned_workspace(orchestrator, deployment):
    dep_id = deployment.deployment_id
    root = orchestrator.workspaces.get(dep_id).root
    assert root.is_dir()

    await orchestrator.cleanup(dep_id)

    assert not root.exists()
    assert dep_id not in orchestrator.workspaces
