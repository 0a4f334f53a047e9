import asyncio
import os
import time

import pytest

from deploy_engine.errors import CommandCancelledError, CommandTimeoutError, ValidationError
from deploy_engine.services.shell import (
    CommandCategory,
    CommandRunner,
    classify_command,
    merge_path,
    shell_candidates,
)


@pytest.mark.parametrize(
    "command,expected",
    [
        ("terraform apply -auto-approve", CommandCategory.INFRA_APPLY),
        ("tofu destroy", CommandCategory.INFRA_APPLY),
        ("npm run build", CommandCategory.BUILD),
        ("docker build -t app .", CommandCategory.BUILD),
        ("terraform init -input=false", CommandCategory.BUILD),
        ("terraform validate", CommandCategory.PROBE),
        ("node --version", CommandCategory.PROBE),
        ("echo hello", CommandCategory.PROBE),
        ("./deploy.sh", CommandCategory.DEFAULT),
    ],
)
def test_classify_command(command, expected):
    assert classify_command(command) is expected


def test_merge_path_keeps_first_occurrence():
    merged = merge_path(os.pathsep.join(["/usr/bin", "/opt/tools"]), ["/usr/bin", "/extra", "/extra"])
    assert merged.split(os.pathsep) == ["/usr/bin", "/opt/tools", "/extra"]


def test_merge_path_without_existing():
    assert merge_path(None, ["/a"]) == "/a"


def test_shell_candidates_prefer_configured():
    candidates = shell_candidates("/custom/sh")
    assert candidates[0] == "/custom/sh"
    assert "/bin/sh" in candidates
    assert len(candidates) == len(set(candidates))


def test_shell_args_login_mode():
    runner = CommandRunner(shell="/bin/bash", login_shell=True)
    if os.path.basename(runner.shell) in ("bash", "zsh"):
        assert runner.shell_args("ls")[1:] == ["-l", "-c", "ls"]
    plain = CommandRunner(shell="/bin/sh")
    assert plain.shell_args("ls")[-2:] == ["-c", "ls"]
    assert "-l" not in plain.shell_args("ls")


def test_build_env_override_wins():
    runner = CommandRunner()
    env = runner.build_env({"FOO": "bar", "PATH": "/only"})
    assert env["FOO"] == "bar"
    assert env["PATH"] == "/only"


async def test_echo_streams_one_chunk(runner, tmp_path):
    chunks = []

    result = await runner.execute(tmp_path, "echo ok", on_stdout=chunks.append)

    assert result.success
    assert result.exit_code == 0
    assert result.stdout == "ok\n"
    assert chunks == ["ok\n"]


async def test_non_zero_exit_is_a_result(runner, tmp_path):
    result = await runner.execute(tmp_path, "echo oops >&2; exit 7")

    assert not result.success
    assert result.exit_code == 7
    assert result.stderr == "oops\n"


async def test_async_callbacks_and_env(runner, tmp_path):
    seen = []

    async def collect(chunk):
        seen.append(chunk)

    result = await runner.execute(tmp_path, 'echo "$GREETING"', env={"GREETING": "hi"}, on_stdout=collect)

    assert result.stdout == "hi\n"
    assert "".join(seen) == "hi\n"


async def test_runs_in_working_directory(runner, tmp_path):
    result = await runner.execute(tmp_path, "pwd")
    assert os.path.realpath(result.stdout.strip()) == os.path.realpath(tmp_path)


async def test_failing_callback_does_not_fail_command(runner, tmp_path):
    def explode(chunk):
        raise RuntimeError("observer broke")

    result = await runner.execute(tmp_path, "echo fine", on_stdout=explode)
    assert result.success
    assert result.stdout == "fine\n"


async def test_timeout_kills_process_ignoring_sigterm(runner, tmp_path):
    started = time.monotonic()

    with pytest.raises(CommandTimeoutError) as excinfo:
        await runner.execute(tmp_path, "trap '' TERM; sleep 30", timeout=0.5)

    elapsed = time.monotonic() - started
    assert excinfo.value.timeout == 0.5
    assert elapsed < 0.5 + runner.kill_grace + 3.0


async def test_cancel_event_terminates(runner, tmp_path):
    cancel = asyncio.Event()

    async def cancel_soon():
        await asyncio.sleep(0.2)
        cancel.set()

    trigger = asyncio.create_task(cancel_soon())
    started = time.monotonic()
    with pytest.raises(CommandCancelledError):
        await runner.execute(tmp_path, "sleep 30", cancel_event=cancel, timeout=60)
    await trigger

    assert time.monotonic() - started < 5


async def test_empty_command_rejected(runner, tmp_path):
    with pytest.raises(ValidationError):
        await runner.execute(tmp_path, "   ")


async def test_missing_working_directory_rejected(runner, tmp_path):
    with pytest.raises(ValidationError):
        await runner.execute(tmp_path / "nope", "echo hi")


async def test_locate_tool(runner):
    assert await runner.locate_tool("sh") is not None
    assert await runner.locate_tool("definitely-not-a-real-tool-xyz") is None
    assert await runner.locate_tool("bad name; rm") is None
