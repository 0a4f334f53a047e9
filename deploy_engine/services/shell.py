"""
CommandRunner - Runs shell commands as child processes with live output.

This is the lowest layer of command execution. It knows nothing about
deployments: it takes a working directory and a command string and
returns a CommandResult.

Guarantees:
- Output callbacks fire per chunk, in arrival order per stream, while the
  process is still running; the full buffers are returned at the end
- Every invocation ends with an exit code or an explicit error:
  CommandTimeoutError (timeout) or CommandCancelledError (cancel_event)
- On timeout/cancel the whole process group gets SIGTERM, then SIGKILL
  after `kill_grace` seconds, so a process ignoring SIGTERM still dies
- A non-zero exit code is NOT an exception here (success=False); callers
  that need one raise CommandExecutionError themselves

The runner is reentrant: any number of commands may run concurrently.
"""

import asyncio
import codecs
import enum
import inspect
import os
import re
import signal
import subprocess
import sys
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Awaitable, Callable, Iterable, Optional, Union

from deploy_engine.config import Settings, get_settings
from deploy_engine.errors import (
    CommandCancelledError,
    CommandTimeoutError,
    ValidationError,
)
from deploy_engine.utils.logging import get_logger

logger = get_logger(__name__)

OutputCallback = Callable[[str], Union[None, Awaitable[None]]]

CHUNK_SIZE = 4096


# ===================
# Command Classification
# ===================

class CommandCategory(str, enum.Enum):
    """Timeout class of a command."""
    PROBE = "probe"
    BUILD = "build"
    INFRA_APPLY = "infra_apply"
    DEFAULT = "default"


_INFRA_APPLY_PATTERNS = [
    re.compile(r"\b(terraform|tofu)\b.*\b(apply|destroy)\b"),
    re.compile(r"\bpulumi\b.*\b(up|destroy)\b"),
    re.compile(r"\bcdk\b.*\b(deploy|destroy)\b"),
    re.compile(r"\baws\b.*\bcloudformation\b.*\b(deploy|create-stack|update-stack)\b"),
]

_BUILD_PATTERNS = [
    re.compile(r"\b(npm|yarn|pnpm)\b.*\b(install|ci|build|run|test)\b"),
    re.compile(r"^(yarn|pnpm)\s*$"),
    re.compile(r"\bpip3?\b.*\binstall\b"),
    re.compile(r"\bdocker\b.*\b(build|push|pull|compose)\b"),
    re.compile(r"\bdocker-compose\b"),
    re.compile(r"\b(terraform|tofu)\b.*\b(init|plan)\b"),
    re.compile(r"\bgit\b.*\b(clone|fetch|pull)\b"),
    re.compile(r"^\s*make\b"),
]

_PROBE_PATTERNS = [
    re.compile(r"(^|\s)--version\b"),
    re.compile(r"^\s*(which|command -v|type)\s"),
    re.compile(r"\b(terraform|tofu)\b.*\b(version|validate|fmt)\b"),
    re.compile(r"\bdocker\b\s+(info|version|ps)\b"),
    re.compile(r"\baws\b.*\bsts\b.*\bget-caller-identity\b"),
    re.compile(r"\bgit\b\s+(status|rev-parse|remote)\b"),
    re.compile(r"^\s*(echo|test|ls|pwd|true)\b"),
]


def classify_command(command: str) -> CommandCategory:
    """
    Pick the timeout category of a command.

    Infra apply wins over build, build over probe; anything unmatched is
    DEFAULT.
    """
    lowered = command.strip().lower()
    if any(p.search(lowered) for p in _INFRA_APPLY_PATTERNS):
        return CommandCategory.INFRA_APPLY
    if any(p.search(lowered) for p in _BUILD_PATTERNS):
        return CommandCategory.BUILD
    if any(p.search(lowered) for p in _PROBE_PATTERNS):
        return CommandCategory.PROBE
    return CommandCategory.DEFAULT


# ===================
# Shell and PATH Resolution
# ===================

def shell_candidates(configured: Optional[str] = None) -> list[str]:
    """Ordered, de-duplicated shell candidates."""
    platform_default = "/bin/zsh" if sys.platform == "darwin" else "/bin/bash"
    ordered = [configured, os.environ.get("SHELL"), platform_default, "/bin/bash", "/bin/sh"]
    return _dedupe(c for c in ordered if c)


def resolve_shell(configured: Optional[str] = None) -> str:
    """Return the first existing, executable shell candidate."""
    for candidate in shell_candidates(configured):
        if os.path.isfile(candidate) and os.access(candidate, os.X_OK):
            return candidate
    return "/bin/sh"


def default_tool_dirs() -> list[str]:
    """Well-known install locations of the tools the engine drives."""
    dirs = [
        "/usr/local/bin",
        "/usr/bin",
        "/bin",
        "/opt/homebrew/bin",
        "/usr/local/opt",
    ]
    home = os.environ.get("HOME")
    if home:
        dirs.extend([f"{home}/.local/bin", f"{home}/.cargo/bin"])
    # AWS CLI v2 and v1 default locations
    dirs.extend(["/usr/local/aws-cli/v2/current/bin", "/usr/local/aws-cli/bin"])
    return dirs


def merge_path(existing: Optional[str], extra: Iterable[str]) -> str:
    """Append extra directories to a PATH string, keeping first occurrences."""
    inherited = [p for p in (existing or "").split(os.pathsep) if p]
    return os.pathsep.join(_dedupe([*inherited, *extra]))


def _dedupe(items: Iterable[str]) -> list[str]:
    seen = set()
    result = []
    for item in items:
        if item not in seen:
            seen.add(item)
            result.append(item)
    return result


# ===================
# Results
# ===================

@dataclass
class CommandResult:
    """
    Outcome of one command that ran to completion.

    Attributes:
        success: True when exit_code == 0
        exit_code: Process exit code (negative: killed by signal)
        stdout / stderr: Full decoded output
        duration_ms: Wall time from spawn to exit
    """
    command: str
    cwd: str
    shell: str
    exit_code: int
    stdout: str = ""
    stderr: str = ""
    duration_ms: int = 0
    timeout: Optional[float] = None
    env_overrides: dict[str, str] = field(default_factory=dict)

    @property
    def success(self) -> bool:
        return self.exit_code == 0

    def to_dict(self) -> dict[str, Any]:
        return {
            "success": self.success,
            "exit_code": self.exit_code,
            "stdout": self.stdout,
            "stderr": self.stderr,
            "duration_ms": self.duration_ms,
        }


class _Stream:
    """Accumulated output of one pipe plus its live callback."""

    def __init__(self, name: str, callback: Optional[OutputCallback]):
        self.name = name
        self.callback = callback
        self.parts: list[str] = []

    @property
    def text(self) -> str:
        return "".join(self.parts)


# ===================
# Runner
# ===================

class CommandRunner:
    """
    Runs commands through a shell with a merged PATH.

    Usage:
        runner = CommandRunner.from_settings()
        result = await runner.execute(
            "/tmp/ws",
            "npm run build",
            on_stdout=lambda chunk: print(chunk, end=""),
        )
        if not result.success:
            print(result.stderr)
    """

    def __init__(
        self,
        shell: Optional[str] = None,
        login_shell: bool = False,
        extra_path: Optional[list[str]] = None,
        timeouts: Optional[dict[CommandCategory, float]] = None,
        kill_grace: float = 3.0,
        probe_tools: tuple[str, ...] = ("aws",),
    ):
        """
        Initialize the runner.

        Args:
            shell: Preferred shell; see shell_candidates() for fallbacks
            login_shell: Pass -l to bash/zsh (sources profile files)
            extra_path: Directories appended to the curated tool dirs
            timeouts: Default timeout per CommandCategory, in seconds
            kill_grace: Seconds between SIGTERM and SIGKILL
            probe_tools: Tools located once with `command -v` and added
                         to PATH when found outside the curated dirs
        """
        self.shell = resolve_shell(shell)
        self.login_shell = login_shell
        self.extra_path = list(extra_path or [])
        self.timeouts = {
            CommandCategory.PROBE: 10.0,
            CommandCategory.BUILD: 300.0,
            CommandCategory.INFRA_APPLY: 1800.0,
            CommandCategory.DEFAULT: 300.0,
        }
        if timeouts:
            self.timeouts.update(timeouts)
        self.kill_grace = kill_grace
        self.probe_tools = probe_tools
        self._located_dirs: Optional[list[str]] = None

    @classmethod
    def from_settings(cls, settings: Optional[Settings] = None) -> "CommandRunner":
        settings = settings or get_settings()
        return cls(
            shell=settings.shell,
            login_shell=settings.login_shell,
            extra_path=settings.extra_path_dirs,
            timeouts={
                CommandCategory.PROBE: settings.probe_timeout,
                CommandCategory.BUILD: settings.build_timeout,
                CommandCategory.INFRA_APPLY: settings.infra_apply_timeout,
                CommandCategory.DEFAULT: settings.default_timeout,
            },
            kill_grace=settings.kill_grace,
        )

    def default_timeout(self, command: str) -> float:
        return self.timeouts[classify_command(command)]

    def shell_args(self, command: str) -> list[str]:
        name = os.path.basename(self.shell)
        if self.login_shell and name in ("bash", "zsh"):
            return [self.shell, "-l", "-c", command]
        return [self.shell, "-c", command]

    def build_env(self, overrides: Optional[dict[str, str]] = None) -> dict[str, str]:
        """
        Environment for a child process.

        Inherited environment + merged PATH, then caller overrides (an
        override of PATH replaces the merged value).
        """
        env = dict(os.environ)
        extra = [*default_tool_dirs(), *self.extra_path, *(self._located_dirs or [])]
        env["PATH"] = merge_path(env.get("PATH"), extra)
        if overrides:
            env.update({k: str(v) for k, v in overrides.items()})
        return env

    async def locate_tool(self, name: str, timeout: Optional[float] = None) -> Optional[str]:
        """
        Find the directory holding an executable via `command -v`.

        Returns:
            The directory, or None if the tool is missing or the lookup
            failed for any reason
        """
        if not re.fullmatch(r"[A-Za-z0-9._+-]+", name):
            return None
        probe_timeout = timeout if timeout is not None else self.timeouts[CommandCategory.PROBE]
        try:
            process = await asyncio.create_subprocess_exec(
                self.shell,
                "-c",
                f"command -v {name}",
                stdin=subprocess.DEVNULL,
                stdout=subprocess.PIPE,
                stderr=subprocess.DEVNULL,
                env=self.build_env(),
            )
        except OSError:
            return None

        try:
            stdout, _ = await asyncio.wait_for(process.communicate(), probe_timeout)
        except asyncio.TimeoutError:
            process.kill()
            await process.wait()
            return None

        location = stdout.decode("utf-8", errors="replace").strip()
        if process.returncode != 0 or not location.startswith("/"):
            return None
        return os.path.dirname(location)

    async def _ensure_tool_dirs(self) -> None:
        if self._located_dirs is not None:
            return
        located = []
        for tool in self.probe_tools:
            directory = await self.locate_tool(tool)
            if directory:
                located.append(directory)
        self._located_dirs = located

    async def execute(
        self,
        working_dir: Union[str, Path],
        command: str,
        *,
        env: Optional[dict[str, str]] = None,
        timeout: Optional[float] = None,
        on_stdout: Optional[OutputCallback] = None,
        on_stderr: Optional[OutputCallback] = None,
        cancel_event: Optional[asyncio.Event] = None,
    ) -> CommandResult:
        """
        Run a command and wait for it.

        Args:
            working_dir: Existing directory the command runs in
            command: Shell command line
            env: Environment overrides
            timeout: Seconds; defaults by classify_command()
            on_stdout / on_stderr: Sync or async per-chunk callbacks
            cancel_event: Setting it terminates the process

        Returns:
            CommandResult (also for non-zero exit codes)

        Raises:
            ValidationError: Empty command or missing working directory
            CommandTimeoutError: Timeout expired (process killed)
            CommandCancelledError: cancel_event was set (process killed)
        """
        if not command or not command.strip():
            raise ValidationError("Command cannot be empty")

        cwd = Path(working_dir)
        if not cwd.is_dir():
            raise ValidationError(
                f"Working directory does not exist: {cwd}",
                context={"cwd": str(cwd)},
            )

        if timeout is None:
            timeout = self.default_timeout(command)

        await self._ensure_tool_dirs()

        started = time.perf_counter()
        process = await asyncio.create_subprocess_exec(
            *self.shell_args(command),
            cwd=str(cwd),
            env=self.build_env(env),
            stdin=subprocess.DEVNULL,
            stdout=subprocess.PIPE,
            stderr=subprocess.PIPE,
            start_new_session=True,
        )
        logger.debug("Started pid %s: %s", process.pid, command)

        live = {"active": True}
        out = _Stream("stdout", on_stdout)
        err = _Stream("stderr", on_stderr)
        readers = [
            asyncio.create_task(self._pump(process.stdout, out, live)),
            asyncio.create_task(self._pump(process.stderr, err, live)),
        ]
        waiter = asyncio.create_task(process.wait())
        cancel_waiter = asyncio.create_task(cancel_event.wait()) if cancel_event else None

        try:
            watch = {waiter}
            if cancel_waiter is not None:
                watch.add(cancel_waiter)
            done, _ = await asyncio.wait(watch, timeout=timeout, return_when=asyncio.FIRST_COMPLETED)

            if waiter not in done:
                live["active"] = False
                await self._terminate(process, waiter, readers)
                if cancel_waiter is not None and cancel_waiter in done:
                    logger.info("Cancelled pid %s: %s", process.pid, command)
                    raise CommandCancelledError(command)
                logger.warning("Timed out after %ss, killed pid %s: %s", timeout, process.pid, command)
                raise CommandTimeoutError(command, timeout, stdout=out.text, stderr=err.text)

            # Exited; collect what is left in the pipes
            _, pending = await asyncio.wait(readers, timeout=self.kill_grace)
            for task in pending:
                task.cancel()
        except asyncio.CancelledError:
            live["active"] = False
            await self._terminate(process, waiter, readers)
            raise
        finally:
            if cancel_waiter is not None:
                cancel_waiter.cancel()

        duration_ms = int((time.perf_counter() - started) * 1000)
        return CommandResult(
            command=command,
            cwd=str(cwd),
            shell=self.shell,
            exit_code=waiter.result(),
            stdout=out.text,
            stderr=err.text,
            duration_ms=duration_ms,
            timeout=timeout,
            env_overrides=dict(env or {}),
        )

    async def _pump(self, reader: asyncio.StreamReader, stream: _Stream, live: dict) -> None:
        decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        while True:
            data = await reader.read(CHUNK_SIZE)
            text = decoder.decode(data, final=not data)
            if text:
                stream.parts.append(text)
                if live["active"]:
                    await self._emit(stream, text)
            if not data:
                return

    async def _emit(self, stream: _Stream, text: str) -> None:
        if stream.callback is None:
            return
        try:
            result = stream.callback(text)
            if inspect.isawaitable(result):
                await result
        except Exception:
            logger.exception("%s callback failed", stream.name)

    async def _terminate(
        self,
        process: asyncio.subprocess.Process,
        waiter: asyncio.Task,
        readers: list[asyncio.Task],
    ) -> None:
        """SIGTERM the process group, SIGKILL after the grace period."""
        self._signal_group(process, signal.SIGTERM)
        await asyncio.wait({waiter, *readers}, timeout=self.kill_grace, return_when=asyncio.ALL_COMPLETED)
        if not waiter.done() or not all(task.done() for task in readers):
            # Leader or a group member is still holding the pipes
            self._signal_group(process, signal.SIGKILL, force=True)
            await asyncio.wait({waiter}, timeout=1.0)

        _, pending = await asyncio.wait(readers, timeout=0.5)
        for task in pending:
            task.cancel()

    @staticmethod
    def _signal_group(process: asyncio.subprocess.Process, sig: int, force: bool = False) -> None:
        if process.returncode is not None and not force:
            return
        try:
            os.killpg(process.pid, sig)
        except ProcessLookupError:
            pass
        except PermissionError:
            if process.returncode is None:
                process.send_signal(sig)
