"""
DeploymentCommandService - Runs commands on behalf of a deployment.

Sits on top of CommandRunner and adds what a deployment needs:
- the deployment's workspace as working directory
- at most one blocking in-flight command per deployment (ConflictError)
- audit log entries (start marker, every chunk, end marker)
- command_output events for live observers
- opportunistic gate auto-completion after a successful command

Audit and event failures are logged and never fail the command.
"""

import asyncio
import re
import shlex
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Awaitable, Callable, Optional

from deploy_engine.config import Settings, get_settings
from deploy_engine.db.models import LogLevel, LogSource
from deploy_engine.db.repository import DeploymentRepository
from deploy_engine.errors import (
    CommandCancelledError,
    CommandExecutionError,
    CommandTimeoutError,
    ConflictError,
    ValidationError,
)
from deploy_engine.services.audit import AuditLog
from deploy_engine.services.background import BackgroundTasks
from deploy_engine.services.events import EventBus
from deploy_engine.services.shell import CommandResult, CommandRunner, OutputCallback
from deploy_engine.services.workspace import Workspace, WorkspaceManager
from deploy_engine.utils.logging import get_logger

logger = get_logger(__name__)

CompletionHook = Callable[[str, str], Awaitable[Any]]

IAC_OPERATIONS = {
    "init": "init -input=false",
    "validate": "validate",
    "fmt": "fmt -recursive",
    "plan": "plan -input=false",
    "apply": "apply -input=false -auto-approve",
    "destroy": "destroy -input=false -auto-approve",
    "output": "output -json",
}

MAX_COMMAND_LENGTH = 10_000

# (pattern, label) pairs; any match rejects the command before it is spawned
DANGEROUS_PATTERNS = [
    (re.compile(r"rm\s+-rf\s+/(\s|\*|$)"), "rm -rf /"),
    (re.compile(r"rm\s+-rf\s+.*\.\.(/|\s|$)"), "rm -rf with parent directory"),
    (re.compile(r"sudo\s+rm\s+-rf"), "sudo rm -rf"),
    (re.compile(r"\bmkfs\."), "mkfs"),
    (re.compile(r"\bdd\s+if=.*\bof="), "dd if=... of=..."),
    (re.compile(r">\s*/dev/sd"), "write to disk device"),
    (re.compile(r"\bformat\s+[a-z]:", re.IGNORECASE), "format disk"),
    (re.compile(r"\b(shutdown|reboot|halt|poweroff)\b", re.IGNORECASE), "shutdown / reboot"),
    (re.compile(r"chmod\s+(-R\s+)?777\s+/(\s|$)"), "chmod 777 /"),
    (re.compile(r":\(\)\s*\{\s*:\|:&\s*\};:"), "fork bomb"),
]


def check_command(command: str) -> None:
    """
    Reject empty, oversized or destructive command lines.

    Raises:
        ValidationError: The command must not be run
    """
    if not command or not command.strip():
        raise ValidationError("Command cannot be empty")
    if len(command) > MAX_COMMAND_LENGTH:
        raise ValidationError(
            f"Command too long (max {MAX_COMMAND_LENGTH} characters)",
            context={"length": len(command)},
        )
    for pattern, label in DANGEROUS_PATTERNS:
        if pattern.search(command):
            raise ValidationError(
                f"Dangerous command pattern detected: {label}",
                context={"command": command, "pattern": label},
            )


def infer_source(command: str) -> LogSource:
    """Map a command line to the tool family recorded in the audit log."""
    try:
        first = shlex.split(command)[0] if command.strip() else ""
    except ValueError:
        first = command.strip().split(" ", 1)[0]
    tool = Path(first).name.lower()
    if tool in ("terraform", "tofu", "terragrunt", "pulumi"):
        return LogSource.IAC
    if tool in ("docker", "docker-compose", "podman"):
        return LogSource.DOCKER
    if tool in ("git", "gh"):
        return LogSource.GIT
    if tool in ("aws", "gcloud", "az", "kubectl", "eksctl"):
        return LogSource.CLOUD
    return LogSource.CLI


@dataclass
class InFlightCommand:
    """The single blocking command of a deployment."""
    command: str
    cancel_event: asyncio.Event = field(default_factory=asyncio.Event)
    started_at: float = field(default_factory=time.monotonic)


class DeploymentCommandService:
    """
    Per-deployment command execution.

    Usage:
        result = await commands.run(deployment_id, "npm run build")
        await commands.run_iac(deployment_id, "plan")
        commands.cancel(deployment_id)
    """

    def __init__(
        self,
        runner: CommandRunner,
        workspaces: WorkspaceManager,
        deployments: DeploymentRepository,
        audit: AuditLog,
        events: EventBus,
        background: BackgroundTasks,
        completion_hook: Optional[CompletionHook] = None,
        settings: Optional[Settings] = None,
    ):
        """
        Initialize the service.

        Args:
            completion_hook: Called as hook(deployment_id, command) in the
                             background after every successful command
        """
        self.runner = runner
        self.workspaces = workspaces
        self.deployments = deployments
        self.audit = audit
        self.events = events
        self.background = background
        self.completion_hook = completion_hook
        self.settings = settings or get_settings()
        self._inflight: dict[str, InFlightCommand] = {}

    # ===================
    # Registry
    # ===================

    def is_busy(self, deployment_id: str) -> bool:
        return deployment_id in self._inflight

    def current_command(self, deployment_id: str) -> Optional[str]:
        inflight = self._inflight.get(deployment_id)
        return inflight.command if inflight else None

    def cancel(self, deployment_id: str) -> bool:
        """
        Terminate the in-flight command of a deployment.

        Returns:
            True if a command was running
        """
        inflight = self._inflight.get(deployment_id)
        if inflight is None:
            return False
        inflight.cancel_event.set()
        return True

    async def workspace(self, deployment_id: str) -> Workspace:
        """Resolve (and create on first use) the deployment's workspace."""
        if deployment_id in self.workspaces:
            return self.workspaces.get(deployment_id)
        deployment = await self.deployments.require(deployment_id)
        return self.workspaces.get(deployment_id, path=deployment.workspace_path)

    # ===================
    # Execution
    # ===================

    async def run(
        self,
        deployment_id: str,
        command: str,
        *,
        cwd: Optional[str] = None,
        env: Optional[dict[str, str]] = None,
        timeout: Optional[float] = None,
        source: Optional[LogSource] = None,
        on_stdout: Optional[OutputCallback] = None,
        on_stderr: Optional[OutputCallback] = None,
        check: bool = False,
    ) -> CommandResult:
        """
        Run a command in the deployment workspace.

        Args:
            cwd: Directory relative to the workspace root
            source: Audit log source; inferred from the command if omitted
            check: Raise CommandExecutionError on a non-zero exit code

        Raises:
            ValidationError: Empty or dangerous command (see check_command)
            ConflictError: Another command of this deployment is running
            CommandTimeoutError / CommandCancelledError: see CommandRunner
            CommandExecutionError: Non-zero exit code and check=True
        """
        check_command(command)
        if self.is_busy(deployment_id):
            raise ConflictError(
                f"Deployment {deployment_id} already has a command running",
                context={
                    "deployment_id": deployment_id,
                    "running": self.current_command(deployment_id),
                },
            )

        inflight = InFlightCommand(command)
        self._inflight[deployment_id] = inflight
        try:
            return await self._run(
                deployment_id,
                command,
                inflight,
                cwd=cwd,
                env=env,
                timeout=timeout,
                source=source or infer_source(command),
                on_stdout=on_stdout,
                on_stderr=on_stderr,
                check=check,
            )
        finally:
            if self._inflight.get(deployment_id) is inflight:
                del self._inflight[deployment_id]

    async def _run(
        self,
        deployment_id: str,
        command: str,
        inflight: InFlightCommand,
        *,
        cwd: Optional[str],
        env: Optional[dict[str, str]],
        timeout: Optional[float],
        source: LogSource,
        on_stdout: Optional[OutputCallback],
        on_stderr: Optional[OutputCallback],
        check: bool,
    ) -> CommandResult:
        workspace = await self.workspace(deployment_id)
        workdir = workspace.resolve_path(cwd) if cwd else workspace.root
        if cwd:
            workdir.mkdir(parents=True, exist_ok=True)

        await self.audit.record(
            deployment_id,
            LogLevel.INFO,
            f"Executing: {command}",
            source,
            metadata={"event": "start", "command": command, "cwd": str(workdir)},
        )
        await self.events.emit(
            "command_started",
            deployment_id,
            {"command": command, "cwd": str(workdir)},
        )

        async def forward_stdout(chunk: str) -> None:
            await self._forward(deployment_id, command, source, "stdout", chunk, on_stdout)

        async def forward_stderr(chunk: str) -> None:
            await self._forward(deployment_id, command, source, "stderr", chunk, on_stderr)

        try:
            result = await self.runner.execute(
                workdir,
                command,
                env=env,
                timeout=timeout,
                on_stdout=forward_stdout,
                on_stderr=forward_stderr,
                cancel_event=inflight.cancel_event,
            )
        except CommandTimeoutError as e:
            await self._finish(deployment_id, command, source, "timeout", LogLevel.ERROR, e.message)
            raise
        except CommandCancelledError as e:
            await self._finish(deployment_id, command, source, "cancelled", LogLevel.WARN, e.message)
            raise

        if result.success:
            await self._finish(
                deployment_id,
                command,
                source,
                "completed",
                LogLevel.INFO,
                f"Command completed in {result.duration_ms}ms",
                exit_code=result.exit_code,
                duration_ms=result.duration_ms,
            )
            if self.completion_hook is not None:
                self.background.spawn(
                    self.completion_hook(deployment_id, command),
                    name=f"auto-complete:{deployment_id}",
                )
        else:
            await self._finish(
                deployment_id,
                command,
                source,
                "failed",
                LogLevel.ERROR,
                f"Command failed with code {result.exit_code}",
                exit_code=result.exit_code,
                duration_ms=result.duration_ms,
            )
            if check:
                raise CommandExecutionError(
                    command,
                    result.exit_code,
                    stderr=result.stderr,
                    stdout=result.stdout,
                )

        return result

    async def _forward(
        self,
        deployment_id: str,
        command: str,
        source: LogSource,
        stream: str,
        chunk: str,
        callback: Optional[OutputCallback],
    ) -> None:
        level = LogLevel.INFO if stream == "stdout" else LogLevel.ERROR
        await self.audit.record(deployment_id, level, chunk, source, metadata={"stream": stream})
        await self.events.emit(
            "command_output",
            deployment_id,
            {"command": command, "stream": stream, "chunk": chunk},
        )
        if callback is not None:
            result = callback(chunk)
            if asyncio.iscoroutine(result):
                await result

    async def _finish(
        self,
        deployment_id: str,
        command: str,
        source: LogSource,
        status: str,
        level: LogLevel,
        message: str,
        exit_code: Optional[int] = None,
        duration_ms: Optional[int] = None,
    ) -> None:
        await self.audit.record(
            deployment_id,
            level,
            message,
            source,
            metadata={
                "event": "end",
                "command": command,
                "status": status,
                "exit_code": exit_code,
                "duration_ms": duration_ms,
            },
        )
        await self.events.emit(
            "command_finished",
            deployment_id,
            {"command": command, "status": status, "exit_code": exit_code, "duration_ms": duration_ms},
        )

    async def run_iac(
        self,
        deployment_id: str,
        operation: str,
        extra_args: str = "",
        **kwargs: Any,
    ) -> CommandResult:
        """
        Run an IaC operation (init, validate, fmt, plan, apply, destroy,
        output) in the workspace's IaC directory.
        """
        args = IAC_OPERATIONS.get(operation)
        if args is None:
            raise ValidationError(
                f"Unknown IaC operation: {operation}",
                context={"operation": operation, "allowed": sorted(IAC_OPERATIONS)},
            )
        command = f"{self.settings.iac_binary} {args}"
        if extra_args:
            command = f"{command} {extra_args}"
        kwargs.setdefault("cwd", self.settings.iac_dir)
        kwargs.setdefault("source", LogSource.IAC)
        return await self.run(deployment_id, command, **kwargs)

    async def get_logs(
        self,
        deployment_id: str,
        level: Optional[str] = None,
        source: Optional[str] = None,
        limit: int = 100,
        offset: int = 0,
    ) -> list[dict[str, Any]]:
        entries = await self.audit.list(
            deployment_id, level=level, source=source, limit=limit, offset=offset
        )
        return [entry.to_dict() for entry in entries]

    async def cleanup(self, deployment_id: str, remove_workspace: bool = True) -> None:
        """Kill the in-flight command (if any) and drop the workspace."""
        inflight = self._inflight.get(deployment_id)
        if inflight is not None:
            inflight.cancel_event.set()
            # Let the runner observe the cancel and reap the process
            for _ in range(50):
                if deployment_id not in self._inflight:
                    break
                await asyncio.sleep(0.1)
        if remove_workspace:
            self.workspaces.cleanup(deployment_id)
