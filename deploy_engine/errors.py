"""
Error taxonomy for the Deployment Orchestration Engine.

Every error carries:
- code: machine-readable identifier (stable, used by the HTTP layer)
- message: human-readable description
- context: structured details kept for postmortem (stderr, allowed set, ...)
"""

from typing import Any, Iterable, Optional


class EngineError(Exception):
    """Base exception for all engine errors."""

    code = "ENGINE_ERROR"

    def __init__(
        self,
        message: str,
        *,
        code: Optional[str] = None,
        context: Optional[dict[str, Any]] = None,
    ):
        super().__init__(message)
        self.message = message
        if code:
            self.code = code
        self.context: dict[str, Any] = dict(context or {})

    def to_dict(self) -> dict[str, Any]:
        return {
            "code": self.code,
            "message": self.message,
            "context": self.context,
        }


class ValidationError(EngineError):
    """Bad input. Surfaced immediately, never retried."""

    code = "VALIDATION_ERROR"


class DeploymentNotFoundError(EngineError):
    """Raised when a deployment does not exist."""

    code = "DEPLOYMENT_NOT_FOUND"

    def __init__(self, deployment_id: str):
        super().__init__(
            f"Deployment not found: {deployment_id}",
            context={"deployment_id": deployment_id},
        )
        self.deployment_id = deployment_id


class InvalidTransitionError(EngineError):
    """Raised when a status transition is not in the allowed-next set."""

    code = "INVALID_TRANSITION"

    def __init__(self, current: str, target: str, allowed: Iterable[str]):
        self.current = current
        self.target = target
        self.allowed = sorted(allowed)
        allowed_text = ", ".join(self.allowed) if self.allowed else "none (terminal status)"
        super().__init__(
            f"Invalid transition from {current} to {target}. Allowed: {allowed_text}",
            context={"current": current, "target": target, "allowed": self.allowed},
        )


class GateBlockedError(EngineError):
    """Raised when the step completion gate refuses a stage transition."""

    code = "GATE_BLOCKED"

    def __init__(self, target: str, blocking_step: Optional[str], reason: str):
        self.target = target
        self.blocking_step = blocking_step
        self.reason = reason
        super().__init__(
            f"Transition to {target} blocked: {reason}",
            context={"target": target, "blocking_step": blocking_step, "reason": reason},
        )


class PrerequisiteNotMetError(EngineError):
    """Raised before any side effect when one or more prerequisites are unmet."""

    code = "PREREQUISITE_NOT_MET"

    def __init__(self, step_id: int, step_name: str, unmet: list[str]):
        self.step_id = step_id
        self.unmet = list(unmet)
        super().__init__(
            f"Prerequisites not met for step {step_id} ({step_name}): {', '.join(self.unmet)}",
            context={"step_id": step_id, "step_name": step_name, "unmet": self.unmet},
        )


class StepValidationError(EngineError):
    """Raised when a step's validation predicate returns a negative result."""

    code = "STEP_VALIDATION_FAILED"


class CommandExecutionError(EngineError):
    """Raised when a command exits with a non-zero status."""

    code = "COMMAND_FAILED"

    def __init__(self, command: str, exit_code: Optional[int], stderr: str = "", stdout: str = ""):
        self.command = command
        self.exit_code = exit_code
        self.stderr = stderr
        self.stdout = stdout
        detail = stderr.strip()[-500:]
        message = f"Command failed with exit code {exit_code}: {command}"
        if detail:
            message = f"{message}\n{detail}"
        super().__init__(
            message,
            context={"command": command, "exit_code": exit_code, "stderr": stderr},
        )


class CommandTimeoutError(EngineError, TimeoutError):
    """Raised when a command exceeds its timeout. The process is always killed."""

    code = "COMMAND_TIMEOUT"

    def __init__(self, command: str, timeout: float, stdout: str = "", stderr: str = ""):
        self.command = command
        self.timeout = timeout
        self.stdout = stdout
        self.stderr = stderr
        super().__init__(
            f"Command timed out after {timeout:g}s: {command}",
            context={"command": command, "timeout": timeout, "stderr": stderr},
        )


class CommandCancelledError(EngineError):
    """Raised when an in-flight command is terminated by a cancellation."""

    code = "COMMAND_CANCELLED"

    def __init__(self, command: str):
        self.command = command
        super().__init__(f"Command cancelled: {command}", context={"command": command})


class ApprovalTimeoutError(EngineError):
    """Raised when no approval arrives in time. The step is treated as rejected."""

    code = "APPROVAL_TIMEOUT"

    def __init__(self, step_id: int, step_name: str, timeout: float):
        self.step_id = step_id
        self.timeout = timeout
        super().__init__(
            f"Step {step_id} ({step_name}) was not approved within {timeout:g}s",
            context={"step_id": step_id, "step_name": step_name, "timeout": timeout},
        )


class ApprovalRejectedError(EngineError):
    """Raised when an approver explicitly rejects a step."""

    code = "APPROVAL_REJECTED"

    def __init__(self, step_id: int, step_name: str, reason: Optional[str] = None):
        self.step_id = step_id
        message = f"Step {step_id} ({step_name}) was rejected"
        if reason:
            message = f"{message}: {reason}"
        super().__init__(
            message,
            context={"step_id": step_id, "step_name": step_name, "reason": reason},
        )


class RollbackError(EngineError):
    """Recorded per failed rollback step. Never escalated."""

    code = "ROLLBACK_FAILED"


class ConflictError(EngineError):
    """Raised when a deployment already has an active execution or process."""

    code = "CONFLICT"


class PlanValidationError(EngineError):
    """Raised when a generated plan fails its structural validation."""

    code = "PLAN_INVALID"


class ExecutionCancelledError(EngineError):
    """Raised inside a plan run once its execution has been cancelled."""

    code = "EXECUTION_CANCELLED"

    def __init__(self, deployment_id: str):
        self.deployment_id = deployment_id
        super().__init__(
            f"Execution cancelled for deployment {deployment_id}",
            context={"deployment_id": deployment_id},
        )
