"""
Domain Layer - Plan, Step and Execution Models

This module defines the in-memory domain model of a deployment plan:
- ProjectAnalysis: read-only input produced by the analysis collaborator
- Step: one unit of a plan, carrying a tagged action instead of closures
- Plan: the ordered list of steps plus advisory data (rollback, estimate)
- ExecutionState: progress of one in-flight plan run

Steps are plain data. Predicates and command templates are referenced by
id/template and resolved by the step executors at run time, so a Plan can
be serialized, logged and shipped over the API unchanged.
"""

import enum
from datetime import datetime, timezone
from typing import Annotated, Any, Literal, Optional, Union

from pydantic import BaseModel, Field


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


# ===================
# Analysis (collaborator input)
# ===================

class AnalysisFlags(BaseModel):
    """Presence flags detected in the project workspace."""
    manifest: bool = False
    build_script: bool = False
    test_script: bool = False
    start_script: bool = False
    container_file: bool = False
    compose_file: bool = False


class ProjectAnalysis(BaseModel):
    """
    Result of analyzing a deployment's source tree.

    Only the fields below are consumed by the plan generator; analyzers are
    free to compute them any way they like.
    """
    project_type: str = "unknown"
    framework: Optional[str] = None
    flags: AnalysisFlags = Field(default_factory=AnalysisFlags)
    # Dependency manifest actually found (package.json, requirements.txt, ...)
    manifest: Optional[str] = None
    architecture_pattern: list[str] = Field(default_factory=list)
    package_manager: str = "npm"
    project_name: str = "app"
    required_env_vars: list[str] = Field(default_factory=list)

    @property
    def primary_architecture(self) -> Optional[str]:
        return self.architecture_pattern[0] if self.architecture_pattern else None


# ===================
# Steps
# ===================

class StepType(str, enum.Enum):
    """Types of plan steps."""
    VALIDATION = "validation"
    COMMAND = "command"
    IAC = "iac"
    INFO = "info"


class ValidationAction(BaseModel):
    """Evaluate a named predicate (see executors.predicates)."""
    kind: Literal["validation"] = "validation"
    predicate: str


class CommandAction(BaseModel):
    """Run a shell command template in the deployment workspace."""
    kind: Literal["command"] = "command"
    template: str


class IacAction(BaseModel):
    """
    Run an infrastructure-as-code operation.

    operation is one of: generate, init, plan, apply, destroy, validate.
    "generate" is delegated to the IaC generator collaborator.
    """
    kind: Literal["iac"] = "iac"
    operation: str
    template: Optional[str] = None


class InfoAction(BaseModel):
    """Informational no-op; the message is emitted as an event."""
    kind: Literal["info"] = "info"
    message: str


StepAction = Annotated[
    Union[ValidationAction, CommandAction, IacAction, InfoAction],
    Field(discriminator="kind"),
]


class Step(BaseModel):
    """A single step of a deployment plan."""
    id: int
    name: str
    type: StepType
    description: str = ""
    action: StepAction
    prerequisites: list[str] = Field(default_factory=list)
    post_check: Optional[str] = None
    estimated_time: str = ""
    can_skip: bool = False
    skipped: bool = False
    skip_reason: Optional[str] = None
    rollback_command: Optional[str] = None
    # Working directory of the rollback command, relative to the workspace root
    rollback_cwd: Optional[str] = None
    requires_approval: bool = False


class RollbackStep(BaseModel):
    """Compensating command for a completed step."""
    original_step_id: int
    name: str
    command: str
    cwd: Optional[str] = None
    description: str = ""


class TimeEstimate(BaseModel):
    """Coarse, advisory duration range in minutes."""
    min_minutes: int
    max_minutes: int

    def __str__(self) -> str:
        return f"{self.min_minutes}-{self.max_minutes} minutes"


class PlanIssue(BaseModel):
    """Advisory finding about the project; never blocks execution."""
    severity: Literal["info", "warning"]
    message: str
    recommendation: str


class PlanValidation(BaseModel):
    valid: bool = True
    errors: list[str] = Field(default_factory=list)
    warnings: list[str] = Field(default_factory=list)


class Plan(BaseModel):
    """
    Ordered, declarative plan for one deployment.

    Plans are regenerated on every planning cycle and never mutated after
    generation. `variables` feeds the $name placeholders of step templates.
    """
    deployment_id: str
    generated_at: datetime = Field(default_factory=utcnow)
    project_info: dict[str, Any] = Field(default_factory=dict)
    variables: dict[str, str] = Field(default_factory=dict)
    steps: list[Step] = Field(default_factory=list)
    rollback_plan: list[RollbackStep] = Field(default_factory=list)
    estimated_time: Optional[TimeEstimate] = None
    potential_issues: list[PlanIssue] = Field(default_factory=list)
    validation: PlanValidation = Field(default_factory=PlanValidation)

    def get_step(self, step_id: int) -> Optional[Step]:
        for step in self.steps:
            if step.id == step_id:
                return step
        return None


# ===================
# Execution
# ===================

class ExecutionStatus(str, enum.Enum):
    """
    Status of one plan execution.

    Transitions:
    PENDING → RUNNING → COMPLETED
                      ↘ FAILED
                      ↘ CANCELLED
    """
    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


TERMINAL_EXECUTION_STATUSES = frozenset(
    {ExecutionStatus.COMPLETED, ExecutionStatus.FAILED, ExecutionStatus.CANCELLED}
)


class StepOutcome(BaseModel):
    """Result entry recorded for every step the executor touched."""
    step_id: int
    name: str
    status: Literal["completed", "failed", "skipped", "blocked", "cancelled"]
    output: Optional[Any] = None
    error: Optional[dict[str, Any]] = None
    reason: Optional[str] = None
    finished_at: datetime = Field(default_factory=utcnow)


class RollbackOutcome(BaseModel):
    original_step_id: int
    name: str
    command: str
    cwd: Optional[str] = None
    success: bool
    error: Optional[dict[str, Any]] = None


class ExecutionState(BaseModel):
    """Progress of a single plan run. Owned by the plan executor."""
    deployment_id: str
    plan_generated_at: Optional[datetime] = None
    status: ExecutionStatus = ExecutionStatus.PENDING
    current_step_id: Optional[int] = None
    completed_steps: list[int] = Field(default_factory=list)
    failed_steps: list[int] = Field(default_factory=list)
    skipped_steps: list[int] = Field(default_factory=list)
    results: list[StepOutcome] = Field(default_factory=list)
    rollback_results: list[RollbackOutcome] = Field(default_factory=list)
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    error: Optional[dict[str, Any]] = None

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_EXECUTION_STATUSES

    def summary(self) -> dict[str, Any]:
        """Compact view used in events and error context."""
        return {
            "status": self.status.value,
            "current_step_id": self.current_step_id,
            "completed_steps": list(self.completed_steps),
            "failed_steps": list(self.failed_steps),
            "skipped_steps": list(self.skipped_steps),
        }


# ===================
# Gate
# ===================

class GateCheckItem(BaseModel):
    name: str
    passed: bool
    required: bool = True
    detail: Optional[str] = None


class GateCheck(BaseModel):
    """Answer to "is this gate step done?"."""
    step: str
    complete: bool
    checks: list[GateCheckItem] = Field(default_factory=list)
    reason: str = ""


class VerificationReport(BaseModel):
    """Verification collaborator answer for one (deployment, step)."""
    complete: bool
    detail: Optional[str] = None
