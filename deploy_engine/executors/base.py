"""
Base executor classes for the Deployment Orchestration Engine.

This module defines:
1. StepResult - The standardized output from any step executor
2. StepContext - Everything an executor may touch while running a step
3. BaseExecutor - Abstract class all step executors must inherit from

Design Principles:
- Every executor returns a StepResult (consistent interface)
- Executors are stateless (all state is in the Step and the context)
- Executors are keyed by the step action's kind
- Failures carry the original EngineError so the plan executor can
  re-raise it unchanged
"""

import time
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime
from string import Template
from typing import Any, Awaitable, Callable, Optional

from deploy_engine.domain.models import Plan, Step, utcnow
from deploy_engine.errors import EngineError
from deploy_engine.executors.predicates import PredicateContext, PredicateRegistry
from deploy_engine.services.commands import DeploymentCommandService
from deploy_engine.services.events import EventBus
from deploy_engine.services.workspace import Workspace

# generator(deployment_id, workspace) writes the IaC configuration
IacGenerator = Callable[[str, Workspace], Awaitable[Any]]


def render_template(template: str, variables: dict[str, str]) -> str:
    """
    Fill $name placeholders from plan variables.

    Unknown placeholders are left for the shell ($HOME, $PATH, ...).
    """
    return Template(template).safe_substitute(variables)


@dataclass
class StepResult:
    """
    The result of executing a step.

    Attributes:
        success: Whether the step body completed successfully
        output: The output data (flexible - depends on step type)
        error: Error message if success=False
        exception: The EngineError behind a failure, when there is one
        latency_ms: How long the step took to execute

    Examples:
        # Successful command step
        StepResult(success=True, output={"exit_code": 0, "stdout": "ok\\n"})

        # Failed validation step
        StepResult(success=False, error="Validation 'build_output_present' failed")
    """
    success: bool
    output: Any = None
    error: Optional[str] = None
    exception: Optional[EngineError] = None
    latency_ms: int = 0

    # Timestamp when step completed (set automatically)
    completed_at: datetime = field(default_factory=utcnow)

    def __post_init__(self):
        """Validate the result state."""
        if not self.success and not self.error:
            raise ValueError("Failed steps must have an error message")

    @classmethod
    def failure(cls, exc: EngineError, started: float) -> "StepResult":
        return cls(
            success=False,
            error=exc.message,
            exception=exc,
            latency_ms=int((time.perf_counter() - started) * 1000),
        )


@dataclass
class StepContext:
    """Per-execution collaborators handed to every executor."""
    deployment_id: str
    plan: Plan
    workspace: Workspace
    commands: DeploymentCommandService
    predicates: PredicateRegistry
    predicate_context: PredicateContext
    events: EventBus
    iac_generator: Optional[IacGenerator] = None

    def render(self, template: str) -> str:
        return render_template(template, self.plan.variables)


class BaseExecutor(ABC):
    """
    Abstract base class for all step executors.

    To create a new executor:
    1. Inherit from BaseExecutor
    2. Implement the kind property (matches Step.action.kind)
    3. Implement execute()

    Example:
        class InfoExecutor(BaseExecutor):
            @property
            def kind(self) -> str:
                return "info"

            async def execute(self, step: Step, context: StepContext) -> StepResult:
                return StepResult(success=True, output={"message": step.action.message})
    """

    @property
    @abstractmethod
    def kind(self) -> str:
        """
        The action kind this executor handles.

        Used by the plan executor to route steps to the correct executor.
        """
        pass

    @abstractmethod
    async def execute(self, step: Step, context: StepContext) -> StepResult:
        """
        Execute the body of a step.

        Args:
            step: The plan step (its action has this executor's kind)
            context: Collaborators for the running execution

        Returns:
            StepResult with success/failure status and output/error

        Raises:
            Should NOT raise EngineError - catch and return StepResult with
            the error attached. Task cancellation propagates.
        """
        pass
