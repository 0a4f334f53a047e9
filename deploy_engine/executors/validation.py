"""
ValidationExecutor - Evaluates a named predicate.

No side effects: the step passes when the predicate holds.

Action:
    ValidationAction(predicate="build_output_present")

Output:
    {"predicate": "build_output_present", "passed": true, "detail": "dist/ present"}
"""

import time

from deploy_engine.domain.models import Step
from deploy_engine.errors import EngineError, StepValidationError
from deploy_engine.executors.base import BaseExecutor, StepContext, StepResult


class ValidationExecutor(BaseExecutor):
    """Executor for validation steps."""

    @property
    def kind(self) -> str:
        return "validation"

    async def execute(self, step: Step, context: StepContext) -> StepResult:
        start_time = time.perf_counter()
        predicate = step.action.predicate

        try:
            result = await context.predicates.evaluate(predicate, context.predicate_context)
        except EngineError as e:
            return StepResult.failure(e, start_time)

        output = {"predicate": predicate, "passed": result.passed, "detail": result.detail}
        if not result.passed:
            error = StepValidationError(
                f"Validation '{predicate}' failed for step {step.id} ({step.name}): {result.detail}",
                context={"step_id": step.id, "predicate": predicate, "detail": result.detail},
            )
            failed = StepResult.failure(error, start_time)
            failed.output = output
            return failed

        return StepResult(
            success=True,
            output=output,
            latency_ms=int((time.perf_counter() - start_time) * 1000),
        )
