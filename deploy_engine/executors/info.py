"""InfoExecutor - Informational steps. No side effects; the message is published."""

from deploy_engine.domain.models import Step
from deploy_engine.executors.base import BaseExecutor, StepContext, StepResult


class InfoExecutor(BaseExecutor):

    @property
    def kind(self) -> str:
        return "info"

    async def execute(self, step: Step, context: StepContext) -> StepResult:
        message = step.action.message or step.description
        await context.events.emit(
            "step_info",
            context.deployment_id,
            {"step_id": step.id, "name": step.name, "message": message},
        )
        return StepResult(success=True, output={"message": message})
