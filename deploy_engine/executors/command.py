"""
CommandExecutor - Runs a shell command in the deployment workspace.

The template is rendered from the plan variables and run through the
deployment's command service, so output is streamed to the audit log and
the event bus like any other command.

Action:
    CommandAction(template="docker build -t $project_name:latest .")

Output:
    {"command": "...", "success": true, "exit_code": 0, "stdout": "...", ...}
"""

import time

from deploy_engine.domain.models import Step
from deploy_engine.errors import EngineError
from deploy_engine.executors.base import BaseExecutor, StepContext, StepResult


class CommandExecutor(BaseExecutor):
    """
    Executor for command steps.

    A non-zero exit code fails the step with CommandExecutionError;
    timeouts and cancellations fail it with their own errors.
    """

    @property
    def kind(self) -> str:
        return "command"

    async def execute(self, step: Step, context: StepContext) -> StepResult:
        start_time = time.perf_counter()
        command = context.render(step.action.template)

        try:
            result = await context.commands.run(context.deployment_id, command, check=True)
        except EngineError as e:
            return StepResult.failure(e, start_time)

        return StepResult(
            success=True,
            output={"command": command, **result.to_dict()},
            latency_ms=int((time.perf_counter() - start_time) * 1000),
        )
