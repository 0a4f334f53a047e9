"""
IacExecutor - Infrastructure-as-code operations.

Operations:
    generate   Delegated to the IaC generator collaborator when one is
               configured; afterwards <iac_dir>/main.tf must exist
    init, plan, apply, destroy, validate, ...
               Run in <iac_dir> with the configured IaC binary, from the
               step template when present, else the built-in arguments
"""

import time

from deploy_engine.db.models import LogSource
from deploy_engine.domain.models import Step
from deploy_engine.errors import EngineError, StepValidationError
from deploy_engine.executors.base import BaseExecutor, StepContext, StepResult


class IacExecutor(BaseExecutor):
    """Executor for IaC steps."""

    @property
    def kind(self) -> str:
        return "iac"

    async def execute(self, step: Step, context: StepContext) -> StepResult:
        start_time = time.perf_counter()
        action = step.action

        try:
            if action.operation == "generate":
                output = await self._generate(step, context)
            else:
                output = await self._run(step, context)
        except EngineError as e:
            return StepResult.failure(e, start_time)

        return StepResult(
            success=True,
            output=output,
            latency_ms=int((time.perf_counter() - start_time) * 1000),
        )

    async def _generate(self, step: Step, context: StepContext) -> dict:
        iac_dir = context.plan.variables.get("iac_dir") or context.predicate_context.settings.iac_dir
        config_path = f"{iac_dir}/main.tf"

        generated = False
        if context.iac_generator is not None:
            await context.iac_generator(context.deployment_id, context.workspace)
            generated = True

        if not context.workspace.is_file(config_path):
            raise StepValidationError(
                f"IaC configuration not found at {config_path}",
                context={"step_id": step.id, "path": config_path},
            )
        return {"operation": "generate", "path": config_path, "generated": generated}

    async def _run(self, step: Step, context: StepContext) -> dict:
        action = step.action
        if action.template:
            iac_dir = context.plan.variables.get("iac_dir") or context.predicate_context.settings.iac_dir
            command = context.render(action.template)
            result = await context.commands.run(
                context.deployment_id,
                command,
                cwd=iac_dir,
                source=LogSource.IAC,
                check=True,
            )
        else:
            result = await context.commands.run_iac(context.deployment_id, action.operation, check=True)
            command = result.command

        return {"operation": action.operation, "command": command, **result.to_dict()}
