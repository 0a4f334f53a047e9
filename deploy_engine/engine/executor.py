"""
Plan Executor - runs a deployment plan step by step.

Per step, in order:
1. Skipped steps are recorded and passed over
2. Steps that require approval wait for a decision (bounded by a timeout)
3. Prerequisites are evaluated against live state; every unmet one is
   reported in a single PrerequisiteNotMetError before any side effect
4. The step body runs through the executor for its action kind
5. The post-check predicate (if any) must hold, even after exit code 0

Design Principles:
- Steps of one plan execute strictly sequentially
- At most one active execution per deployment (ConflictError otherwise)
- The first failure stops the plan; with rollback enabled, completed
  steps are compensated in reverse completion order (best-effort)
- Cancellation stops the plan and kills the running command; it never
  triggers rollback
"""

import asyncio
from dataclasses import dataclass, field
from typing import Optional

from deploy_engine.config import Settings, get_settings
from deploy_engine.db.models import LogLevel, LogSource
from deploy_engine.domain.models import (
    ExecutionState,
    ExecutionStatus,
    Plan,
    RollbackOutcome,
    Step,
    StepOutcome,
    utcnow,
)
from deploy_engine.errors import (
    ConflictError,
    EngineError,
    ExecutionCancelledError,
    PrerequisiteNotMetError,
    RollbackError,
    StepValidationError,
    ValidationError,
)
from deploy_engine.executors import (
    BaseExecutor,
    IacGenerator,
    PredicateContext,
    PredicateRegistry,
    StepContext,
    default_executors,
    evaluate_prerequisites,
    render_template,
)
from deploy_engine.services.approval import ApprovalRegistry
from deploy_engine.services.audit import AuditLog
from deploy_engine.services.commands import DeploymentCommandService
from deploy_engine.services.events import EventBus
from deploy_engine.services.shell import CommandRunner
from deploy_engine.services.verification import Verifier
from deploy_engine.utils.logging import get_logger

logger = get_logger(__name__)


@dataclass
class ActiveExecution:
    """Registry entry for a running plan."""
    state: ExecutionState
    plan: Optional[Plan] = None
    cancel_event: asyncio.Event = field(default_factory=asyncio.Event)

    @property
    def cancelled(self) -> bool:
        return self.cancel_event.is_set()


class PlanExecutor:
    """
    Executes plans and tracks their progress.

    Usage:
        executor = PlanExecutor(commands, approvals, events, audit, runner, verifier)

        state = await executor.execute_plan(plan, rollback_on_failure=True)

        # elsewhere
        executor.cancel(deployment_id)
        executor.get_status(deployment_id)
    """

    def __init__(
        self,
        commands: DeploymentCommandService,
        approvals: ApprovalRegistry,
        events: EventBus,
        audit: AuditLog,
        runner: CommandRunner,
        verifier: Optional[Verifier] = None,
        predicates: Optional[PredicateRegistry] = None,
        executors: Optional[dict[str, BaseExecutor]] = None,
        iac_generator: Optional[IacGenerator] = None,
        settings: Optional[Settings] = None,
    ):
        self.commands = commands
        self.approvals = approvals
        self.events = events
        self.audit = audit
        self.runner = runner
        self.verifier = verifier
        self.predicates = predicates or PredicateRegistry.default()
        self.executors = executors or default_executors()
        self.iac_generator = iac_generator
        self.settings = settings or get_settings()

        self._active: dict[str, ActiveExecution] = {}
        self._finished: dict[str, ExecutionState] = {}

    # ===================
    # Registry
    # ===================

    def is_active(self, deployment_id: str) -> bool:
        return deployment_id in self._active

    def active_deployments(self) -> list[str]:
        return list(self._active)

    def active_plan(self, deployment_id: str) -> Optional[Plan]:
        active = self._active.get(deployment_id)
        return active.plan if active is not None else None

    def get_status(self, deployment_id: str) -> Optional[ExecutionState]:
        """The active execution state, else the last finished one."""
        active = self._active.get(deployment_id)
        if active is not None:
            return active.state
        return self._finished.get(deployment_id)

    def reserve(self, plan: Plan) -> ActiveExecution:
        """
        Register an execution for the plan's deployment.

        Synchronous, so two callers racing for one deployment cannot both
        pass the check.

        Raises:
            ConflictError: The deployment already has an active execution
        """
        deployment_id = plan.deployment_id
        if deployment_id in self._active:
            raise ConflictError(
                f"Deployment {deployment_id} already has an active execution",
                context={
                    "deployment_id": deployment_id,
                    "execution": self._active[deployment_id].state.summary(),
                },
            )
        handle = ActiveExecution(
            state=ExecutionState(
                deployment_id=deployment_id,
                plan_generated_at=plan.generated_at,
            ),
            plan=plan,
        )
        self._active[deployment_id] = handle
        return handle

    def release(self, deployment_id: str, record: bool = True) -> None:
        """Drop the registry entry; record=False forgets a run that never started."""
        handle = self._active.pop(deployment_id, None)
        if handle is not None and record:
            self._finished[deployment_id] = handle.state

    def cancel(self, deployment_id: str) -> bool:
        """
        Cancel the active execution and kill its running command.

        Returns:
            True if an execution was active
        """
        handle = self._active.get(deployment_id)
        if handle is None:
            return False
        logger.info("Cancelling execution for deployment %s", deployment_id)
        handle.cancel_event.set()
        self.commands.cancel(deployment_id)
        return True

    # ===================
    # Execution
    # ===================

    async def execute_plan(
        self,
        plan: Plan,
        *,
        auto_approve: bool = False,
        rollback_on_failure: Optional[bool] = None,
        approval_timeout: Optional[float] = None,
        handle: Optional[ActiveExecution] = None,
    ) -> ExecutionState:
        """
        Execute every step of a plan.

        Args:
            plan: Plan to execute
            auto_approve: Skip the approval wait for requires_approval steps
            rollback_on_failure: Compensate completed steps after a failure
                                 (default: settings.rollback_on_failure)
            approval_timeout: Seconds to wait for each approval
            handle: Execution already registered with reserve()

        Returns:
            Final ExecutionState (completed or cancelled)

        Raises:
            ConflictError: Another execution of this deployment is active
            EngineError: The error that failed the plan, with the execution
                         summary in error.context["execution"]
        """
        if handle is None:
            handle = self.reserve(plan)
        if rollback_on_failure is None:
            rollback_on_failure = self.settings.rollback_on_failure
        if approval_timeout is None:
            approval_timeout = self.settings.approval_timeout

        try:
            return await self._run(plan, handle, auto_approve, rollback_on_failure, approval_timeout)
        except asyncio.CancelledError:
            handle.state.status = ExecutionStatus.CANCELLED
            handle.state.completed_at = utcnow()
            raise
        finally:
            self.approvals.discard(plan.deployment_id)
            self.release(plan.deployment_id)

    async def _run(
        self,
        plan: Plan,
        handle: ActiveExecution,
        auto_approve: bool,
        rollback_on_failure: bool,
        approval_timeout: float,
    ) -> ExecutionState:
        deployment_id = plan.deployment_id
        state = handle.state
        state.status = ExecutionStatus.RUNNING
        state.started_at = utcnow()

        logger.info("Executing plan for %s (%d steps)", deployment_id, len(plan.steps))
        await self.events.emit(
            "execution_started",
            deployment_id,
            {"total_steps": len(plan.steps), "plan_generated_at": plan.generated_at.isoformat()},
        )

        workspace = await self.commands.workspace(deployment_id)
        predicate_context = PredicateContext(
            deployment_id=deployment_id,
            workspace=workspace,
            runner=self.runner,
            commands=self.commands,
            settings=self.settings,
            variables=dict(plan.variables),
            verifier=self.verifier,
        )
        context = StepContext(
            deployment_id=deployment_id,
            plan=plan,
            workspace=workspace,
            commands=self.commands,
            predicates=self.predicates,
            predicate_context=predicate_context,
            events=self.events,
            iac_generator=self.iac_generator,
        )

        for step in plan.steps:
            if handle.cancelled:
                return await self._finish_cancelled(state)

            state.current_step_id = step.id

            if step.skipped:
                await self._record_skipped(state, step)
                continue

            await self.events.emit(
                "step_started",
                deployment_id,
                {"step_id": step.id, "name": step.name, "type": step.type.value},
            )

            try:
                output = await self._run_step(step, context, handle, auto_approve, approval_timeout)
            except EngineError as e:
                if handle.cancelled:
                    state.results.append(StepOutcome(
                        step_id=step.id,
                        name=step.name,
                        status="cancelled",
                        reason=e.message,
                    ))
                    return await self._finish_cancelled(state)
                await self._fail(plan, state, step, e, context, rollback_on_failure)
                raise
            except Exception as e:
                error = EngineError(
                    f"Step {step.id} ({step.name}) crashed: {e}",
                    code="STEP_ERROR",
                    context={"step_id": step.id, "exception": type(e).__name__},
                )
                logger.exception("Unexpected error in step %d for %s", step.id, deployment_id)
                await self._fail(plan, state, step, error, context, rollback_on_failure)
                raise error from e

            state.completed_steps.append(step.id)
            state.results.append(StepOutcome(
                step_id=step.id,
                name=step.name,
                status="completed",
                output=output,
            ))
            await self.events.emit(
                "step_completed",
                deployment_id,
                {"step_id": step.id, "name": step.name},
            )

        if handle.cancelled:
            return await self._finish_cancelled(state)

        state.status = ExecutionStatus.COMPLETED
        state.current_step_id = None
        state.completed_at = utcnow()
        logger.info("Plan execution completed for %s", deployment_id)
        await self.audit.record(
            deployment_id,
            LogLevel.INFO,
            f"Plan execution completed ({len(state.completed_steps)} steps)",
            LogSource.SYSTEM,
            metadata={"event": "execution_completed", **state.summary()},
        )
        await self.events.emit("execution_completed", deployment_id, state.summary())
        return state

    async def _run_step(
        self,
        step: Step,
        context: StepContext,
        handle: ActiveExecution,
        auto_approve: bool,
        approval_timeout: float,
    ):
        deployment_id = context.deployment_id

        if step.requires_approval and not auto_approve:
            await self._await_approval(step, deployment_id, handle, approval_timeout)

        if step.prerequisites:
            unmet = await evaluate_prerequisites(
                step.prerequisites, context.predicate_context, self.predicates
            )
            if unmet:
                raise PrerequisiteNotMetError(step.id, step.name, unmet)

        if handle.cancelled:
            raise ExecutionCancelledError(deployment_id)

        executor = self.executors.get(step.action.kind)
        if executor is None:
            raise ValidationError(
                f"No executor for step kind: {step.action.kind}",
                context={"step_id": step.id, "kind": step.action.kind},
            )

        result = await executor.execute(step, context)
        if not result.success:
            raise result.exception or StepValidationError(
                result.error,
                context={"step_id": step.id},
            )

        if step.post_check:
            check = await self.predicates.evaluate(step.post_check, context.predicate_context)
            if not check.passed:
                raise StepValidationError(
                    f"Post-check '{step.post_check}' failed for step {step.id} ({step.name}): {check.detail}",
                    context={"step_id": step.id, "predicate": step.post_check, "detail": check.detail},
                )

        return result.output

    async def _await_approval(
        self,
        step: Step,
        deployment_id: str,
        handle: ActiveExecution,
        timeout: float,
    ) -> None:
        """
        Raises:
            ApprovalTimeoutError / ApprovalRejectedError: see ApprovalRegistry.wait
            ExecutionCancelledError: The execution was cancelled while waiting
        """
        await self.events.emit(
            "approval_required",
            deployment_id,
            {
                "step_id": step.id,
                "name": step.name,
                "description": step.description,
                "timeout": timeout,
            },
        )
        await self.audit.record(
            deployment_id,
            LogLevel.WARN,
            f"Step {step.id} ({step.name}) awaiting approval",
            LogSource.SYSTEM,
            metadata={"event": "approval_required", "step_id": step.id},
        )

        waiter = asyncio.ensure_future(
            self.approvals.wait(deployment_id, step.id, step.name, timeout)
        )
        cancelled = asyncio.ensure_future(handle.cancel_event.wait())
        try:
            done, _ = await asyncio.wait({waiter, cancelled}, return_when=asyncio.FIRST_COMPLETED)
        finally:
            cancelled.cancel()
            if not waiter.done():
                waiter.cancel()

        if waiter not in done:
            raise ExecutionCancelledError(deployment_id)

        decision = waiter.result()
        await self.events.emit(
            "approval_granted",
            deployment_id,
            {"step_id": step.id, "name": step.name, "approver": decision.approver},
        )

    async def _record_skipped(self, state: ExecutionState, step: Step) -> None:
        reason = step.skip_reason or "Step marked as skipped"
        state.skipped_steps.append(step.id)
        state.results.append(StepOutcome(
            step_id=step.id,
            name=step.name,
            status="skipped",
            reason=reason,
        ))
        await self.events.emit(
            "step_skipped",
            state.deployment_id,
            {"step_id": step.id, "name": step.name, "reason": reason},
        )

    async def _finish_cancelled(self, state: ExecutionState) -> ExecutionState:
        state.status = ExecutionStatus.CANCELLED
        state.completed_at = utcnow()
        logger.info("Plan execution cancelled for %s", state.deployment_id)
        await self.audit.record(
            state.deployment_id,
            LogLevel.WARN,
            "Plan execution cancelled",
            LogSource.SYSTEM,
            metadata={"event": "execution_cancelled", **state.summary()},
        )
        await self.events.emit("execution_cancelled", state.deployment_id, state.summary())
        return state

    async def _fail(
        self,
        plan: Plan,
        state: ExecutionState,
        step: Step,
        error: EngineError,
        context: StepContext,
        rollback_on_failure: bool,
    ) -> None:
        """Record a failed step, roll back if enabled and attach the summary."""
        blocked = isinstance(error, PrerequisiteNotMetError)
        state.failed_steps.append(step.id)
        state.results.append(StepOutcome(
            step_id=step.id,
            name=step.name,
            status="blocked" if blocked else "failed",
            error=error.to_dict(),
        ))
        state.status = ExecutionStatus.FAILED
        state.error = error.to_dict()

        logger.warning("Step %d (%s) failed for %s: %s", step.id, step.name, plan.deployment_id, error.message)
        await self.audit.record(
            plan.deployment_id,
            LogLevel.ERROR,
            f"Step {step.id} ({step.name}) failed: {error.message}",
            LogSource.SYSTEM,
            metadata={"event": "step_failed", "step_id": step.id, "code": error.code},
        )
        await self.events.emit(
            "step_failed",
            plan.deployment_id,
            {"step_id": step.id, "name": step.name, "error": error.to_dict()},
        )

        if rollback_on_failure:
            await self._rollback(plan, state)

        state.completed_at = utcnow()
        error.context["execution"] = state.summary()
        await self.events.emit(
            "execution_failed",
            plan.deployment_id,
            {**state.summary(), "error": {"code": error.code, "message": error.message}},
        )

    async def _rollback(self, plan: Plan, state: ExecutionState) -> None:
        """
        Run rollback_command of every completed step, last completed first,
        in the step's rollback_cwd (default: the workspace root).

        Best-effort: each failure is recorded as a RollbackError entry and
        the remaining steps are still compensated.
        """
        deployment_id = plan.deployment_id
        targets = [plan.get_step(step_id) for step_id in reversed(state.completed_steps)]
        targets = [step for step in targets if step is not None and step.rollback_command]

        await self.events.emit(
            "rollback_started",
            deployment_id,
            {"steps": [step.id for step in targets]},
        )

        for step in targets:
            command = render_template(step.rollback_command, plan.variables)
            cwd = render_template(step.rollback_cwd, plan.variables) if step.rollback_cwd else None
            outcome = RollbackOutcome(
                original_step_id=step.id,
                name=step.name,
                command=command,
                cwd=cwd,
                success=True,
            )
            try:
                await self.commands.run(deployment_id, command, cwd=cwd, check=True)
            except Exception as e:
                cause = e.to_dict() if isinstance(e, EngineError) else {"message": str(e)}
                failure = RollbackError(
                    f"Rollback of step {step.id} ({step.name}) failed: {e}",
                    context={"step_id": step.id, "command": command, "cause": cause},
                )
                logger.warning(failure.message)
                outcome.success = False
                outcome.error = failure.to_dict()

            state.rollback_results.append(outcome)
            await self.events.emit(
                "rollback_step",
                deployment_id,
                {"step_id": step.id, "command": command, "cwd": cwd, "success": outcome.success},
            )

        succeeded = all(outcome.success for outcome in state.rollback_results)
        await self.events.emit(
            "rollback_finished",
            deployment_id,
            {"success": succeeded, "steps": len(state.rollback_results)},
        )
