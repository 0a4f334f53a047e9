"""
Deployment Orchestrator - composition root of the engine.

This is the HEART of the system. It:
1. Creates deployments and owns their workspaces
2. Moves deployments through the stage state machine, asking the
   completion gate first
3. Turns a project analysis into a plan and executes it
4. Routes approvals, ad-hoc commands and cancellations to the right
   component
5. Exposes the audit log and the live event stream

Design Principles:
- One orchestrator instance owns every registry (workspaces, active
  executions, in-flight processes, pending approvals, generated plans)
- Different deployments run independently; steps of one plan run
  sequentially
- Plan outcomes map to stage transitions:
  PLAN_EXECUTION -> DEPLOYING | PLAN_FAILED | CANCELLED
"""

import uuid
from typing import Any, Optional, Union

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from deploy_engine.config import Settings, get_settings
from deploy_engine.db.models import Deployment, DeploymentStatus, LogLevel, LogSource
from deploy_engine.db.repository import DeploymentRepository, LogRepository
from deploy_engine.domain.models import ExecutionState, ExecutionStatus, Plan, ProjectAnalysis, utcnow
from deploy_engine.engine.executor import ActiveExecution, PlanExecutor
from deploy_engine.engine.gate import STATUS_TO_GATE_STEP, GateStep, StepCompletionGate
from deploy_engine.engine.state_machine import StageStateMachine, coerce_status
from deploy_engine.errors import EngineError, GateBlockedError, ValidationError
from deploy_engine.executors import IacGenerator
from deploy_engine.services.analysis import WorkspaceAnalyzer
from deploy_engine.services.approval import ApprovalRegistry
from deploy_engine.services.audit import AuditLog
from deploy_engine.services.background import BackgroundTasks
from deploy_engine.services.commands import DeploymentCommandService
from deploy_engine.services.events import EventBus, Subscription
from deploy_engine.services.planner import PlannerService
from deploy_engine.services.shell import CommandResult, CommandRunner
from deploy_engine.services.verification import ArtifactVerifier, HttpVerificationClient, Verifier
from deploy_engine.services.workspace import WorkspaceManager
from deploy_engine.utils.logging import get_logger

logger = get_logger(__name__)

# Entering a failure status invalidates the gate step it failed
FAILURE_RESETS: dict[DeploymentStatus, GateStep] = {
    DeploymentStatus.VALIDATION_FAILED: GateStep.IAC_GENERATION,
    DeploymentStatus.SANDBOX_FAILED: GateStep.SANDBOX_TESTING,
}


class DeploymentOrchestrator:
    """
    Single entry point for deployment workflows.

    Usage:
        orchestrator = DeploymentOrchestrator(settings)

        deployment = await orchestrator.create_deployment(workspace_path="/src/app")
        await orchestrator.advance(deployment.deployment_id, DeploymentStatus.GATHERING)

        plan = await orchestrator.generate_plan(deployment.deployment_id)
        state = await orchestrator.run_plan(deployment.deployment_id, auto_approve=True)

        await orchestrator.close()
    """

    def __init__(
        self,
        settings: Optional[Settings] = None,
        session_factory: Optional[async_sessionmaker[AsyncSession]] = None,
        *,
        runner: Optional[CommandRunner] = None,
        analyzer: Optional[WorkspaceAnalyzer] = None,
        verifier: Optional[Verifier] = None,
        iac_generator: Optional[IacGenerator] = None,
    ):
        """
        Wire every component.

        Args:
            settings: Engine settings (defaults to get_settings())
            session_factory: Session factory (defaults to the global one)
            runner: Command runner (defaults to one built from settings)
            analyzer: Analysis collaborator (defaults to WorkspaceAnalyzer)
            verifier: Verification collaborator (defaults to the HTTP client
                      when verification_url is set, else ArtifactVerifier)
            iac_generator: Writes the IaC configuration for "generate" steps
        """
        self.settings = settings or get_settings()

        self.deployments = DeploymentRepository(session_factory)
        self.logs = LogRepository(session_factory)
        self.audit = AuditLog(self.logs)
        self.events = EventBus()
        self.background = BackgroundTasks()
        self.workspaces = WorkspaceManager(self.settings.workspace_path)
        self.approvals = ApprovalRegistry()
        self.runner = runner or CommandRunner.from_settings(self.settings)

        self._owned_verifier: Optional[HttpVerificationClient] = None
        if verifier is None:
            if self.settings.verification_url:
                self._owned_verifier = HttpVerificationClient(
                    self.settings.verification_url,
                    api_key=self.settings.verification_api_key,
                    timeout=self.settings.verification_timeout,
                )
                verifier = self._owned_verifier
            else:
                verifier = ArtifactVerifier(self.workspaces, self.deployments, self.logs, self.settings)
        self.verifier = verifier

        self.state_machine = StageStateMachine(self.deployments, self.events, self.audit)
        self.gate = StepCompletionGate(
            self.deployments,
            self.workspaces,
            self.verifier,
            self.events,
            self.audit,
            self.settings,
        )
        self.commands = DeploymentCommandService(
            self.runner,
            self.workspaces,
            self.deployments,
            self.audit,
            self.events,
            self.background,
            completion_hook=self.gate.auto_complete_for_command,
            settings=self.settings,
        )
        self.analyzer = analyzer or WorkspaceAnalyzer(self.workspaces, self.deployments)
        self.planner = PlannerService(self.settings)
        self.executor = PlanExecutor(
            self.commands,
            self.approvals,
            self.events,
            self.audit,
            self.runner,
            verifier=self.verifier,
            iac_generator=iac_generator,
            settings=self.settings,
        )

        self._plans: dict[str, Plan] = {}

    # ===================
    # Deployments
    # ===================

    async def create_deployment(
        self,
        repository_url: Optional[str] = None,
        workspace_path: Optional[str] = None,
        deployment_id: Optional[str] = None,
    ) -> Deployment:
        """
        Create a deployment in INITIATED and register its workspace.

        Args:
            repository_url: Source repository (informational)
            workspace_path: Existing checkout to deploy from; a fresh
                            directory under workspace_root otherwise
            deployment_id: Explicit id (generated when omitted)
        """
        deployment_id = deployment_id or uuid.uuid4().hex
        if await self.deployments.get(deployment_id) is not None:
            raise ValidationError(
                f"Deployment already exists: {deployment_id}",
                context={"deployment_id": deployment_id},
            )

        workspace = self.workspaces.get(deployment_id, path=workspace_path)
        deployment = await self.deployments.create(
            deployment_id=deployment_id,
            repository_url=repository_url,
            workspace_path=str(workspace.root),
            history_entry={
                "status": DeploymentStatus.INITIATED.value,
                "timestamp": utcnow().isoformat(),
                "metadata": {},
            },
        )

        logger.info("Created deployment %s (workspace %s)", deployment_id, workspace.root)
        await self.audit.record(
            deployment_id,
            LogLevel.INFO,
            "Deployment created",
            LogSource.SYSTEM,
            metadata={"event": "deployment_created", "workspace": str(workspace.root)},
        )
        await self.events.emit(
            "deployment_created",
            deployment_id,
            {"workspace": str(workspace.root), "repository_url": repository_url},
        )
        return deployment

    async def get_deployment(self, deployment_id: str) -> Deployment:
        """
        Raises:
            DeploymentNotFoundError: If the deployment doesn't exist
        """
        return await self.deployments.require(deployment_id)

    async def list_deployments(
        self,
        status: Optional[Union[str, DeploymentStatus]] = None,
        limit: int = 50,
        offset: int = 0,
    ) -> list[Deployment]:
        status = coerce_status(status) if status is not None else None
        return await self.deployments.list(status=status, limit=limit, offset=offset)

    async def advance(
        self,
        deployment_id: str,
        target: Union[str, DeploymentStatus],
        metadata: Optional[dict[str, Any]] = None,
    ) -> Deployment:
        """
        Gate-checked stage transition.

        Entering a status that starts a gate step requires every dependency
        of that step to be complete.

        Raises:
            DeploymentNotFoundError: If the deployment doesn't exist
            InvalidTransitionError: If target is not allowed
            GateBlockedError: If a dependency step is not complete
        """
        target = coerce_status(target)
        deployment = await self.deployments.require(deployment_id)
        self.state_machine.check(deployment.status, target)

        gate_step = STATUS_TO_GATE_STEP.get(target)
        if gate_step is not None:
            can_proceed, blocking_step, reason = await self.gate.explain(deployment_id, gate_step)
            if not can_proceed:
                logger.info("Gate blocked %s -> %s: %s", deployment_id, target.value, reason)
                raise GateBlockedError(target.value, blocking_step, reason)

        updated = await self.state_machine.transition(deployment_id, target, metadata)

        reset = FAILURE_RESETS.get(target)
        if reset is not None:
            await self.gate.reset_step(deployment_id, reset)
        return updated

    # ===================
    # Planning
    # ===================

    async def analyze(self, deployment_id: str) -> ProjectAnalysis:
        await self.deployments.require(deployment_id)
        return await self.analyzer.analyze(deployment_id)

    async def generate_plan(
        self,
        deployment_id: str,
        analysis: Optional[ProjectAnalysis] = None,
    ) -> Plan:
        """
        Analyze the workspace (unless an analysis is given) and generate a
        fresh plan. The plan replaces any earlier one of the deployment.
        """
        if analysis is None:
            analysis = await self.analyze(deployment_id)
        workspace = await self.commands.workspace(deployment_id)

        plan = self.planner.generate_plan(deployment_id, analysis, workspace)
        self._plans[deployment_id] = plan

        await self.audit.record(
            deployment_id,
            LogLevel.INFO if plan.validation.valid else LogLevel.WARN,
            f"Plan generated ({len(plan.steps)} steps, valid={plan.validation.valid})",
            LogSource.SYSTEM,
            metadata={
                "event": "plan_generated",
                "steps": len(plan.steps),
                "valid": plan.validation.valid,
                "errors": plan.validation.errors,
            },
        )
        await self.events.emit(
            "plan_generated",
            deployment_id,
            {
                "steps": len(plan.steps),
                "valid": plan.validation.valid,
                "estimated_time": str(plan.estimated_time) if plan.estimated_time else None,
            },
        )
        return plan

    def get_plan(self, deployment_id: str) -> Optional[Plan]:
        return self._plans.get(deployment_id)

    # ===================
    # Execution
    # ===================

    async def _prepare(self, deployment_id: str, plan: Optional[Plan]) -> tuple[Plan, ActiveExecution]:
        plan = plan or self._plans.get(deployment_id) or await self.generate_plan(deployment_id)
        self.planner.ensure_valid(plan)

        handle = self.executor.reserve(plan)
        try:
            deployment = await self.deployments.require(deployment_id)
            if deployment.status != DeploymentStatus.PLAN_EXECUTION:
                await self.advance(deployment_id, DeploymentStatus.PLAN_EXECUTION)
        except BaseException:
            self.executor.release(deployment_id, record=False)
            raise
        return plan, handle

    async def run_plan(
        self,
        deployment_id: str,
        *,
        plan: Optional[Plan] = None,
        auto_approve: bool = False,
        rollback_on_failure: Optional[bool] = None,
        approval_timeout: Optional[float] = None,
    ) -> ExecutionState:
        """
        Execute the deployment's plan and move the stage accordingly.

        Returns:
            Final ExecutionState (completed or cancelled)

        Raises:
            ConflictError: The deployment already has an active execution
            PlanValidationError: The plan failed its structural check
            InvalidTransitionError: The deployment cannot enter PLAN_EXECUTION
            EngineError: The error that failed the plan
        """
        plan, handle = await self._prepare(deployment_id, plan)
        return await self._execute(
            plan,
            handle,
            auto_approve=auto_approve,
            rollback_on_failure=rollback_on_failure,
            approval_timeout=approval_timeout,
        )

    async def start_plan(
        self,
        deployment_id: str,
        *,
        plan: Optional[Plan] = None,
        auto_approve: bool = False,
        rollback_on_failure: Optional[bool] = None,
        approval_timeout: Optional[float] = None,
    ) -> ExecutionState:
        """
        Background variant of run_plan().

        Conflicts and validation problems are raised here; the run itself
        continues in the background and reports through events and
        get_execution_status().
        """
        plan, handle = await self._prepare(deployment_id, plan)
        self.background.spawn(
            self._execute_quietly(
                plan,
                handle,
                auto_approve=auto_approve,
                rollback_on_failure=rollback_on_failure,
                approval_timeout=approval_timeout,
            ),
            name=f"plan:{deployment_id}",
        )
        return handle.state

    async def _execute_quietly(self, plan: Plan, handle: ActiveExecution, **kwargs: Any) -> None:
        try:
            await self._execute(plan, handle, **kwargs)
        except EngineError as e:
            logger.warning("Background plan for %s failed: %s", plan.deployment_id, e.message)

    async def _execute(self, plan: Plan, handle: ActiveExecution, **kwargs: Any) -> ExecutionState:
        deployment_id = plan.deployment_id
        try:
            state = await self.executor.execute_plan(plan, handle=handle, **kwargs)
        except EngineError as e:
            await self._settle(
                deployment_id,
                DeploymentStatus.PLAN_FAILED,
                {"code": e.code, "message": e.message, "failed_steps": handle.state.failed_steps},
            )
            raise

        if state.status == ExecutionStatus.CANCELLED:
            await self._settle(deployment_id, DeploymentStatus.CANCELLED, {"reason": "execution cancelled"})
        else:
            await self._settle(
                deployment_id,
                DeploymentStatus.DEPLOYING,
                {"completed_steps": state.completed_steps, "skipped_steps": state.skipped_steps},
            )
        return state

    async def _settle(self, deployment_id: str, target: DeploymentStatus, metadata: dict[str, Any]) -> None:
        """Post-execution transition; a concurrent status change is logged, not raised."""
        try:
            await self.state_machine.transition(deployment_id, target, metadata)
        except EngineError as e:
            logger.warning("Could not move %s to %s: %s", deployment_id, target.value, e.message)

    def get_execution_status(self, deployment_id: str) -> Optional[ExecutionState]:
        return self.executor.get_status(deployment_id)

    def cancel_execution(self, deployment_id: str) -> bool:
        """
        Cancel the active plan run of a deployment.

        Returns:
            True if an execution was active
        """
        return self.executor.cancel(deployment_id)

    async def resolve_approval(
        self,
        deployment_id: str,
        step_id: int,
        approved: bool,
        approver: Optional[str] = None,
        reason: Optional[str] = None,
    ) -> bool:
        """
        Approve or reject a plan step. May be called before the executor
        reaches the step.

        Returns:
            False if the step already had a decision

        Raises:
            ValidationError: No plan is known for the deployment, or the
                             plan has no such approval step
        """
        plan = self.executor.active_plan(deployment_id) or self._plans.get(deployment_id)
        if plan is None:
            raise ValidationError(
                f"Deployment {deployment_id} has no plan awaiting approvals",
                context={"deployment_id": deployment_id, "step_id": step_id},
            )
        step = plan.get_step(step_id)
        if step is None or not step.requires_approval:
            raise ValidationError(
                f"Step {step_id} does not require approval",
                context={"deployment_id": deployment_id, "step_id": step_id},
            )

        if approved:
            recorded = self.approvals.approve(deployment_id, step_id, approver=approver)
        else:
            recorded = self.approvals.reject(deployment_id, step_id, approver=approver, reason=reason)

        if recorded:
            decision = "approved" if approved else "rejected"
            await self.audit.record(
                deployment_id,
                LogLevel.INFO if approved else LogLevel.WARN,
                f"Step {step_id} {decision}" + (f" by {approver}" if approver else ""),
                LogSource.SYSTEM,
                metadata={"event": "approval_resolved", "step_id": step_id, "approved": approved, "reason": reason},
            )
            await self.events.emit(
                "approval_resolved",
                deployment_id,
                {"step_id": step_id, "approved": approved, "approver": approver, "reason": reason},
            )
        return recorded

    # ===================
    # Commands, logs, events
    # ===================

    async def run_command(self, deployment_id: str, command: str, **kwargs: Any) -> CommandResult:
        """
        Run an ad-hoc command in the deployment workspace.

        See DeploymentCommandService.run for arguments and errors.
        """
        await self.deployments.require(deployment_id)
        return await self.commands.run(deployment_id, command, **kwargs)

    async def run_iac(self, deployment_id: str, operation: str, **kwargs: Any) -> CommandResult:
        await self.deployments.require(deployment_id)
        return await self.commands.run_iac(deployment_id, operation, **kwargs)

    async def list_logs(
        self,
        deployment_id: str,
        level: Optional[str] = None,
        source: Optional[str] = None,
        limit: int = 100,
        offset: int = 0,
    ) -> list[dict[str, Any]]:
        return await self.commands.get_logs(deployment_id, level=level, source=source, limit=limit, offset=offset)

    def subscribe(self, deployment_id: Optional[str] = None) -> Subscription:
        return self.events.subscribe(deployment_id)

    # ===================
    # Lifecycle
    # ===================

    async def cleanup(self, deployment_id: str, remove_workspace: bool = True) -> None:
        """Stop everything running for a deployment and release its resources."""
        self.executor.cancel(deployment_id)
        self.approvals.discard(deployment_id)
        await self.commands.cleanup(deployment_id, remove_workspace=remove_workspace)
        self._plans.pop(deployment_id, None)
        logger.info("Cleaned up deployment %s", deployment_id)

    async def close(self) -> None:
        """Cancel running executions and background work, close HTTP clients."""
        for deployment_id in self.executor.active_deployments():
            self.executor.cancel(deployment_id)
        await self.background.join(timeout=self.settings.kill_grace + 1.0)
        await self.background.cancel_all()
        if self._owned_verifier is not None:
            await self._owned_verifier.close()
