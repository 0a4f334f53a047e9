"""
Step Completion Gate - "is this step really done?" before moving on.

Gate steps are coarse milestones of the deployment workflow, separate from
plan steps. A gate step is complete when it was recorded complete, or when
its required artifacts exist in the workspace and (where configured) the
verification collaborator confirms it.

Dependencies between gate steps:
    env_collection         <- (none)
    credential_collection  <- file_generation
    iac_generation         <- credential_collection, env_collection
    sandbox_testing        <- iac_generation

Records are first-write-wins: once a step is recorded complete it stays
complete until reset_step() is called on a failure path.
"""

import enum
from dataclasses import dataclass
from typing import Any, Optional, Union

from deploy_engine.config import Settings, get_settings
from deploy_engine.db.models import DeploymentStatus, LogLevel, LogSource
from deploy_engine.db.repository import DeploymentRepository
from deploy_engine.domain.models import GateCheck, GateCheckItem, utcnow
from deploy_engine.errors import ValidationError
from deploy_engine.services.audit import AuditLog
from deploy_engine.services.events import EventBus
from deploy_engine.services.verification import Verifier
from deploy_engine.services.workspace import WorkspaceManager
from deploy_engine.utils.logging import get_logger

logger = get_logger(__name__)


class GateStep(str, enum.Enum):
    FILE_GENERATION = "file_generation"
    ENV_COLLECTION = "env_collection"
    CREDENTIAL_COLLECTION = "credential_collection"
    IAC_GENERATION = "iac_generation"
    SANDBOX_TESTING = "sandbox_testing"


@dataclass(frozen=True)
class GateStepDefinition:
    """
    Completion requirements of one gate step.

    Attributes:
        requirements: Workspace files that must exist
        optional: Workspace files reported but not required
        verify: Whether the verification collaborator must confirm
    """
    step: GateStep
    name: str
    requirements: tuple[str, ...] = ()
    optional: tuple[str, ...] = ()
    verify: bool = False


STEP_DEPENDENCIES: dict[GateStep, tuple[GateStep, ...]] = {
    GateStep.FILE_GENERATION: (),
    GateStep.ENV_COLLECTION: (),
    GateStep.CREDENTIAL_COLLECTION: (GateStep.FILE_GENERATION,),
    GateStep.IAC_GENERATION: (GateStep.CREDENTIAL_COLLECTION, GateStep.ENV_COLLECTION),
    GateStep.SANDBOX_TESTING: (GateStep.IAC_GENERATION,),
}

# Entering one of these statuses starts work on the mapped gate step
STATUS_TO_GATE_STEP: dict[DeploymentStatus, GateStep] = {
    DeploymentStatus.PLANNING: GateStep.FILE_GENERATION,
    DeploymentStatus.ENV_COLLECTION: GateStep.ENV_COLLECTION,
    DeploymentStatus.CREDENTIAL_COLLECTION: GateStep.CREDENTIAL_COLLECTION,
    DeploymentStatus.VALIDATING: GateStep.IAC_GENERATION,
    DeploymentStatus.SANDBOX_TESTING: GateStep.SANDBOX_TESTING,
}

# Fallback for commands that do not identify their gate step themselves
COMMAND_STATUS_TO_GATE_STEP: dict[DeploymentStatus, GateStep] = {
    DeploymentStatus.PLANNING: GateStep.IAC_GENERATION,
    DeploymentStatus.VALIDATING: GateStep.IAC_GENERATION,
}

IAC_TOOLS = ("terraform", "tofu")


def coerce_gate_step(value: Union[str, GateStep]) -> GateStep:
    """
    Raises:
        ValidationError: Unknown gate step
    """
    if isinstance(value, GateStep):
        return value
    try:
        return GateStep(str(value).lower())
    except ValueError:
        raise ValidationError(
            f"Unknown gate step: {value}",
            context={"step": value, "allowed": [s.value for s in GateStep]},
        )


def step_for_command(command: str, status: Optional[DeploymentStatus] = None) -> Optional[GateStep]:
    """Which gate step a successful command may have completed."""
    lowered = command.lower().strip()
    if any(tool in lowered for tool in IAC_TOOLS) and ("validate" in lowered or "fmt" in lowered):
        return GateStep.IAC_GENERATION
    if "docker" in lowered and ("build" in lowered or "compose" in lowered):
        return GateStep.FILE_GENERATION
    if status is not None:
        return COMMAND_STATUS_TO_GATE_STEP.get(status)
    return None


class StepCompletionGate:
    """
    Answers completion questions and records completed gate steps.

    Usage:
        check = await gate.check_step_completion(dep_id, "file_generation")
        if check.complete:
            await gate.mark_step_complete(dep_id, "file_generation")

        ok, blocking, reason = await gate.explain(dep_id, "iac_generation")
    """

    def __init__(
        self,
        repository: DeploymentRepository,
        workspaces: WorkspaceManager,
        verifier: Verifier,
        events: EventBus,
        audit: AuditLog,
        settings: Optional[Settings] = None,
    ):
        self.repository = repository
        self.workspaces = workspaces
        self.verifier = verifier
        self.events = events
        self.audit = audit
        self.settings = settings or get_settings()
        self.definitions = self._build_definitions()

    def _build_definitions(self) -> dict[GateStep, GateStepDefinition]:
        return {
            GateStep.FILE_GENERATION: GateStepDefinition(
                GateStep.FILE_GENERATION,
                "File Generation",
                requirements=("Dockerfile", "docker-compose.yml"),
                optional=("deploy.sh", "build.sh", ".dockerignore"),
            ),
            GateStep.ENV_COLLECTION: GateStepDefinition(
                GateStep.ENV_COLLECTION,
                "Environment Variable Collection",
                verify=True,
            ),
            GateStep.CREDENTIAL_COLLECTION: GateStepDefinition(
                GateStep.CREDENTIAL_COLLECTION,
                "Credential Collection",
                verify=True,
            ),
            GateStep.IAC_GENERATION: GateStepDefinition(
                GateStep.IAC_GENERATION,
                "IaC Generation",
                requirements=(f"{self.settings.iac_dir}/main.tf",),
                verify=True,
            ),
            GateStep.SANDBOX_TESTING: GateStepDefinition(
                GateStep.SANDBOX_TESTING,
                "Sandbox Testing",
                verify=True,
            ),
        }

    # ===================
    # Checks
    # ===================

    async def check_step_completion(
        self,
        deployment_id: str,
        step: Union[str, GateStep],
    ) -> GateCheck:
        """
        Check whether a gate step is complete.

        Collaborator errors (workspace, verification) become failed checks;
        this method only raises for an unknown step name.
        """
        step = coerce_gate_step(step)
        definition = self.definitions[step]

        deployment = await self.repository.get(deployment_id)
        if deployment is None:
            return GateCheck(step=step.value, complete=False, reason="Deployment not found")

        record = (deployment.step_status or {}).get(step.value)
        if record and record.get("complete"):
            return GateCheck(
                step=step.value,
                complete=True,
                checks=[GateCheckItem(name="recorded", passed=True, detail=record.get("completed_at"))],
                reason="Step recorded complete",
            )

        checks: list[GateCheckItem] = []
        missing: list[str] = []

        if definition.requirements or definition.optional:
            try:
                workspace = self.workspaces.get(deployment_id, path=deployment.workspace_path)
                for artifact in definition.requirements:
                    exists = workspace.is_file(artifact)
                    checks.append(GateCheckItem(name=f"{artifact} exists", passed=exists))
                    if not exists:
                        missing.append(artifact)
                for artifact in definition.optional:
                    checks.append(GateCheckItem(
                        name=f"{artifact} exists",
                        passed=workspace.is_file(artifact),
                        required=False,
                    ))
            except Exception as e:
                logger.warning("Workspace check failed for %s/%s: %s", deployment_id, step.value, e)
                checks.append(GateCheckItem(name="workspace", passed=False, detail=str(e)))
                missing.extend(definition.requirements)

        verification_detail = None
        if definition.verify:
            try:
                report = await self.verifier.verify(deployment_id, step.value)
                checks.append(GateCheckItem(name="verified", passed=report.complete, detail=report.detail))
                if not report.complete:
                    verification_detail = report.detail or "Not verified"
            except Exception as e:
                logger.warning("Verification failed for %s/%s: %s", deployment_id, step.value, e)
                verification_detail = f"Verification error: {e}"
                checks.append(GateCheckItem(name="verified", passed=False, detail=verification_detail))

        complete = all(item.passed for item in checks if item.required)
        if missing:
            reason = f"Missing required files: {', '.join(missing)}"
        elif verification_detail:
            reason = verification_detail
        else:
            reason = f"{definition.name} requirements met"

        return GateCheck(step=step.value, complete=complete, checks=checks, reason=reason)

    async def explain(
        self,
        deployment_id: str,
        next_step: Union[str, GateStep],
    ) -> tuple[bool, Optional[str], str]:
        """
        Check the dependencies of a gate step.

        Returns:
            (can_proceed, blocking_step, reason)
        """
        next_step = coerce_gate_step(next_step)
        for dependency in STEP_DEPENDENCIES[next_step]:
            check = await self.check_step_completion(deployment_id, dependency)
            if not check.complete:
                return (
                    False,
                    dependency.value,
                    f"Dependency step '{dependency.value}' not complete: {check.reason}",
                )
        return True, None, "All dependencies complete"

    async def can_proceed_to_next_step(
        self,
        deployment_id: str,
        next_step: Union[str, GateStep],
    ) -> bool:
        can_proceed, _, _ = await self.explain(deployment_id, next_step)
        return can_proceed

    async def get_step_checklist(
        self,
        deployment_id: str,
        step: Union[str, GateStep],
    ) -> dict[str, Any]:
        step = coerce_gate_step(step)
        definition = self.definitions[step]
        check = await self.check_step_completion(deployment_id, step)
        return {
            "step": step.value,
            "name": definition.name,
            "requirements": list(definition.requirements),
            "optional": list(definition.optional),
            "dependencies": [d.value for d in STEP_DEPENDENCIES[step]],
            "complete": check.complete,
            "details": check,
        }

    async def get_step_statuses(self, deployment_id: str) -> dict[str, GateCheck]:
        return {
            step.value: await self.check_step_completion(deployment_id, step)
            for step in GateStep
        }

    # ===================
    # Writes
    # ===================

    async def mark_step_complete(
        self,
        deployment_id: str,
        step: Union[str, GateStep],
        metadata: Optional[dict[str, Any]] = None,
    ) -> dict[str, Any]:
        """
        Record a gate step as complete. Idempotent: the first record wins and
        later calls never change completed_at or metadata.

        Returns:
            The effective record plus "step" and "already_complete"

        Raises:
            DeploymentNotFoundError: If the deployment doesn't exist
        """
        step = coerce_gate_step(step)
        record = {
            "complete": True,
            "completed_at": utcnow().isoformat(),
            "metadata": dict(metadata or {}),
        }
        deployment, written = await self.repository.set_step_record(deployment_id, step.value, record)
        effective = dict((deployment.step_status or {}).get(step.value) or record)

        if written:
            logger.info("Step %s marked complete for deployment %s", step.value, deployment_id)
            await self.audit.record(
                deployment_id,
                LogLevel.INFO,
                f"Gate step complete: {step.value}",
                LogSource.SYSTEM,
                metadata={"event": "gate_step_completed", "step": step.value, **record["metadata"]},
            )
            await self.events.emit(
                "gate_step_completed",
                deployment_id,
                {"step": step.value, "completed_at": effective.get("completed_at")},
            )

        return {"step": step.value, "already_complete": not written, **effective}

    async def reset_step(self, deployment_id: str, step: Union[str, GateStep]) -> bool:
        """
        Clear a gate step record (failure paths only).

        Returns:
            True if a record was removed
        """
        step = coerce_gate_step(step)
        _, removed = await self.repository.set_step_record(deployment_id, step.value, None)
        if removed:
            logger.info("Step %s reset for deployment %s", step.value, deployment_id)
            await self.audit.record(
                deployment_id,
                LogLevel.WARN,
                f"Gate step reset: {step.value}",
                LogSource.SYSTEM,
                metadata={"event": "gate_step_reset", "step": step.value},
            )
        return removed

    async def auto_complete_for_command(
        self,
        deployment_id: str,
        command: str,
        status: Optional[DeploymentStatus] = None,
    ) -> Optional[str]:
        """
        Mark the gate step a successful command may have completed.

        Best-effort: every error is logged and swallowed.

        Returns:
            The gate step marked complete, or None
        """
        try:
            deployment = await self.repository.get(deployment_id)
            if deployment is None:
                return None

            step = step_for_command(command, status or deployment.status)
            if step is None:
                return None

            record = (deployment.step_status or {}).get(step.value)
            if record and record.get("complete"):
                return None

            check = await self.check_step_completion(deployment_id, step)
            if not check.complete:
                return None

            await self.mark_step_complete(
                deployment_id,
                step,
                {"auto_completed": True, "trigger_command": command, "completed_by": "system"},
            )
            logger.info(
                "Step %s automatically marked complete for %s (trigger: %s)",
                step.value,
                deployment_id,
                command[:50],
            )
            return step.value
        except Exception as e:
            logger.debug("Auto-completion check failed for %s (non-critical): %s", deployment_id, e)
            return None
