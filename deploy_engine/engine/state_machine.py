"""
Stage State Machine - legal deployment status transitions.

The adjacency map below is the single source of truth for which status may
follow which. A transition outside the allowed set raises
InvalidTransitionError and leaves the deployment untouched; this includes
"transitions" to the current status unless that status lists itself as a
retry edge.

Statuses with an empty allowed set are terminal: reaching one archives the
deployment.
"""

from typing import Any, Optional, Union

from deploy_engine.db.models import Deployment, DeploymentStatus, LogLevel, LogSource
from deploy_engine.db.repository import DeploymentRepository
from deploy_engine.domain.models import utcnow
from deploy_engine.errors import InvalidTransitionError, ValidationError
from deploy_engine.services.audit import AuditLog
from deploy_engine.services.events import EventBus
from deploy_engine.utils.logging import get_logger

logger = get_logger(__name__)

S = DeploymentStatus

TRANSITIONS: dict[DeploymentStatus, frozenset[DeploymentStatus]] = {
    S.INITIATED: frozenset({S.GITHUB_INPUT, S.GATHERING, S.REPOSITORY_ANALYSIS, S.PLAN_READY, S.CANCELLED}),
    S.GITHUB_INPUT: frozenset({S.ANALYZING, S.CANCELLED}),
    S.ANALYZING: frozenset({S.ENV_COLLECTION, S.PLANNING, S.GATHERING, S.REPOSITORY_ANALYSIS, S.CANCELLED}),
    S.PLANNING: frozenset({S.VALIDATING, S.ENV_COLLECTION, S.CANCELLED}),
    S.ENV_COLLECTION: frozenset({S.PLANNING, S.CREDENTIAL_COLLECTION, S.CANCELLED}),
    S.CREDENTIAL_COLLECTION: frozenset({S.SANDBOX_TESTING, S.PLAN_EXECUTION, S.CANCELLED}),
    S.SANDBOX_TESTING: frozenset({S.DEPLOYING, S.SANDBOX_FAILED, S.CANCELLED}),
    # Analysis stages may retry themselves
    S.REPOSITORY_ANALYSIS: frozenset({
        S.CODE_ANALYSIS, S.INFRASTRUCTURE_DISCOVERY, S.GATHERING, S.REPOSITORY_ANALYSIS, S.CANCELLED,
    }),
    S.CODE_ANALYSIS: frozenset({
        S.INFRASTRUCTURE_DISCOVERY, S.DEPENDENCY_ANALYSIS, S.GATHERING, S.CODE_ANALYSIS, S.CANCELLED,
    }),
    S.INFRASTRUCTURE_DISCOVERY: frozenset({
        S.DEPENDENCY_ANALYSIS, S.GATHERING, S.INFRASTRUCTURE_DISCOVERY, S.CANCELLED,
    }),
    S.DEPENDENCY_ANALYSIS: frozenset({S.GATHERING, S.DEPENDENCY_ANALYSIS, S.CANCELLED}),
    S.GATHERING: frozenset({S.PLANNING, S.REPOSITORY_ANALYSIS, S.PLAN_READY, S.PLAN_EXECUTION, S.CANCELLED}),
    S.PLAN_READY: frozenset({S.PLAN_EXECUTION, S.GATHERING, S.CANCELLED}),
    S.PLAN_EXECUTION: frozenset({S.DEPLOYING, S.PLAN_FAILED, S.CANCELLED}),
    S.PLAN_FAILED: frozenset({S.GATHERING, S.PLAN_EXECUTION, S.CANCELLED}),
    S.VALIDATING: frozenset({S.ESTIMATED, S.VALIDATION_FAILED, S.CANCELLED}),
    S.VALIDATION_FAILED: frozenset({S.PLANNING, S.VALIDATING, S.CANCELLED}),
    S.ESTIMATED: frozenset({S.PENDING_APPROVAL, S.PLANNING, S.CANCELLED}),
    S.PENDING_APPROVAL: frozenset({S.SANDBOX_DEPLOYING, S.REJECTED, S.CANCELLED}),
    S.SANDBOX_DEPLOYING: frozenset({S.TESTING, S.SANDBOX_FAILED, S.CANCELLED}),
    S.SANDBOX_FAILED: frozenset({S.PLANNING, S.CANCELLED}),
    S.TESTING: frozenset({S.SANDBOX_VALIDATED, S.SANDBOX_FAILED, S.CANCELLED}),
    S.SANDBOX_VALIDATED: frozenset({S.APPROVED, S.REJECTED, S.CANCELLED}),
    S.APPROVED: frozenset({S.GITHUB_COMMIT, S.DEPLOYING, S.CANCELLED}),
    S.REJECTED: frozenset({S.PLANNING, S.CANCELLED}),
    S.GITHUB_COMMIT: frozenset({S.GITHUB_ACTIONS, S.DEPLOYING, S.CANCELLED}),
    S.GITHUB_ACTIONS: frozenset({S.DEPLOYING, S.CANCELLED}),
    S.DEPLOYING: frozenset({S.DEPLOYED, S.DEPLOYMENT_FAILED}),
    S.DEPLOYMENT_FAILED: frozenset({S.ROLLING_BACK}),
    S.ROLLING_BACK: frozenset({S.ROLLED_BACK, S.ROLLBACK_FAILED}),
    S.ROLLED_BACK: frozenset(),
    S.ROLLBACK_FAILED: frozenset(),
    S.DEPLOYED: frozenset({S.DESTROYING}),
    S.DESTROYING: frozenset({S.DESTROYED}),
    S.DESTROYED: frozenset(),
    S.CANCELLED: frozenset(),
}


def coerce_status(value: Union[str, DeploymentStatus]) -> DeploymentStatus:
    """
    Accept a status enum, its value ("plan_ready") or its name ("PLAN_READY").

    Raises:
        ValidationError: Unknown status
    """
    if isinstance(value, DeploymentStatus):
        return value
    try:
        return DeploymentStatus(value)
    except ValueError:
        pass
    try:
        return DeploymentStatus[str(value).upper()]
    except KeyError:
        raise ValidationError(
            f"Unknown deployment status: {value}",
            context={"status": value},
        )


def allowed_transitions(status: Union[str, DeploymentStatus]) -> frozenset[DeploymentStatus]:
    return TRANSITIONS.get(coerce_status(status), frozenset())


def can_transition(current: Union[str, DeploymentStatus], target: Union[str, DeploymentStatus]) -> bool:
    return coerce_status(target) in allowed_transitions(current)


def is_terminal(status: Union[str, DeploymentStatus]) -> bool:
    return not allowed_transitions(status)


class StageStateMachine:
    """
    Applies validated transitions to persisted deployments.

    Usage:
        machine = StageStateMachine(repository, events, audit)
        deployment = await machine.transition(dep_id, DeploymentStatus.PLAN_READY)
    """

    def __init__(self, repository: DeploymentRepository, events: EventBus, audit: AuditLog):
        self.repository = repository
        self.events = events
        self.audit = audit

    async def transition(
        self,
        deployment_id: str,
        target: Union[str, DeploymentStatus],
        metadata: Optional[dict[str, Any]] = None,
    ) -> Deployment:
        """
        Move a deployment to a new status.

        Args:
            deployment_id: Deployment to transition
            target: New status
            metadata: Stored with the status_history entry

        Returns:
            The updated Deployment

        Raises:
            DeploymentNotFoundError: If the deployment doesn't exist
            InvalidTransitionError: If target is not allowed from the current status
        """
        target = coerce_status(target)
        deployment = await self.repository.require(deployment_id)
        current = deployment.status

        self.check(current, target)

        now = utcnow()
        entry = {
            "status": target.value,
            "timestamp": now.isoformat(),
            "metadata": dict(metadata or {}),
        }
        updated = await self.repository.update_status(
            deployment_id,
            target,
            entry,
            archived_at=now if is_terminal(target) else None,
            expected_status=current,
        )

        logger.info("Deployment %s transitioned: %s -> %s", deployment_id, current.value, target.value)
        await self.audit.record(
            deployment_id,
            LogLevel.INFO,
            f"Status changed: {current.value} -> {target.value}",
            LogSource.SYSTEM,
            metadata={"event": "stage_changed", "from": current.value, "to": target.value},
        )
        await self.events.emit(
            "stage_changed",
            deployment_id,
            {
                "from": current.value,
                "to": target.value,
                "metadata": entry["metadata"],
                "terminal": is_terminal(target),
            },
        )
        return updated

    def check(self, current: DeploymentStatus, target: DeploymentStatus) -> None:
        """
        Raises:
            InvalidTransitionError: If target is not in allowed(current)
        """
        allowed = allowed_transitions(current)
        if target not in allowed:
            raise InvalidTransitionError(current.value, target.value, [s.value for s in allowed])

    async def get_history(self, deployment_id: str) -> list[dict[str, Any]]:
        deployment = await self.repository.require(deployment_id)
        return list(deployment.status_history or [])
