"""
ApprovalRegistry - human approval signals for plan steps.

An approval is keyed by (deployment_id, step_id). The executor waits on it
with a bounded timeout; the API resolves it. A decision may arrive before
the executor starts waiting, in which case the wait returns immediately.
"""

import asyncio
from dataclasses import dataclass, field
from datetime import datetime
from typing import Optional

from deploy_engine.domain.models import utcnow
from deploy_engine.errors import ApprovalRejectedError, ApprovalTimeoutError


@dataclass
class ApprovalDecision:
    approved: bool
    approver: Optional[str] = None
    reason: Optional[str] = None
    decided_at: datetime = field(default_factory=utcnow)


class ApprovalRegistry:
    """
    Pending approvals by (deployment_id, step_id).

    Usage:
        decision = await approvals.wait(dep_id, 10, "IaC Apply", timeout=300)

        # elsewhere (API request)
        approvals.approve(dep_id, 10, approver="alice")
    """

    def __init__(self):
        self._pending: dict[tuple[str, int], asyncio.Future] = {}

    def _future(self, deployment_id: str, step_id: int) -> asyncio.Future:
        key = (deployment_id, step_id)
        future = self._pending.get(key)
        if future is None:
            future = asyncio.get_running_loop().create_future()
            self._pending[key] = future
        return future

    def is_pending(self, deployment_id: str, step_id: int) -> bool:
        future = self._pending.get((deployment_id, step_id))
        return future is not None and not future.done()

    def pending_for(self, deployment_id: str) -> list[int]:
        return sorted(
            step_id
            for (dep_id, step_id), future in self._pending.items()
            if dep_id == deployment_id and not future.done()
        )

    def _resolve(self, deployment_id: str, step_id: int, decision: ApprovalDecision) -> bool:
        future = self._future(deployment_id, step_id)
        if future.done():
            return False
        future.set_result(decision)
        return True

    def approve(self, deployment_id: str, step_id: int, approver: Optional[str] = None) -> bool:
        """
        Approve a step.

        Returns:
            False if the step already had a decision
        """
        return self._resolve(deployment_id, step_id, ApprovalDecision(True, approver=approver))

    def reject(
        self,
        deployment_id: str,
        step_id: int,
        approver: Optional[str] = None,
        reason: Optional[str] = None,
    ) -> bool:
        return self._resolve(
            deployment_id, step_id, ApprovalDecision(False, approver=approver, reason=reason)
        )

    async def wait(
        self,
        deployment_id: str,
        step_id: int,
        step_name: str,
        timeout: float,
    ) -> ApprovalDecision:
        """
        Wait for a decision.

        Raises:
            ApprovalTimeoutError: No decision within timeout (treated as rejected)
            ApprovalRejectedError: The step was explicitly rejected
        """
        future = self._future(deployment_id, step_id)
        try:
            decision = await asyncio.wait_for(asyncio.shield(future), timeout)
        except asyncio.TimeoutError:
            raise ApprovalTimeoutError(step_id, step_name, timeout)
        finally:
            self._pending.pop((deployment_id, step_id), None)

        if not decision.approved:
            raise ApprovalRejectedError(step_id, step_name, decision.reason)
        return decision

    def discard(self, deployment_id: str) -> None:
        """Drop every pending approval of a deployment."""
        for key in [k for k in self._pending if k[0] == deployment_id]:
            future = self._pending.pop(key)
            if not future.done():
                future.cancel()
