"""
FastAPI routes for Deployments.

These routes expose the DeploymentOrchestrator functionality via REST API.
All routes are prefixed with /v1/deployments.

Engine errors are translated to HTTP status codes here and nowhere else:
    DEPLOYMENT_NOT_FOUND                             -> 404
    CONFLICT, INVALID_TRANSITION, GATE_BLOCKED       -> 409
    VALIDATION_ERROR, WORKSPACE_ESCAPE, PLAN_INVALID -> 422
    anything else                                    -> 400
"""

from typing import Any, AsyncIterator, Optional

from fastapi import APIRouter, Depends, HTTPException, Query, Request, status
from fastapi.responses import StreamingResponse

from deploy_engine.api.schemas import (
    ApprovalRequest,
    ApprovalResponse,
    CancelResponse,
    CommandResponse,
    CreateDeploymentRequest,
    DeploymentResponse,
    ErrorResponse,
    MarkStepRequest,
    RunCommandRequest,
    StartExecutionRequest,
    TransitionRequest,
)
from deploy_engine.db.models import Deployment
from deploy_engine.domain.models import ExecutionState, GateCheck, Plan
from deploy_engine.engine import DeploymentOrchestrator, allowed_transitions
from deploy_engine.errors import EngineError
from deploy_engine.services.events import Subscription


router = APIRouter(prefix="/v1/deployments", tags=["Deployments"])

STATUS_BY_CODE = {
    "DEPLOYMENT_NOT_FOUND": status.HTTP_404_NOT_FOUND,
    "CONFLICT": status.HTTP_409_CONFLICT,
    "INVALID_TRANSITION": status.HTTP_409_CONFLICT,
    "GATE_BLOCKED": status.HTTP_409_CONFLICT,
    "VALIDATION_ERROR": status.HTTP_422_UNPROCESSABLE_ENTITY,
    "WORKSPACE_ESCAPE": status.HTTP_422_UNPROCESSABLE_ENTITY,
    "PLAN_INVALID": status.HTTP_422_UNPROCESSABLE_ENTITY,
}

SSE_KEEPALIVE_SECONDS = 15.0


def get_orchestrator(request: Request) -> DeploymentOrchestrator:
    """Get the orchestrator created in the application lifespan."""
    return request.app.state.orchestrator


def http_error(error: EngineError) -> HTTPException:
    return HTTPException(
        status_code=STATUS_BY_CODE.get(error.code, status.HTTP_400_BAD_REQUEST),
        detail=error.to_dict(),
    )


def deployment_response(deployment: Deployment) -> DeploymentResponse:
    return DeploymentResponse(
        **deployment.to_dict(),
        allowed_transitions=sorted(s.value for s in allowed_transitions(deployment.status)),
    )


# ===================
# Deployments
# ===================

@router.post(
    "",
    response_model=DeploymentResponse,
    status_code=status.HTTP_201_CREATED,
    responses={422: {"model": ErrorResponse}},
)
async def create_deployment(
    request: CreateDeploymentRequest,
    orchestrator: DeploymentOrchestrator = Depends(get_orchestrator),
):
    """
    Create a new deployment.

    The deployment starts in INITIATED with its own workspace.
    """
    try:
        deployment = await orchestrator.create_deployment(
            repository_url=request.repository_url,
            workspace_path=request.workspace_path,
            deployment_id=request.deployment_id,
        )
    except EngineError as e:
        raise http_error(e)
    return deployment_response(deployment)


@router.get("", response_model=list[DeploymentResponse])
async def list_deployments(
    status_filter: Optional[str] = Query(default=None, alias="status"),
    limit: int = Query(default=50, ge=1, le=500),
    offset: int = Query(default=0, ge=0),
    orchestrator: DeploymentOrchestrator = Depends(get_orchestrator),
):
    try:
        deployments = await orchestrator.list_deployments(status_filter, limit=limit, offset=offset)
    except EngineError as e:
        raise http_error(e)
    return [deployment_response(d) for d in deployments]


@router.get(
    "/{deployment_id}",
    response_model=DeploymentResponse,
    responses={404: {"model": ErrorResponse}},
)
async def get_deployment(
    deployment_id: str,
    orchestrator: DeploymentOrchestrator = Depends(get_orchestrator),
):
    try:
        deployment = await orchestrator.get_deployment(deployment_id)
    except EngineError as e:
        raise http_error(e)
    return deployment_response(deployment)


@router.post(
    "/{deployment_id}/transitions",
    response_model=DeploymentResponse,
    responses={404: {"model": ErrorResponse}, 409: {"model": ErrorResponse}},
)
async def transition_deployment(
    deployment_id: str,
    request: TransitionRequest,
    orchestrator: DeploymentOrchestrator = Depends(get_orchestrator),
):
    """
    Move a deployment to another stage.

    The completion gate is consulted first; an illegal or blocked
    transition leaves the deployment unchanged and returns 409.
    """
    try:
        deployment = await orchestrator.advance(deployment_id, request.status, request.metadata)
    except EngineError as e:
        raise http_error(e)
    return deployment_response(deployment)


@router.post("/{deployment_id}/cleanup", status_code=status.HTTP_204_NO_CONTENT)
async def cleanup_deployment(
    deployment_id: str,
    remove_workspace: bool = Query(default=True),
    orchestrator: DeploymentOrchestrator = Depends(get_orchestrator),
):
    """Stop running work and remove the deployment's temporary workspace."""
    try:
        await orchestrator.get_deployment(deployment_id)
        await orchestrator.cleanup(deployment_id, remove_workspace=remove_workspace)
    except EngineError as e:
        raise http_error(e)


# ===================
# Completion Gate
# ===================

@router.get("/{deployment_id}/gate", response_model=dict[str, GateCheck])
async def get_gate_statuses(
    deployment_id: str,
    orchestrator: DeploymentOrchestrator = Depends(get_orchestrator),
):
    try:
        await orchestrator.get_deployment(deployment_id)
        return await orchestrator.gate.get_step_statuses(deployment_id)
    except EngineError as e:
        raise http_error(e)


@router.get("/{deployment_id}/gate/{step}")
async def get_gate_checklist(
    deployment_id: str,
    step: str,
    orchestrator: DeploymentOrchestrator = Depends(get_orchestrator),
) -> dict[str, Any]:
    try:
        await orchestrator.get_deployment(deployment_id)
        checklist = await orchestrator.gate.get_step_checklist(deployment_id, step)
    except EngineError as e:
        raise http_error(e)
    checklist["details"] = checklist["details"].model_dump()
    return checklist


@router.post("/{deployment_id}/gate/{step}/complete")
async def mark_gate_step_complete(
    deployment_id: str,
    step: str,
    request: MarkStepRequest,
    orchestrator: DeploymentOrchestrator = Depends(get_orchestrator),
) -> dict[str, Any]:
    """
    Record a gate step as complete.

    Idempotent: the first record wins.
    """
    try:
        return await orchestrator.gate.mark_step_complete(deployment_id, step, request.metadata)
    except EngineError as e:
        raise http_error(e)


@router.get("/{deployment_id}/gate/{step}/can-proceed")
async def can_proceed_to_gate_step(
    deployment_id: str,
    step: str,
    orchestrator: DeploymentOrchestrator = Depends(get_orchestrator),
) -> dict[str, Any]:
    """Whether every dependency of a gate step is complete, and if not, which one blocks."""
    try:
        await orchestrator.get_deployment(deployment_id)
        can_proceed, blocking_step, reason = await orchestrator.gate.explain(deployment_id, step)
    except EngineError as e:
        raise http_error(e)
    return {
        "step": step,
        "can_proceed": can_proceed,
        "blocking_step": blocking_step,
        "reason": reason,
    }


# ===================
# Plan & Execution
# ===================

@router.post(
    "/{deployment_id}/plan",
    response_model=Plan,
    responses={404: {"model": ErrorResponse}},
)
async def generate_plan(
    deployment_id: str,
    orchestrator: DeploymentOrchestrator = Depends(get_orchestrator),
):
    """Analyze the workspace and generate a fresh deployment plan."""
    try:
        return await orchestrator.generate_plan(deployment_id)
    except EngineError as e:
        raise http_error(e)


@router.get("/{deployment_id}/plan", response_model=Plan)
async def get_plan(
    deployment_id: str,
    orchestrator: DeploymentOrchestrator = Depends(get_orchestrator),
):
    plan = orchestrator.get_plan(deployment_id)
    if plan is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=f"No plan generated for deployment: {deployment_id}",
        )
    return plan


@router.post(
    "/{deployment_id}/execution",
    response_model=ExecutionState,
    status_code=status.HTTP_202_ACCEPTED,
    responses={404: {"model": ErrorResponse}, 409: {"model": ErrorResponse}, 422: {"model": ErrorResponse}},
)
async def start_execution(
    deployment_id: str,
    request: StartExecutionRequest,
    orchestrator: DeploymentOrchestrator = Depends(get_orchestrator),
):
    """
    Start executing the deployment plan in the background.

    Progress is reported through GET /execution and the event stream.
    """
    try:
        plan = None
        if request.regenerate_plan:
            plan = await orchestrator.generate_plan(deployment_id)
        return await orchestrator.start_plan(
            deployment_id,
            plan=plan,
            auto_approve=request.auto_approve,
            rollback_on_failure=request.rollback_on_failure,
            approval_timeout=request.approval_timeout,
        )
    except EngineError as e:
        raise http_error(e)


@router.get("/{deployment_id}/execution", response_model=ExecutionState)
async def get_execution(
    deployment_id: str,
    orchestrator: DeploymentOrchestrator = Depends(get_orchestrator),
):
    state = orchestrator.get_execution_status(deployment_id)
    if state is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=f"No execution for deployment: {deployment_id}",
        )
    return state


@router.post("/{deployment_id}/execution/cancel", response_model=CancelResponse)
async def cancel_execution(
    deployment_id: str,
    orchestrator: DeploymentOrchestrator = Depends(get_orchestrator),
):
    return CancelResponse(
        deployment_id=deployment_id,
        cancelled=orchestrator.cancel_execution(deployment_id),
    )


async def _resolve(
    orchestrator: DeploymentOrchestrator,
    deployment_id: str,
    step_id: int,
    approved: bool,
    request: ApprovalRequest,
) -> ApprovalResponse:
    try:
        recorded = await orchestrator.resolve_approval(
            deployment_id,
            step_id,
            approved,
            approver=request.approver,
            reason=request.reason,
        )
    except EngineError as e:
        raise http_error(e)

    decision = "approved" if approved else "rejected"
    return ApprovalResponse(
        success=recorded,
        deployment_id=deployment_id,
        step_id=step_id,
        approved=approved,
        message=f"Step {step_id} {decision}" if recorded else f"Step {step_id} was already decided",
    )


@router.post("/{deployment_id}/approvals/{step_id}/approve", response_model=ApprovalResponse)
async def approve_step(
    deployment_id: str,
    step_id: int,
    request: ApprovalRequest,
    orchestrator: DeploymentOrchestrator = Depends(get_orchestrator),
):
    """Approve a step that requires approval (before or while it is awaited)."""
    return await _resolve(orchestrator, deployment_id, step_id, True, request)


@router.post("/{deployment_id}/approvals/{step_id}/reject", response_model=ApprovalResponse)
async def reject_step(
    deployment_id: str,
    step_id: int,
    request: ApprovalRequest,
    orchestrator: DeploymentOrchestrator = Depends(get_orchestrator),
):
    """Reject a step. The running plan fails with APPROVAL_REJECTED."""
    return await _resolve(orchestrator, deployment_id, step_id, False, request)


# ===================
# Commands, Logs, Events
# ===================

@router.post(
    "/{deployment_id}/commands",
    response_model=CommandResponse,
    responses={404: {"model": ErrorResponse}, 409: {"model": ErrorResponse}},
)
async def run_command(
    deployment_id: str,
    request: RunCommandRequest,
    orchestrator: DeploymentOrchestrator = Depends(get_orchestrator),
):
    """
    Run a command in the deployment workspace and wait for it.

    A non-zero exit code is reported in the response, not as an error.
    Output is streamed live on the event stream.
    """
    try:
        result = await orchestrator.run_command(
            deployment_id,
            request.command,
            cwd=request.cwd,
            env=request.env,
            timeout=request.timeout,
        )
    except EngineError as e:
        raise http_error(e)
    return CommandResponse(command=result.command, **result.to_dict())


@router.get("/{deployment_id}/logs")
async def get_logs(
    deployment_id: str,
    level: Optional[str] = None,
    source: Optional[str] = None,
    limit: int = Query(default=100, ge=1, le=1000),
    offset: int = Query(default=0, ge=0),
    orchestrator: DeploymentOrchestrator = Depends(get_orchestrator),
) -> list[dict[str, Any]]:
    """Audit log entries, oldest first (the newest `limit` by default)."""
    try:
        await orchestrator.get_deployment(deployment_id)
        return await orchestrator.list_logs(
            deployment_id, level=level, source=source, limit=limit, offset=offset
        )
    except EngineError as e:
        raise http_error(e)


async def _event_stream(request: Request, subscription: Subscription) -> AsyncIterator[str]:
    async with subscription:
        yield ": connected\n\n"
        while not subscription.closed:
            if await request.is_disconnected():
                break
            event = await subscription.get(timeout=SSE_KEEPALIVE_SECONDS)
            if event is None:
                yield ": keep-alive\n\n"
                continue
            yield f"event: {event.type}\ndata: {event.model_dump_json()}\n\n"


@router.get("/{deployment_id}/events")
async def stream_events(
    deployment_id: str,
    request: Request,
    orchestrator: DeploymentOrchestrator = Depends(get_orchestrator),
):
    """Server-Sent Events stream of everything happening to a deployment."""
    try:
        await orchestrator.get_deployment(deployment_id)
    except EngineError as e:
        raise http_error(e)

    subscription = orchestrator.subscribe(deployment_id)
    return StreamingResponse(
        _event_stream(request, subscription),
        media_type="text/event-stream",
        headers={"Cache-Control": "no-cache", "X-Accel-Buffering": "no"},
    )
