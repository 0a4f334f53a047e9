"""
Pydantic schemas for API requests and responses.

These schemas define the data contract for the REST API.
They handle validation, serialization, and documentation.
"""

from datetime import datetime
from typing import Any, Optional

from pydantic import BaseModel, Field


# ===================
# Request Schemas
# ===================

class CreateDeploymentRequest(BaseModel):
    """Request to create a new deployment."""
    repository_url: Optional[str] = Field(
        default=None,
        description="Source repository (informational)",
        examples=["https://github.com/acme/shop"],
    )
    workspace_path: Optional[str] = Field(
        default=None,
        description="Existing checkout to deploy from (a fresh workspace is created if not provided)",
    )
    deployment_id: Optional[str] = Field(
        default=None,
        description="Explicit deployment id (generated if not provided)",
        max_length=64,
    )


class TransitionRequest(BaseModel):
    """Request to move a deployment to another stage."""
    status: str = Field(..., description="Target status", examples=["plan_ready"])
    metadata: dict[str, Any] = Field(default_factory=dict)


class MarkStepRequest(BaseModel):
    """Request to record a gate step as complete."""
    metadata: dict[str, Any] = Field(default_factory=dict)


class StartExecutionRequest(BaseModel):
    """Options for a plan run."""
    auto_approve: bool = Field(default=False, description="Skip approval waits")
    rollback_on_failure: Optional[bool] = Field(
        default=None,
        description="Compensate completed steps after a failure (server default if not provided)",
    )
    approval_timeout: Optional[float] = Field(default=None, gt=0)
    regenerate_plan: bool = Field(default=False, description="Generate a fresh plan before running")


class ApprovalRequest(BaseModel):
    """Decision on a step that requires approval."""
    approver: Optional[str] = None
    reason: Optional[str] = None


class RunCommandRequest(BaseModel):
    """Request to run a command in the deployment workspace."""
    command: str = Field(
        ...,
        min_length=1,
        max_length=10000,
        examples=["terraform validate"],
    )
    cwd: Optional[str] = Field(default=None, description="Directory relative to the workspace")
    env: Optional[dict[str, str]] = None
    timeout: Optional[float] = Field(default=None, gt=0)


# ===================
# Response Schemas
# ===================

class DeploymentResponse(BaseModel):
    """Response schema for a deployment."""
    deployment_id: str
    status: str
    previous_status: Optional[str] = None
    status_history: list[dict[str, Any]] = []
    step_status: dict[str, Any] = {}
    workspace_path: Optional[str] = None
    repository_url: Optional[str] = None
    allowed_transitions: list[str] = []
    created_at: datetime
    updated_at: datetime
    archived_at: Optional[datetime] = None

    class Config:
        from_attributes = True


class CommandResponse(BaseModel):
    """Result of a command that ran to completion."""
    command: str
    success: bool
    exit_code: int
    stdout: str
    stderr: str
    duration_ms: int


class ApprovalResponse(BaseModel):
    """Response after approving or rejecting a step."""
    success: bool
    deployment_id: str
    step_id: int
    approved: bool
    message: str


class CancelResponse(BaseModel):
    deployment_id: str
    cancelled: bool


class ErrorResponse(BaseModel):
    """Standard error response."""
    error: str
    detail: Optional[str] = None
    context: dict[str, Any] = {}
