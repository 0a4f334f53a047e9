"""
API package - FastAPI routes and Pydantic schemas.
"""

from deploy_engine.api.routes import router
from deploy_engine.api.schemas import (
    ApprovalRequest,
    ApprovalResponse,
    CommandResponse,
    CreateDeploymentRequest,
    DeploymentResponse,
    RunCommandRequest,
    StartExecutionRequest,
    TransitionRequest,
)

__all__ = [
    "router",
    "ApprovalRequest",
    "ApprovalResponse",
    "CommandResponse",
    "CreateDeploymentRequest",
    "DeploymentResponse",
    "RunCommandRequest",
    "StartExecutionRequest",
    "TransitionRequest",
]
