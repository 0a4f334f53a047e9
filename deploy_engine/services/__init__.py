"""
Services package - Collaborators and infrastructure used by the engine.

Contains the command runner, per-deployment command service, workspaces,
event fan-out, audit log, approvals, verification, analysis and planning.
"""

from deploy_engine.services.analysis import WorkspaceAnalyzer
from deploy_engine.services.approval import ApprovalDecision, ApprovalRegistry
from deploy_engine.services.audit import AuditLog
from deploy_engine.services.background import BackgroundTasks
from deploy_engine.services.commands import DeploymentCommandService, infer_source
from deploy_engine.services.events import Event, EventBus, Subscription
from deploy_engine.services.planner import PlannerService
from deploy_engine.services.shell import (
    CommandCategory,
    CommandResult,
    CommandRunner,
    classify_command,
    merge_path,
    resolve_shell,
    shell_candidates,
)
from deploy_engine.services.verification import (
    ArtifactVerifier,
    HttpVerificationClient,
    VerificationError,
    Verifier,
)
from deploy_engine.services.workspace import Workspace, WorkspaceManager, WorkspaceSecurityError

__all__ = [
    "ApprovalDecision",
    "ApprovalRegistry",
    "ArtifactVerifier",
    "AuditLog",
    "BackgroundTasks",
    "CommandCategory",
    "CommandResult",
    "CommandRunner",
    "DeploymentCommandService",
    "Event",
    "EventBus",
    "HttpVerificationClient",
    "PlannerService",
    "Subscription",
    "VerificationError",
    "Verifier",
    "Workspace",
    "WorkspaceAnalyzer",
    "WorkspaceManager",
    "WorkspaceSecurityError",
    "classify_command",
    "infer_source",
    "merge_path",
    "resolve_shell",
    "shell_candidates",
]
