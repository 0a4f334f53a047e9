"""
SQLAlchemy ORM Models for the Deployment Orchestration Engine.

These models represent the persisted side of the engine:
- Deployment: the unit of work, its lifecycle status and gate records
- DeploymentLog: append-only audit trail (command output, transitions)

Key Design Decisions:
1. Explicit Enum for status - the transition table is keyed by it
2. JSON for history/step records - JSONB on PostgreSQL, plain JSON elsewhere
3. Python-side timestamps - values are available right after flush
4. JSON columns are always reassigned, never mutated in place
"""

import enum
import uuid
from datetime import datetime, timezone
from typing import Any, Optional

from sqlalchemy import JSON, DateTime, Enum, Integer, String, Text
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _new_deployment_id() -> str:
    return uuid.uuid4().hex


JSONType = JSON().with_variant(JSONB(), "postgresql")


# ===================
# Base Class
# ===================

class Base(DeclarativeBase):
    """Base class for all ORM models (SQLAlchemy 2.0 style)."""
    pass


# ===================
# Status Enums
# ===================

class DeploymentStatus(str, enum.Enum):
    """
    Lifecycle status of a Deployment.

    The legal transitions live in engine.state_machine.TRANSITIONS. The main
    path is:
    INITIATED → REPOSITORY_ANALYSIS → ... → GATHERING → PLAN_READY
              → PLAN_EXECUTION → DEPLOYING → DEPLOYED
    with PLAN_FAILED / VALIDATION_FAILED / SANDBOX_FAILED as retry points and
    ROLLED_BACK / ROLLBACK_FAILED / DESTROYED / CANCELLED as terminal states.
    """
    INITIATED = "initiated"
    GITHUB_INPUT = "github_input"
    ANALYZING = "analyzing"
    REPOSITORY_ANALYSIS = "repository_analysis"
    CODE_ANALYSIS = "code_analysis"
    INFRASTRUCTURE_DISCOVERY = "infrastructure_discovery"
    DEPENDENCY_ANALYSIS = "dependency_analysis"
    GATHERING = "gathering"
    PLANNING = "planning"
    ENV_COLLECTION = "env_collection"
    CREDENTIAL_COLLECTION = "credential_collection"
    PLAN_READY = "plan_ready"
    PLAN_EXECUTION = "plan_execution"
    PLAN_FAILED = "plan_failed"
    VALIDATING = "validating"
    VALIDATION_FAILED = "validation_failed"
    ESTIMATED = "estimated"
    PENDING_APPROVAL = "pending_approval"
    SANDBOX_TESTING = "sandbox_testing"
    SANDBOX_DEPLOYING = "sandbox_deploying"
    SANDBOX_FAILED = "sandbox_failed"
    TESTING = "testing"
    SANDBOX_VALIDATED = "sandbox_validated"
    APPROVED = "approved"
    REJECTED = "rejected"
    GITHUB_COMMIT = "github_commit"
    GITHUB_ACTIONS = "github_actions"
    DEPLOYING = "deploying"
    DEPLOYED = "deployed"
    DEPLOYMENT_FAILED = "deployment_failed"
    ROLLING_BACK = "rolling_back"
    ROLLED_BACK = "rolled_back"
    ROLLBACK_FAILED = "rollback_failed"
    DESTROYING = "destroying"
    DESTROYED = "destroyed"
    CANCELLED = "cancelled"


class LogLevel(str, enum.Enum):
    DEBUG = "debug"
    INFO = "info"
    WARN = "warn"
    ERROR = "error"


class LogSource(str, enum.Enum):
    """Which tool family produced a log entry."""
    CLI = "cli"
    IAC = "iac"
    DOCKER = "docker"
    GIT = "git"
    CLOUD = "cloud"
    SYSTEM = "system"


# ===================
# ORM Models
# ===================

class Deployment(Base):
    """
    A deployment tracked end-to-end by the orchestrator.

    status_history entries: {"status", "timestamp", "metadata"}
    step_status entries:    {step_name: {"complete", "completed_at", "metadata"}}
    """
    __tablename__ = "deployments"

    deployment_id: Mapped[str] = mapped_column(
        String(64),
        primary_key=True,
        default=_new_deployment_id,
    )

    status: Mapped[DeploymentStatus] = mapped_column(
        Enum(DeploymentStatus, name="deployment_status_enum"),
        nullable=False,
        default=DeploymentStatus.INITIATED,
        index=True,
    )

    previous_status: Mapped[Optional[DeploymentStatus]] = mapped_column(
        Enum(DeploymentStatus, name="deployment_status_enum"),
        nullable=True,
    )

    status_history: Mapped[list] = mapped_column(
        JSONType,
        nullable=False,
        default=list,
    )

    step_status: Mapped[dict] = mapped_column(
        JSONType,
        nullable=False,
        default=dict,
    )

    # Source checkout for this deployment; defaults to <workspace_root>/<id>
    workspace_path: Mapped[Optional[str]] = mapped_column(
        String(500),
        nullable=True,
    )

    repository_url: Mapped[Optional[str]] = mapped_column(
        String(500),
        nullable=True,
    )

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=_utcnow,
        nullable=False,
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=_utcnow,
        onupdate=_utcnow,
        nullable=False,
    )

    # Set once the deployment reaches a terminal status
    archived_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True),
        nullable=True,
    )

    def to_dict(self) -> dict[str, Any]:
        return {
            "deployment_id": self.deployment_id,
            "status": self.status.value,
            "previous_status": self.previous_status.value if self.previous_status else None,
            "status_history": list(self.status_history or []),
            "step_status": dict(self.step_status or {}),
            "workspace_path": self.workspace_path,
            "repository_url": self.repository_url,
            "created_at": self.created_at,
            "updated_at": self.updated_at,
            "archived_at": self.archived_at,
        }

    def __repr__(self) -> str:
        return f"<Deployment(id={self.deployment_id}, status={self.status.value})>"


class DeploymentLog(Base):
    """
    One append-only audit log entry.

    Rows are inserted, never updated or deleted by the engine.
    """
    __tablename__ = "deployment_logs"

    id: Mapped[int] = mapped_column(
        Integer,
        primary_key=True,
        autoincrement=True,
    )

    deployment_id: Mapped[str] = mapped_column(
        String(64),
        nullable=False,
        index=True,
    )

    level: Mapped[str] = mapped_column(
        String(10),
        nullable=False,
        default=LogLevel.INFO.value,
        index=True,
    )

    message: Mapped[str] = mapped_column(
        Text,
        nullable=False,
    )

    source: Mapped[str] = mapped_column(
        String(20),
        nullable=False,
        default=LogSource.CLI.value,
        index=True,
    )

    timestamp: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=_utcnow,
        nullable=False,
        index=True,
    )

    # "metadata" is reserved on declarative classes
    extra: Mapped[Optional[dict]] = mapped_column(
        "metadata",
        JSONType,
        nullable=True,
    )

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "deployment_id": self.deployment_id,
            "level": self.level,
            "message": self.message,
            "source": self.source,
            "timestamp": self.timestamp,
            "metadata": self.extra,
        }

    def __repr__(self) -> str:
        return f"<DeploymentLog(deployment={self.deployment_id}, level={self.level}, source={self.source})>"
