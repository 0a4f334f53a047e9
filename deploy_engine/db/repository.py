"""
Repositories - persistence access for deployments and audit logs.

Each operation opens its own short session through the session factory,
so repositories are safe to share between concurrent tasks. Callers never
hold an ORM session across an await on a child process.
"""

from datetime import datetime
from typing import Any, Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from deploy_engine.db.models import Deployment, DeploymentLog, DeploymentStatus
from deploy_engine.db.session import get_session_context
from deploy_engine.errors import ConflictError, DeploymentNotFoundError


class DeploymentRepository:
    """
    CRUD access to Deployment rows.

    JSON columns are replaced wholesale on every write; in-place mutation
    of a loaded list/dict is not tracked by SQLAlchemy.
    """

    def __init__(self, session_factory: Optional[async_sessionmaker[AsyncSession]] = None):
        self._session_factory = session_factory

    async def create(
        self,
        deployment_id: Optional[str] = None,
        repository_url: Optional[str] = None,
        workspace_path: Optional[str] = None,
        history_entry: Optional[dict[str, Any]] = None,
    ) -> Deployment:
        deployment = Deployment(
            status=DeploymentStatus.INITIATED,
            status_history=[history_entry] if history_entry else [],
            step_status={},
            repository_url=repository_url,
            workspace_path=workspace_path,
        )
        if deployment_id:
            deployment.deployment_id = deployment_id

        async with get_session_context(self._session_factory) as session:
            session.add(deployment)
            await session.flush()
        return deployment

    async def get(self, deployment_id: str) -> Optional[Deployment]:
        async with get_session_context(self._session_factory) as session:
            return await session.get(Deployment, deployment_id)

    async def require(self, deployment_id: str) -> Deployment:
        """
        Get a deployment or raise.

        Raises:
            DeploymentNotFoundError: If the deployment doesn't exist
        """
        deployment = await self.get(deployment_id)
        if deployment is None:
            raise DeploymentNotFoundError(deployment_id)
        return deployment

    async def update_status(
        self,
        deployment_id: str,
        status: DeploymentStatus,
        history_entry: dict[str, Any],
        archived_at: Optional[datetime] = None,
        expected_status: Optional[DeploymentStatus] = None,
    ) -> Deployment:
        """
        Apply a validated transition: status, previous_status, history, archive.

        Raises:
            DeploymentNotFoundError: If the deployment doesn't exist
            ConflictError: If the status changed since it was validated
        """
        async with get_session_context(self._session_factory) as session:
            deployment = await session.get(Deployment, deployment_id, with_for_update=True)
            if deployment is None:
                raise DeploymentNotFoundError(deployment_id)
            if expected_status is not None and deployment.status != expected_status:
                raise ConflictError(
                    f"Deployment {deployment_id} changed status concurrently "
                    f"({expected_status.value} -> {deployment.status.value})",
                    context={"expected": expected_status.value, "actual": deployment.status.value},
                )

            deployment.previous_status = deployment.status
            deployment.status = status
            deployment.status_history = [*(deployment.status_history or []), history_entry]
            if archived_at is not None:
                deployment.archived_at = archived_at
            await session.flush()
            return deployment

    async def set_step_record(
        self,
        deployment_id: str,
        step: str,
        record: Optional[dict[str, Any]],
        overwrite: bool = False,
    ) -> tuple[Deployment, bool]:
        """
        Write (or clear, when record is None) a gate step record.

        Returns:
            (deployment, written) - written is False when an existing record
            was kept because overwrite is not set
        """
        async with get_session_context(self._session_factory) as session:
            deployment = await session.get(Deployment, deployment_id, with_for_update=True)
            if deployment is None:
                raise DeploymentNotFoundError(deployment_id)

            records = dict(deployment.step_status or {})
            existing = records.get(step)
            if record is None:
                if step not in records:
                    return deployment, False
                records.pop(step)
            else:
                if existing and existing.get("complete") and not overwrite:
                    return deployment, False
                records[step] = record

            deployment.step_status = records
            await session.flush()
            return deployment, True

    async def list(
        self,
        status: Optional[DeploymentStatus] = None,
        limit: int = 50,
        offset: int = 0,
    ) -> list[Deployment]:
        query = select(Deployment).order_by(Deployment.created_at.desc())
        if status is not None:
            query = query.where(Deployment.status == status)
        query = query.limit(limit).offset(offset)

        async with get_session_context(self._session_factory) as session:
            result = await session.execute(query)
            return list(result.scalars().all())


class LogRepository:
    """Append-only storage for DeploymentLog rows."""

    def __init__(self, session_factory: Optional[async_sessionmaker[AsyncSession]] = None):
        self._session_factory = session_factory

    async def add(
        self,
        deployment_id: str,
        level: str,
        message: str,
        source: str,
        metadata: Optional[dict[str, Any]] = None,
    ) -> DeploymentLog:
        entry = DeploymentLog(
            deployment_id=deployment_id,
            level=level,
            message=message,
            source=source,
            extra=metadata,
        )
        async with get_session_context(self._session_factory) as session:
            session.add(entry)
            await session.flush()
        return entry

    async def list(
        self,
        deployment_id: str,
        level: Optional[str] = None,
        source: Optional[str] = None,
        limit: int = 100,
        offset: int = 0,
    ) -> list[DeploymentLog]:
        """
        Get a page of log entries in chronological order.

        Pages are taken newest-first and then reversed, so the default call
        returns the latest `limit` entries, oldest first.
        """
        query = select(DeploymentLog).where(DeploymentLog.deployment_id == deployment_id)
        if level:
            query = query.where(DeploymentLog.level == level)
        if source:
            query = query.where(DeploymentLog.source == source)
        query = (
            query.order_by(DeploymentLog.timestamp.desc(), DeploymentLog.id.desc())
            .limit(limit)
            .offset(offset)
        )

        async with get_session_context(self._session_factory) as session:
            result = await session.execute(query)
            entries = list(result.scalars().all())

        entries.reverse()
        return entries
