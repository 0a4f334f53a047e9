"""
AuditLog - append-only deployment log.

Writing to the audit log is an auxiliary operation: a failing insert is
logged and dropped, it never fails the command or transition that
produced the entry.
"""

from typing import Any, Optional, Union

from deploy_engine.db.models import DeploymentLog, LogLevel, LogSource
from deploy_engine.db.repository import LogRepository
from deploy_engine.utils.logging import get_logger

logger = get_logger(__name__)


def _enum_value(value: Union[str, LogLevel, LogSource]) -> str:
    return value.value if hasattr(value, "value") else str(value)


class AuditLog:
    """Records and lists DeploymentLog entries."""

    def __init__(self, repository: LogRepository):
        self.repository = repository

    async def record(
        self,
        deployment_id: str,
        level: Union[str, LogLevel],
        message: str,
        source: Union[str, LogSource] = LogSource.CLI,
        metadata: Optional[dict[str, Any]] = None,
    ) -> Optional[DeploymentLog]:
        """
        Append one entry.

        Returns:
            The stored entry, or None if persistence failed
        """
        try:
            level_value = LogLevel(_enum_value(level)).value
            source_value = LogSource(_enum_value(source)).value
            return await self.repository.add(
                deployment_id=deployment_id,
                level=level_value,
                message=message.strip() or message,
                source=source_value,
                metadata=metadata,
            )
        except Exception:
            logger.exception("Failed to store log entry for deployment %s", deployment_id)
            return None

    async def list(
        self,
        deployment_id: str,
        level: Optional[str] = None,
        source: Optional[str] = None,
        limit: int = 100,
        offset: int = 0,
    ) -> list[DeploymentLog]:
        """Get entries in chronological order (latest page first, see LogRepository.list)."""
        return await self.repository.list(
            deployment_id,
            level=level,
            source=source,
            limit=limit,
            offset=offset,
        )
