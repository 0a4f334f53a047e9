"""
Database package exports.

Provides convenient access to:
- ORM models (Deployment, DeploymentLog)
- Enums (DeploymentStatus, LogLevel, LogSource)
- Session utilities (get_session, init_db, close_db)
- Repositories (DeploymentRepository, LogRepository)
"""

from deploy_engine.db.models import (
    Base,
    Deployment,
    DeploymentLog,
    DeploymentStatus,
    LogLevel,
    LogSource,
)
from deploy_engine.db.repository import DeploymentRepository, LogRepository
from deploy_engine.db.session import (
    close_db,
    create_engine,
    create_session_factory,
    create_tables,
    get_engine,
    get_session,
    get_session_context,
    get_session_factory,
    init_db,
)

__all__ = [
    # Models
    "Base",
    "Deployment",
    "DeploymentLog",
    # Enums
    "DeploymentStatus",
    "LogLevel",
    "LogSource",
    # Repositories
    "DeploymentRepository",
    "LogRepository",
    # Session
    "create_engine",
    "create_session_factory",
    "create_tables",
    "get_engine",
    "get_session",
    "get_session_context",
    "get_session_factory",
    "init_db",
    "close_db",
]
