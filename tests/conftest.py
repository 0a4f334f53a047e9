"""Shared fixtures: a throwaway sqlite database and a fully wired orchestrator."""

from pathlib import Path

import pytest

from deploy_engine.config import Settings
from deploy_engine.db.repository import DeploymentRepository, LogRepository
from deploy_engine.db.session import create_engine, create_session_factory, create_tables
from deploy_engine.domain.models import CommandAction, Plan, Step, StepType
from deploy_engine.engine import DeploymentOrchestrator
from deploy_engine.services.audit import AuditLog
from deploy_engine.services.events import EventBus
from deploy_engine.services.shell import CommandRunner


@pytest.fixture
def settings(tmp_path: Path) -> Settings:
    return Settings(
        database_url=f"sqlite+aiosqlite:///{tmp_path / 'engine.db'}",
        workspace_root=str(tmp_path / "workspaces"),
        verification_url=None,
        kill_grace=0.5,
        approval_timeout=5.0,
        rollback_on_failure=False,
        iac_binary="terraform",
        iac_dir="terraform",
        log_level="INFO",
    )


@pytest.fixture
async def db_engine(settings: Settings):
    engine = create_engine(settings.database_url, echo=False)
    await create_tables(engine)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(db_engine):
    return create_session_factory(db_engine)


@pytest.fixture
def deployments(session_factory) -> DeploymentRepository:
    return DeploymentRepository(session_factory)


@pytest.fixture
def log_repository(session_factory) -> LogRepository:
    return LogRepository(session_factory)


@pytest.fixture
def audit(log_repository) -> AuditLog:
    return AuditLog(log_repository)


@pytest.fixture
def events() -> EventBus:
    return EventBus()


@pytest.fixture
def runner() -> CommandRunner:
    return CommandRunner(kill_grace=0.5)


@pytest.fixture
async def orchestrator(settings, session_factory, runner):
    orchestrator = DeploymentOrchestrator(settings, session_factory, runner=runner)
    yield orchestrator
    await orchestrator.close()


@pytest.fixture
async def deployment(orchestrator):
    return await orchestrator.create_deployment(repository_url="https://example.com/acme/shop.git")


def _command_plan(deployment_id: str, *commands: tuple[str, str]) -> Plan:
    """Plan of command steps from (template, rollback_command) pairs."""
    steps = [
        Step(
            id=index,
            name=f"Step {index}",
            type=StepType.COMMAND,
            action=CommandAction(template=template),
            rollback_command=rollback or None,
        )
        for index, (template, rollback) in enumerate(commands, start=1)
    ]
    return Plan(deployment_id=deployment_id, steps=steps)


@pytest.fixture
def command_plan():
    return _command_plan
