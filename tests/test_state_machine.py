import pytest

from deploy_engine.db.models import DeploymentStatus
from deploy_engine.engine.state_machine import (
    TRANSITIONS,
    StageStateMachine,
    allowed_transitions,
    can_transition,
    coerce_status,
    is_terminal,
)
from deploy_engine.errors import DeploymentNotFoundError, InvalidTransitionError, ValidationError


S = DeploymentStatus


@pytest.fixture
def machine(deployments, events, audit) -> StageStateMachine:
    return StageStateMachine(deployments, events, audit)


@pytest.fixture
async def created(deployments):
    return await deployments.create(
        history_entry={"status": "initiated", "timestamp": "2026-01-01T00:00:00+00:00", "metadata": {}}
    )


def test_every_status_has_an_entry():
    assert set(TRANSITIONS) == set(DeploymentStatus)


def test_every_target_is_a_known_status():
    for targets in TRANSITIONS.values():
        assert targets <= set(DeploymentStatus)


def test_terminal_statuses():
    terminal = {s for s in DeploymentStatus if is_terminal(s)}
    assert terminal == {S.ROLLED_BACK, S.ROLLBACK_FAILED, S.DESTROYED, S.CANCELLED}


def test_deploying_cannot_be_cancelled():
    assert not can_transition(S.DEPLOYING, S.CANCELLED)
    assert allowed_transitions(S.DEPLOYING) == {S.DEPLOYED, S.DEPLOYMENT_FAILED}


def test_analysis_stages_may_retry_themselves():
    assert can_transition(S.CODE_ANALYSIS, S.CODE_ANALYSIS)
    assert not can_transition(S.PLANNING, S.PLANNING)


def test_coerce_status_accepts_values_and_names():
    assert coerce_status("plan_ready") is S.PLAN_READY
    assert coerce_status("PLAN_READY") is S.PLAN_READY
    assert coerce_status(S.DEPLOYED) is S.DEPLOYED
    with pytest.raises(ValidationError):
        coerce_status("not_a_status")


async def test_transition_updates_status_and_history(machine, created, events):
    subscription = events.subscribe(created.deployment_id)

    updated = await machine.transition(created.deployment_id, S.GATHERING, {"by": "test"})

    assert updated.status is S.GATHERING
    assert updated.previous_status is S.INITIATED
    assert [entry["status"] for entry in updated.status_history] == ["initiated", "gathering"]
    assert updated.status_history[-1]["metadata"] == {"by": "test"}
    assert updated.archived_at is None

    event = await subscription.get(timeout=1)
    assert event.type == "stage_changed"
    assert event.payload["from"] == "initiated"
    assert event.payload["to"] == "gathering"


async def test_illegal_transition_leaves_status_unchanged(machine, created, deployments):
    with pytest.raises(InvalidTransitionError) as excinfo:
        await machine.transition(created.deployment_id, S.DEPLOYED)

    assert excinfo.value.code == "INVALID_TRANSITION"
    assert "cancelled" in excinfo.value.context["allowed"]

    reloaded = await deployments.require(created.deployment_id)
    assert reloaded.status is S.INITIATED
    assert len(reloaded.status_history) == 1


async def test_same_status_is_rejected_without_retry_edge(machine, created, deployments):
    await machine.transition(created.deployment_id, S.GATHERING)
    await machine.transition(created.deployment_id, S.PLANNING)

    with pytest.raises(InvalidTransitionError):
        await machine.transition(created.deployment_id, S.PLANNING)

    reloaded = await deployments.require(created.deployment_id)
    assert len(reloaded.status_history) == 3


async def test_terminal_transition_archives(machine, created):
    updated = await machine.transition(created.deployment_id, S.CANCELLED)

    assert updated.archived_at is not None
    with pytest.raises(InvalidTransitionError):
        await machine.transition(created.deployment_id, S.GATHERING)


async def test_unknown_deployment(machine):
    with pytest.raises(DeploymentNotFoundError):
        await machine.transition("missing", S.GATHERING)


async def test_transitions_are_audited(machine, created, audit):
    await machine.transition(created.deployment_id, S.GATHERING)

    entries = await audit.list(created.deployment_id)
    assert any(
        (entry.extra or {}).get("event") == "stage_changed" and entry.source == "system"
        for entry in entries
    )


async def test_get_history(machine, created):
    await machine.transition(created.deployment_id, S.REPOSITORY_ANALYSIS)
    await machine.transition(created.deployment_id, S.REPOSITORY_ANALYSIS)

    history = await machine.get_history(created.deployment_id)
    assert [entry["status"] for entry in history] == [
        "initiated",
        "repository_analysis",
        "repository_analysis",
    ]


@pytest.mark.parametrize("current", list(DeploymentStatus), ids=lambda s: s.value)
async def test_illegal_transition_from_every_status(machine, created, deployments, current):
    dep_id = created.deployment_id
    await deployments.update_status(
        dep_id,
        current,
        {"status": current.value, "timestamp": "2026-01-01T00:01:00+00:00", "metadata": {}},
    )
    before = await deployments.require(dep_id)
    target = next(status for status in DeploymentStatus if status not in TRANSITIONS[current])

    with pytest.raises(InvalidTransitionError) as excinfo:
        await machine.transition(dep_id, target)

    assert excinfo.value.context["current"] == current.value
    reloaded = await deployments.require(dep_id)
    assert reloaded.status is current
    assert reloaded.status_history == before.status_history
