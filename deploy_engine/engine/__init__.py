"""
Engine package - Core deployment orchestration.

The DeploymentOrchestrator ties together the stage state machine, the
step completion gate, the plan executor and the services to drive a
deployment from INITIATED to a terminal status.
"""

from deploy_engine.engine.engine import DeploymentOrchestrator
from deploy_engine.engine.executor import ActiveExecution, PlanExecutor
from deploy_engine.engine.gate import (
    STATUS_TO_GATE_STEP,
    STEP_DEPENDENCIES,
    GateStep,
    StepCompletionGate,
)
from deploy_engine.engine.state_machine import (
    TRANSITIONS,
    StageStateMachine,
    allowed_transitions,
    can_transition,
    coerce_status,
    is_terminal,
)

__all__ = [
    "ActiveExecution",
    "DeploymentOrchestrator",
    "GateStep",
    "PlanExecutor",
    "STATUS_TO_GATE_STEP",
    "STEP_DEPENDENCIES",
    "StageStateMachine",
    "StepCompletionGate",
    "TRANSITIONS",
    "allowed_transitions",
    "can_transition",
    "coerce_status",
    "is_terminal",
]
