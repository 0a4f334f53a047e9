"""
Domain Layer - Plan, Step and Execution Models

Serializable data shared by the planner, the executor and the API.
"""

from deploy_engine.domain.models import (
    AnalysisFlags,
    CommandAction,
    ExecutionState,
    ExecutionStatus,
    GateCheck,
    GateCheckItem,
    IacAction,
    InfoAction,
    Plan,
    PlanIssue,
    PlanValidation,
    ProjectAnalysis,
    RollbackOutcome,
    RollbackStep,
    Step,
    StepOutcome,
    StepType,
    TimeEstimate,
    ValidationAction,
    VerificationReport,
)

__all__ = [
    "AnalysisFlags",
    "CommandAction",
    "ExecutionState",
    "ExecutionStatus",
    "GateCheck",
    "GateCheckItem",
    "IacAction",
    "InfoAction",
    "Plan",
    "PlanIssue",
    "PlanValidation",
    "ProjectAnalysis",
    "RollbackOutcome",
    "RollbackStep",
    "Step",
    "StepOutcome",
    "StepType",
    "TimeEstimate",
    "ValidationAction",
    "VerificationReport",
]
