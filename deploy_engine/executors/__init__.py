"""
Executors package - Step execution implementations.

Each executor handles one step action kind (validation, command, iac, info).
All executors inherit from BaseExecutor and return StepResult.
"""

from deploy_engine.executors.base import (
    BaseExecutor,
    IacGenerator,
    StepContext,
    StepResult,
    render_template,
)
from deploy_engine.executors.command import CommandExecutor
from deploy_engine.executors.iac import IacExecutor
from deploy_engine.executors.info import InfoExecutor
from deploy_engine.executors.predicates import (
    PredicateContext,
    PredicateRegistry,
    PredicateResult,
    evaluate_prerequisites,
)
from deploy_engine.executors.validation import ValidationExecutor


def default_executors() -> dict[str, BaseExecutor]:
    """One executor per action kind."""
    executors = [ValidationExecutor(), CommandExecutor(), IacExecutor(), InfoExecutor()]
    return {executor.kind: executor for executor in executors}


__all__ = [
    "BaseExecutor",
    "CommandExecutor",
    "IacExecutor",
    "IacGenerator",
    "InfoExecutor",
    "PredicateContext",
    "PredicateRegistry",
    "PredicateResult",
    "StepContext",
    "StepResult",
    "ValidationExecutor",
    "default_executors",
    "evaluate_prerequisites",
    "render_template",
]
