"""
Predicates - named checks evaluated against live deployment state.

Plans reference predicates by id (ValidationAction.predicate, Step.post_check)
and carry prerequisites as short phrases ("Dockerfile exists",
"docker installed"). Both are resolved here at execution time.

Recognized prerequisite phrases:
    "<path> exists"                 file or directory in the workspace
    "<tool> installed"              executable found on the command PATH
    "dependencies installed"        node_modules present (node projects)
    "build script exists"           package.json defines scripts.build
    "IaC configuration generated"   <iac_dir>/main.tf present

Any other phrase is informational and is not evaluated.
"""

import json
import re
from dataclasses import dataclass, field
from typing import Awaitable, Callable, Optional

from deploy_engine.config import Settings
from deploy_engine.db.models import LogSource
from deploy_engine.errors import ValidationError
from deploy_engine.services.commands import DeploymentCommandService
from deploy_engine.services.shell import CommandCategory, CommandResult, CommandRunner
from deploy_engine.services.verification import Verifier
from deploy_engine.services.workspace import Workspace
from deploy_engine.utils.logging import get_logger

logger = get_logger(__name__)

BUILD_OUTPUT_DIRS = ("dist", "build", ".next", "out")


@dataclass
class PredicateContext:
    """Live state a predicate may inspect."""
    deployment_id: str
    workspace: Workspace
    runner: CommandRunner
    commands: DeploymentCommandService
    settings: Settings
    variables: dict[str, str] = field(default_factory=dict)
    verifier: Optional[Verifier] = None


@dataclass
class PredicateResult:
    passed: bool
    detail: str = ""


Predicate = Callable[[PredicateContext], Awaitable[PredicateResult]]


class PredicateRegistry:
    """
    Predicates by id.

    Usage:
        registry = PredicateRegistry.default()
        result = await registry.evaluate("build_output_present", ctx)
    """

    def __init__(self):
        self._predicates: dict[str, Predicate] = {}

    def register(self, name: str) -> Callable[[Predicate], Predicate]:
        def decorator(func: Predicate) -> Predicate:
            self._predicates[name] = func
            return func
        return decorator

    def names(self) -> list[str]:
        return sorted(self._predicates)

    def __contains__(self, name: str) -> bool:
        return name in self._predicates

    async def evaluate(self, name: str, ctx: PredicateContext) -> PredicateResult:
        """
        Raises:
            ValidationError: Unknown predicate id
        """
        predicate = self._predicates.get(name)
        if predicate is None:
            raise ValidationError(
                f"Unknown predicate: {name}",
                context={"predicate": name, "known": self.names()},
            )
        result = await predicate(ctx)
        logger.debug("Predicate %s for %s: %s", name, ctx.deployment_id, result.passed)
        return result

    @classmethod
    def default(cls) -> "PredicateRegistry":
        registry = cls()
        for name, func in DEFAULT_PREDICATES.items():
            registry.register(name)(func)
        return registry


# ===================
# Built-in predicates
# ===================

async def _probe(ctx: PredicateContext, command: str) -> CommandResult:
    # Audited and cancellable like any other deployment command
    return await ctx.commands.run(
        ctx.deployment_id,
        command,
        timeout=ctx.runner.timeouts[CommandCategory.PROBE],
        source=LogSource.DOCKER,
    )


async def prerequisites_present(ctx: PredicateContext) -> PredicateResult:
    missing = []
    manifest = ctx.variables.get("manifest")
    if manifest and not ctx.workspace.is_file(manifest):
        missing.append(manifest)
    if ctx.workspace.is_file("Dockerfile") and not await ctx.runner.locate_tool("docker"):
        missing.append("docker")
    if missing:
        return PredicateResult(False, f"Missing: {', '.join(missing)}")
    return PredicateResult(True, "Prerequisites present")


async def dependencies_installed(ctx: PredicateContext) -> PredicateResult:
    if not ctx.workspace.is_file("package.json"):
        return PredicateResult(True, "No package.json")
    if ctx.workspace.is_dir("node_modules"):
        return PredicateResult(True, "node_modules present")
    return PredicateResult(False, "node_modules not found")


async def build_script_exists(ctx: PredicateContext) -> PredicateResult:
    if not ctx.workspace.is_file("package.json"):
        return PredicateResult(False, "package.json not found")
    try:
        scripts = json.loads(ctx.workspace.read_text("package.json")).get("scripts") or {}
    except (json.JSONDecodeError, AttributeError) as e:
        return PredicateResult(False, f"Unreadable package.json: {e}")
    if scripts.get("build"):
        return PredicateResult(True, "build script defined")
    return PredicateResult(False, "No build script in package.json")


async def build_output_present(ctx: PredicateContext) -> PredicateResult:
    for directory in BUILD_OUTPUT_DIRS:
        if ctx.workspace.is_dir(directory):
            return PredicateResult(True, f"{directory}/ present")
    return PredicateResult(False, f"None of {', '.join(BUILD_OUTPUT_DIRS)} found")


async def container_image_present(ctx: PredicateContext) -> PredicateResult:
    image = f"{ctx.variables.get('project_name', 'app')}:latest"
    result = await _probe(ctx, f"docker image inspect {image}")
    if result.success:
        return PredicateResult(True, f"Image {image} present")
    return PredicateResult(False, f"Image {image} not found")


async def compose_running(ctx: PredicateContext) -> PredicateResult:
    result = await _probe(ctx, "docker compose ps -q")
    if result.success and result.stdout.strip():
        return PredicateResult(True, "Compose services running")
    return PredicateResult(False, "No compose services running")


async def iac_config_present(ctx: PredicateContext) -> PredicateResult:
    path = f"{ctx.variables.get('iac_dir') or ctx.settings.iac_dir}/main.tf"
    if ctx.workspace.is_file(path):
        return PredicateResult(True, f"{path} present")
    return PredicateResult(False, f"{path} not found")


async def deployment_verified(ctx: PredicateContext) -> PredicateResult:
    if ctx.verifier is None:
        return PredicateResult(False, "No verifier configured")
    report = await ctx.verifier.verify(ctx.deployment_id, "deployment")
    return PredicateResult(report.complete, report.detail or "")


DEFAULT_PREDICATES: dict[str, Predicate] = {
    "prerequisites_present": prerequisites_present,
    "dependencies_installed": dependencies_installed,
    "build_script_exists": build_script_exists,
    "build_output_present": build_output_present,
    "container_image_present": container_image_present,
    "compose_running": compose_running,
    "iac_config_present": iac_config_present,
    "deployment_verified": deployment_verified,
}


# ===================
# Prerequisites
# ===================

PHRASE_PREDICATES = {
    "dependencies installed": "dependencies_installed",
    "build script exists": "build_script_exists",
    "iac configuration generated": "iac_config_present",
}

_INSTALLED = re.compile(r"^(?P<tool>[A-Za-z0-9._+-]+) installed$")
_EXISTS = re.compile(r"^(?P<path>\S+) exists$")


async def evaluate_prerequisite(
    prerequisite: str,
    ctx: PredicateContext,
    registry: PredicateRegistry,
) -> Optional[PredicateResult]:
    """
    Evaluate one prerequisite phrase.

    Returns:
        PredicateResult, or None for informational phrases
    """
    phrase = prerequisite.strip()
    predicate = PHRASE_PREDICATES.get(phrase.lower())
    if predicate is not None:
        return await registry.evaluate(predicate, ctx)

    match = _INSTALLED.match(phrase)
    if match:
        tool = match.group("tool")
        directory = await ctx.runner.locate_tool(tool)
        if directory:
            return PredicateResult(True, f"{tool} found in {directory}")
        return PredicateResult(False, f"{tool} not found on PATH")

    match = _EXISTS.match(phrase)
    if match:
        path = match.group("path")
        if ctx.workspace.exists(path):
            return PredicateResult(True, f"{path} present")
        return PredicateResult(False, f"{path} not found")

    return None


async def evaluate_prerequisites(
    prerequisites: list[str],
    ctx: PredicateContext,
    registry: PredicateRegistry,
) -> list[str]:
    """
    Evaluate every prerequisite of a step.

    Returns:
        Unmet prerequisites as "<phrase>: <detail>" (empty when all hold)
    """
    unmet = []
    for prerequisite in prerequisites:
        result = await evaluate_prerequisite(prerequisite, ctx, registry)
        if result is not None and not result.passed:
            unmet.append(f"{prerequisite}: {result.detail}" if result.detail else prerequisite)
    return unmet
