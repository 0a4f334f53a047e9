"""
PlannerService - Converts a project analysis into a deployment plan.

Plan generation is a pure function of a static rule table over the
analysis flags: the same analysis always yields the same ordered steps.

Rule table:
    always                  Validate Prerequisites          validation
    manifest present        Install Dependencies            command
    build script present    Build Application               command
    build script absent     Build Application (Skipped)     info (skipped)
    test script present     Run Tests                       command (can skip)
    container file present  Build Container Image           command
    compose file present    Start Compose Services          command
    always                  Generate IaC Configuration      iac
    always                  IaC Init                        iac
    always                  IaC Plan                        iac
    always                  IaC Apply                       iac (approval)
    always                  Verify Deployment               validation

Example:
    planner = PlannerService()
    plan = planner.generate_plan(deployment_id, analysis, workspace)

    # plan.steps[0].name == "Validate Prerequisites"
    # plan.rollback_plan lists compensating commands, last step first
"""

from collections import Counter
from typing import Optional

from deploy_engine.config import Settings, get_settings
from deploy_engine.domain.models import (
    CommandAction,
    IacAction,
    InfoAction,
    Plan,
    PlanIssue,
    PlanValidation,
    ProjectAnalysis,
    RollbackStep,
    Step,
    StepType,
    TimeEstimate,
    ValidationAction,
)
from deploy_engine.errors import PlanValidationError
from deploy_engine.services.workspace import Workspace
from deploy_engine.utils.logging import get_logger

logger = get_logger(__name__)

INSTALL_COMMANDS = {
    "npm": "npm install",
    "yarn": "yarn install",
    "pnpm": "pnpm install",
    "pip": "pip install -r requirements.txt",
}

PYPROJECT_INSTALL_COMMAND = "pip install ."

BUILD_COMMANDS = {
    "npm": "npm run build",
    "yarn": "yarn build",
    "pnpm": "pnpm build",
}

MANIFESTS = {
    "nodejs": ("package.json",),
    "python": ("requirements.txt", "pyproject.toml"),
}


class PlannerService:
    """
    Service for turning a ProjectAnalysis into a Plan.

    Steps are declarative: commands are string.Template templates
    ($project_name, $iac) rendered from Plan.variables at execution time,
    and checks are predicate ids resolved by the executor.
    """

    def __init__(self, settings: Optional[Settings] = None):
        self.settings = settings or get_settings()

    def plan_variables(self, analysis: ProjectAnalysis) -> dict[str, str]:
        return {
            "project_name": analysis.project_name,
            "package_manager": analysis.package_manager,
            "iac": self.settings.iac_binary,
            "iac_dir": self.settings.iac_dir,
            "manifest": self._manifest_name(analysis) or "",
        }

    def generate_plan(
        self,
        deployment_id: str,
        analysis: ProjectAnalysis,
        workspace: Optional[Workspace] = None,
    ) -> Plan:
        """
        Generate a complete deployment plan.

        Args:
            deployment_id: Deployment the plan belongs to
            analysis: Output of the analysis collaborator
            workspace: Used by validate_plan; without it the plan is
                       reported invalid when a manifest check is needed

        Returns:
            Plan with steps, rollback plan, estimate, issues and validation
        """
        logger.info("Generating deployment plan for %s", deployment_id)

        steps = self.generate_steps(analysis)
        return Plan(
            deployment_id=deployment_id,
            project_info={
                "type": analysis.project_type,
                "framework": analysis.framework,
                "architecture": analysis.primary_architecture,
            },
            variables=self.plan_variables(analysis),
            steps=steps,
            rollback_plan=self.generate_rollback_plan(steps),
            estimated_time=self.estimate_total_time(steps),
            potential_issues=self.identify_potential_issues(analysis),
            validation=self.validate_plan(deployment_id, steps, analysis, workspace),
        )

    # ===================
    # Steps
    # ===================

    def generate_steps(self, analysis: ProjectAnalysis) -> list[Step]:
        flags = analysis.flags
        steps: list[Step] = []

        def add(**fields) -> None:
            steps.append(Step(id=len(steps) + 1, **fields))

        add(
            name="Validate Prerequisites",
            type=StepType.VALIDATION,
            description="Check that all required files and configurations exist",
            action=ValidationAction(predicate="prerequisites_present"),
            estimated_time="30 seconds",
        )

        if flags.manifest:
            manifest = self._manifest_name(analysis) or "package.json"
            is_node = analysis.project_type != "python"
            add(
                name="Install Dependencies",
                type=StepType.COMMAND,
                description="Install project dependencies",
                action=CommandAction(template=self.get_install_command(analysis)),
                prerequisites=[f"{manifest} exists"],
                post_check="dependencies_installed" if is_node else None,
                estimated_time="2-5 minutes",
                rollback_command="rm -rf node_modules" if is_node else None,
            )

        if flags.build_script:
            add(
                name="Build Application",
                type=StepType.COMMAND,
                description="Build the application for production",
                action=CommandAction(template=self.get_build_command(analysis.package_manager)),
                prerequisites=["dependencies installed", "build script exists"],
                post_check="build_output_present",
                estimated_time="1-3 minutes",
                rollback_command="rm -rf dist build .next",
            )
        else:
            description = "No build script detected in package.json. Skipping build step."
            add(
                name="Build Application (Skipped)",
                type=StepType.INFO,
                description=description,
                action=InfoAction(message=description),
                estimated_time="0 seconds",
                can_skip=True,
                skipped=True,
                skip_reason="No build script in package.json",
            )

        if flags.test_script:
            add(
                name="Run Tests",
                type=StepType.COMMAND,
                description="Run the test suite",
                action=CommandAction(template="npm test"),
                prerequisites=["dependencies installed"],
                estimated_time="1-5 minutes",
                can_skip=True,
            )

        if flags.container_file:
            add(
                name="Build Container Image",
                type=StepType.COMMAND,
                description="Build the container image",
                action=CommandAction(template="docker build -t $project_name:latest ."),
                prerequisites=["Dockerfile exists", "docker installed"],
                post_check="container_image_present",
                estimated_time="2-10 minutes",
                rollback_command="docker rmi $project_name:latest",
            )

        if flags.compose_file:
            add(
                name="Start Compose Services",
                type=StepType.COMMAND,
                description="Start services with Docker Compose",
                action=CommandAction(template="docker compose up -d"),
                prerequisites=["docker installed"],
                post_check="compose_running",
                estimated_time="1-3 minutes",
                rollback_command="docker compose down",
            )

        add(
            name="Generate IaC Configuration",
            type=StepType.IAC,
            description="Generate infrastructure-as-code configuration",
            action=IacAction(operation="generate"),
            prerequisites=["Cloud credentials configured"],
            post_check="iac_config_present",
            estimated_time="30 seconds - 1 minute",
        )
        add(
            name="IaC Init",
            type=StepType.IAC,
            description="Initialize the IaC working directory",
            action=IacAction(operation="init", template="$iac init -input=false"),
            prerequisites=["IaC configuration generated"],
            estimated_time="30 seconds - 1 minute",
        )
        add(
            name="IaC Plan",
            type=StepType.IAC,
            description="Preview infrastructure changes",
            action=IacAction(operation="plan", template="$iac plan -input=false"),
            prerequisites=["IaC initialized"],
            estimated_time="30 seconds - 1 minute",
        )
        add(
            name="IaC Apply",
            type=StepType.IAC,
            description="Apply infrastructure changes",
            action=IacAction(operation="apply", template="$iac apply -input=false -auto-approve"),
            prerequisites=["IaC plan reviewed", "Cost approved"],
            estimated_time="5-15 minutes",
            requires_approval=True,
            rollback_command="$iac destroy -auto-approve",
            rollback_cwd="$iac_dir",
        )
        add(
            name="Verify Deployment",
            type=StepType.VALIDATION,
            description="Verify the deployment is successful",
            action=ValidationAction(predicate="deployment_verified"),
            prerequisites=["Infrastructure deployed"],
            estimated_time="1-2 minutes",
        )

        return steps

    def get_install_command(self, analysis: ProjectAnalysis) -> str:
        if analysis.project_type == "python":
            if self._manifest_name(analysis) == "pyproject.toml":
                return PYPROJECT_INSTALL_COMMAND
            return INSTALL_COMMANDS["pip"]
        return INSTALL_COMMANDS.get(analysis.package_manager, INSTALL_COMMANDS["npm"])

    def get_build_command(self, package_manager: str) -> str:
        return BUILD_COMMANDS.get(package_manager, BUILD_COMMANDS["npm"])

    # ===================
    # Advisory data
    # ===================

    def generate_rollback_plan(self, steps: list[Step]) -> list[RollbackStep]:
        """Compensating commands, last step first."""
        rollback_steps = []
        for step in reversed(steps):
            if step.rollback_command:
                rollback_steps.append(
                    RollbackStep(
                        original_step_id=step.id,
                        name=f"Rollback: {step.name}",
                        command=step.rollback_command,
                        cwd=step.rollback_cwd,
                        description=f"Undo {step.name}",
                    )
                )
        return rollback_steps

    def estimate_total_time(self, steps: list[Step]) -> TimeEstimate:
        """Coarse range: 1 to 5 minutes per non-skipped step."""
        active = sum(1 for step in steps if not step.skipped)
        return TimeEstimate(min_minutes=active * 1, max_minutes=active * 5)

    def identify_potential_issues(self, analysis: ProjectAnalysis) -> list[PlanIssue]:
        issues = []

        if not analysis.flags.build_script:
            issues.append(PlanIssue(
                severity="warning",
                message="No build script detected. Generated scripts may assume a build step exists.",
                recommendation="Add a build script to the project manifest or skip the build step.",
            ))

        if not analysis.flags.start_script:
            issues.append(PlanIssue(
                severity="warning",
                message="No start script detected. Deployment may fail to start the application.",
                recommendation="Add a start script to the project manifest.",
            ))

        if analysis.required_env_vars:
            issues.append(PlanIssue(
                severity="info",
                message=f"{len(analysis.required_env_vars)} environment variable(s) need to be configured.",
                recommendation="Set environment variables before deployment.",
            ))

        if not analysis.flags.container_file and "containerized" in analysis.architecture_pattern:
            issues.append(PlanIssue(
                severity="warning",
                message="Containerized architecture detected but no container file found.",
                recommendation="A container file will be generated.",
            ))

        return issues

    # ===================
    # Validation
    # ===================

    def validate_plan(
        self,
        deployment_id: str,
        steps: list[Step],
        analysis: ProjectAnalysis,
        workspace: Optional[Workspace] = None,
    ) -> PlanValidation:
        """
        Structural check of a plan. Fails closed: a check that cannot run
        makes the plan invalid.
        """
        validation = PlanValidation()

        duplicates = sorted(i for i, count in Counter(s.id for s in steps).items() if count > 1)
        if duplicates:
            validation.valid = False
            validation.errors.append(f"Duplicate step IDs found: {duplicates}")

        manifests = MANIFESTS.get(analysis.project_type)
        if manifests:
            if workspace is None:
                validation.valid = False
                validation.errors.append("Workspace unavailable; project manifest could not be checked")
            else:
                try:
                    if not any(workspace.is_file(m) for m in manifests):
                        validation.valid = False
                        validation.errors.append(f"{' or '.join(manifests)} not found")
                except Exception as e:
                    validation.valid = False
                    validation.errors.append(f"Manifest check failed: {e}")
        else:
            validation.warnings.append(f"Project type '{analysis.project_type}' has no manifest check")

        if not steps:
            validation.valid = False
            validation.errors.append("Plan has no steps")

        if not validation.valid:
            logger.warning("Plan for %s is invalid: %s", deployment_id, validation.errors)
        return validation

    def ensure_valid(self, plan: Plan) -> Plan:
        """
        Raises:
            PlanValidationError: If the plan failed validation
        """
        if not plan.validation.valid:
            raise PlanValidationError(
                f"Plan for {plan.deployment_id} is invalid: {'; '.join(plan.validation.errors)}",
                context={"errors": plan.validation.errors},
            )
        return plan

    def _manifest_name(self, analysis: ProjectAnalysis) -> Optional[str]:
        """The manifest the analysis found, else the project type's default."""
        if analysis.manifest:
            return analysis.manifest
        if analysis.project_type == "python":
            return "requirements.txt"
        if analysis.flags.manifest:
            return "package.json"
        return None
