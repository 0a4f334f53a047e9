import pytest

from deploy_engine.domain.models import AnalysisFlags, ProjectAnalysis, StepType
from deploy_engine.errors import PlanValidationError
from deploy_engine.services.analysis import WorkspaceAnalyzer
from deploy_engine.services.planner import PlannerService
from deploy_engine.services.workspace import Workspace, WorkspaceManager


@pytest.fixture
def planner(settings) -> PlannerService:
    return PlannerService(settings)


@pytest.fixture
def node_analysis() -> ProjectAnalysis:
    return ProjectAnalysis(
        project_type="nodejs",
        framework="express",
        flags=AnalysisFlags(
            manifest=True,
            build_script=True,
            test_script=True,
            start_script=True,
            container_file=True,
            compose_file=True,
        ),
        architecture_pattern=["containerized"],
        package_manager="yarn",
        project_name="shop",
        required_env_vars=["DATABASE_URL"],
    )


@pytest.fixture
def node_workspace(tmp_path) -> Workspace:
    workspace = Workspace("dep", tmp_path / "ws")
    workspace.root.mkdir(parents=True)
    workspace.write_text("package.json", "{}")
    return workspace


def test_minimal_analysis(planner):
    plan = planner.generate_plan("dep", ProjectAnalysis())

    assert [step.name for step in plan.steps] == [
        "Validate Prerequisites",
        "Build Application (Skipped)",
        "Generate IaC Configuration",
        "IaC Init",
        "IaC Plan",
        "IaC Apply",
        "Verify Deployment",
    ]
    assert [step.id for step in plan.steps] == list(range(1, 8))

    skipped = plan.steps[1]
    assert skipped.type is StepType.INFO
    assert skipped.skipped and skipped.can_skip
    assert skipped.skip_reason == "No build script in package.json"

    apply = plan.get_step(6)
    assert apply.requires_approval
    assert apply.rollback_command == "$iac destroy -auto-approve"
    assert apply.rollback_cwd == "$iac_dir"

    assert str(plan.estimated_time) == "6-30 minutes"
    assert plan.validation.valid
    assert plan.validation.warnings == ["Project type 'unknown' has no manifest check"]


def test_generation_is_deterministic(planner, node_analysis, node_workspace):
    first = planner.generate_plan("dep", node_analysis, node_workspace)
    second = planner.generate_plan("dep", node_analysis, node_workspace)

    assert [s.model_dump() for s in first.steps] == [s.model_dump() for s in second.steps]
    assert first.rollback_plan == second.rollback_plan


def test_full_node_plan(planner, node_analysis, node_workspace):
    plan = planner.generate_plan("dep", node_analysis, node_workspace)

    names = [step.name for step in plan.steps]
    assert names[:6] == [
        "Validate Prerequisites",
        "Install Dependencies",
        "Build Application",
        "Run Tests",
        "Build Container Image",
        "Start Compose Services",
    ]
    assert len(plan.steps) == 11

    install = plan.get_step(2)
    assert install.action.template == "yarn install"
    assert install.prerequisites == ["package.json exists"]
    assert install.post_check == "dependencies_installed"
    assert plan.get_step(3).action.template == "yarn build"
    assert plan.get_step(4).can_skip
    assert plan.get_step(5).action.template == "docker build -t $project_name:latest ."

    assert plan.variables["project_name"] == "shop"
    assert plan.variables["iac"] == "terraform"
    assert plan.project_info == {"type": "nodejs", "framework": "express", "architecture": "containerized"}
    assert plan.validation.valid


def test_rollback_plan_is_reversed(planner, node_analysis, node_workspace):
    plan = planner.generate_plan("dep", node_analysis, node_workspace)

    ids = [step.original_step_id for step in plan.rollback_plan]
    assert ids == [10, 6, 5, 3, 2]
    assert plan.rollback_plan[0].name == "Rollback: IaC Apply"
    assert plan.rollback_plan[0].cwd == "$iac_dir"
    assert plan.rollback_plan[-1].cwd is None
    assert plan.rollback_plan[-1].command == "rm -rf node_modules"


def test_python_install_command(planner):
    analysis = ProjectAnalysis(project_type="python", flags=AnalysisFlags(manifest=True))
    plan = planner.generate_plan("dep", analysis)

    install = plan.get_step(2)
    assert install.action.template == "pip install -r requirements.txt"
    assert install.prerequisites == ["requirements.txt exists"]
    assert install.post_check is None
    assert install.rollback_command is None


def test_pyproject_only_project(planner, tmp_path):
    workspace = Workspace("dep", tmp_path / "svc")
    workspace.root.mkdir()
    workspace.write_text("pyproject.toml", "[project]\nname = \"svc\"\ndependencies = [\"flask\"]\n")
    analysis = WorkspaceAnalyzer(WorkspaceManager(tmp_path / "root"), deployments=None).analyze_workspace(workspace)

    plan = planner.generate_plan("dep", analysis, workspace)

    assert analysis.manifest == "pyproject.toml"
    assert plan.variables["manifest"] == "pyproject.toml"
    install = plan.get_step(2)
    assert install.action.template == "pip install ."
    assert install.prerequisites == ["pyproject.toml exists"]
    assert plan.validation.valid


def test_requirements_file_wins_over_pyproject(planner, tmp_path):
    workspace = Workspace("dep", tmp_path)
    workspace.write_text("pyproject.toml", "[project]\n")
    workspace.write_text("requirements.txt", "flask\n")
    analysis = WorkspaceAnalyzer(WorkspaceManager(tmp_path / "root"), deployments=None).analyze_workspace(workspace)

    install = planner.generate_plan("dep", analysis, workspace).get_step(2)

    assert install.action.template == "pip install -r requirements.txt"
    assert install.prerequisites == ["requirements.txt exists"]


def test_validation_fails_closed_without_workspace(planner, node_analysis):
    plan = planner.generate_plan("dep", node_analysis)

    assert not plan.validation.valid
    assert plan.validation.errors == ["Workspace unavailable; project manifest could not be checked"]
    with pytest.raises(PlanValidationError):
        planner.ensure_valid(plan)


def test_validation_requires_manifest(planner, node_analysis, tmp_path):
    workspace = Workspace("dep", tmp_path)

    plan = planner.generate_plan("dep", node_analysis, workspace)

    assert not plan.validation.valid
    assert plan.validation.errors == ["package.json not found"]


def test_duplicate_step_ids_are_invalid(planner):
    analysis = ProjectAnalysis()
    steps = planner.generate_steps(analysis)
    steps[1] = steps[1].model_copy(update={"id": 1})

    validation = planner.validate_plan("dep", steps, analysis)

    assert not validation.valid
    assert validation.errors == ["Duplicate step IDs found: [1]"]


def test_empty_plan_is_invalid(planner):
    validation = planner.validate_plan("dep", [], ProjectAnalysis())
    assert "Plan has no steps" in validation.errors


def test_potential_issues(planner, node_analysis):
    issues = planner.identify_potential_issues(node_analysis)
    assert [issue.severity for issue in issues] == ["info"]

    bare = planner.identify_potential_issues(
        ProjectAnalysis(architecture_pattern=["containerized"], required_env_vars=[])
    )
    messages = [issue.message for issue in bare]
    assert len(bare) == 3
    assert messages[0].startswith("No build script detected")
    assert messages[-1] == "Containerized architecture detected but no container file found."
