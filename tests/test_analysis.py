import pytest

from deploy_engine.services.analysis import WorkspaceAnalyzer
from deploy_engine.services.workspace import Workspace, WorkspaceManager, WorkspaceSecurityError


@pytest.fixture
def workspace(tmp_path) -> Workspace:
    root = tmp_path / "my-app"
    root.mkdir()
    return Workspace("dep", root)


@pytest.fixture
def analyzer(tmp_path) -> WorkspaceAnalyzer:
    return WorkspaceAnalyzer(WorkspaceManager(tmp_path / "root"), deployments=None)


def test_node_project(analyzer, workspace):
    workspace.write_text(
        "package.json",
        '{"name": "shop", "scripts": {"build": "next build", "test": "jest"},'
        ' "dependencies": {"next": "14", "react": "18"}}',
    )
    workspace.write_text("yarn.lock", "")
    workspace.write_text("Dockerfile", "FROM node:20\n")
    workspace.write_text(".env.example", "# comment\nexport DATABASE_URL=\nPORT=3000\n")

    analysis = analyzer.analyze_workspace(workspace)

    assert analysis.project_type == "nodejs"
    assert analysis.framework == "nextjs"
    assert analysis.package_manager == "yarn"
    assert analysis.manifest == "package.json"
    assert analysis.project_name == "shop"
    assert analysis.flags.build_script and analysis.flags.test_script
    assert not analysis.flags.start_script
    assert analysis.flags.container_file and not analysis.flags.compose_file
    assert analysis.architecture_pattern == ["containerized", "static"]
    assert analysis.required_env_vars == ["DATABASE_URL", "PORT"]


def test_placeholder_test_script_is_ignored(analyzer, workspace):
    workspace.write_text(
        "package.json",
        '{"scripts": {"test": "echo \\"Error: no test specified\\" && exit 1"}}',
    )

    analysis = analyzer.analyze_workspace(workspace)

    assert not analysis.flags.test_script
    assert analysis.project_name == "my-app"


def test_python_project(analyzer, workspace):
    workspace.write_text("requirements.txt", "FastAPI==0.110\nuvicorn\n")
    workspace.write_text("compose.yaml", "services: {}\n")

    analysis = analyzer.analyze_workspace(workspace)

    assert analysis.project_type == "python"
    assert analysis.framework == "fastapi"
    assert analysis.package_manager == "pip"
    assert analysis.manifest == "requirements.txt"
    assert analysis.architecture_pattern == ["containerized", "multi-service"]


def test_unknown_project(analyzer, workspace):
    analysis = analyzer.analyze_workspace(workspace)

    assert analysis.project_type == "unknown"
    assert analysis.manifest is None
    assert analysis.flags.model_dump() == {key: False for key in analysis.flags.model_dump()}


def test_workspace_paths_stay_inside(workspace):
    assert workspace.resolve_path("a/b.txt") == workspace.root / "a" / "b.txt"
    with pytest.raises(WorkspaceSecurityError):
        workspace.resolve_path("../outside.txt")
    assert not workspace.exists("../../etc/passwd")


def test_manager_owns_only_created_directories(tmp_path):
    manager = WorkspaceManager(tmp_path / "root")
    created = manager.get("dep-1")
    external = tmp_path / "checkout"
    external.mkdir()
    adopted = manager.register("dep-2", external)

    assert created.owned and not adopted.owned
    assert manager.cleanup("dep-1")
    assert not created.root.exists()
    assert not manager.cleanup("dep-2")
    assert external.exists()

    with pytest.raises(WorkspaceSecurityError):
        manager.get("../escape")
