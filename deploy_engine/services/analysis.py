"""
WorkspaceAnalyzer - Default project analysis collaborator.

Inspects the files of a deployment workspace and produces the
ProjectAnalysis consumed by the plan generator. It only reads files; it
never runs commands.
"""

import json
import re
from typing import Optional

from deploy_engine.db.repository import DeploymentRepository
from deploy_engine.domain.models import AnalysisFlags, ProjectAnalysis
from deploy_engine.services.workspace import Workspace, WorkspaceManager
from deploy_engine.utils.logging import get_logger

logger = get_logger(__name__)

COMPOSE_FILES = ("docker-compose.yml", "docker-compose.yaml", "compose.yml", "compose.yaml")
PYTHON_MANIFESTS = ("requirements.txt", "pyproject.toml")
ENV_TEMPLATES = (".env.example", ".env.sample", ".env.template")

NODE_FRAMEWORKS = [
    ("next", "nextjs"),
    ("@nestjs/core", "nestjs"),
    ("nuxt", "nuxt"),
    ("@angular/core", "angular"),
    ("vue", "vue"),
    ("react", "react"),
    ("express", "express"),
    ("fastify", "fastify"),
]

PYTHON_FRAMEWORKS = [
    ("django", "django"),
    ("fastapi", "fastapi"),
    ("flask", "flask"),
]


class WorkspaceAnalyzer:
    """Builds a ProjectAnalysis from workspace files."""

    def __init__(self, workspaces: WorkspaceManager, deployments: DeploymentRepository):
        self.workspaces = workspaces
        self.deployments = deployments

    async def analyze(self, deployment_id: str) -> ProjectAnalysis:
        if deployment_id in self.workspaces:
            workspace = self.workspaces.get(deployment_id)
        else:
            deployment = await self.deployments.require(deployment_id)
            workspace = self.workspaces.get(deployment_id, path=deployment.workspace_path)
        return self.analyze_workspace(workspace)

    def analyze_workspace(self, workspace: Workspace) -> ProjectAnalysis:
        package = self._read_package_json(workspace)
        compose_file = next((f for f in COMPOSE_FILES if workspace.is_file(f)), None)
        has_dockerfile = workspace.is_file("Dockerfile")

        if package is not None:
            project_type = "nodejs"
            scripts = package.get("scripts") or {}
            dependencies = {
                **(package.get("dependencies") or {}),
                **(package.get("devDependencies") or {}),
            }
            framework = next((name for dep, name in NODE_FRAMEWORKS if dep in dependencies), None)
            flags = AnalysisFlags(
                manifest=True,
                build_script="build" in scripts,
                test_script="test" in scripts and "no test specified" not in str(scripts.get("test")),
                start_script="start" in scripts,
                container_file=has_dockerfile,
                compose_file=compose_file is not None,
            )
            package_manager = self._node_package_manager(workspace)
            manifest = "package.json"
            project_name = self._sanitize_name(package.get("name")) or self._sanitize_name(workspace.root.name)
        elif any(workspace.is_file(m) for m in PYTHON_MANIFESTS):
            project_type = "python"
            manifest = next(m for m in PYTHON_MANIFESTS if workspace.is_file(m))
            framework = self._python_framework(workspace)
            flags = AnalysisFlags(
                manifest=True,
                container_file=has_dockerfile,
                compose_file=compose_file is not None,
                start_script=workspace.is_file("Procfile"),
            )
            package_manager = "pip"
            project_name = self._sanitize_name(workspace.root.name)
        else:
            project_type = "unknown"
            framework = None
            manifest = None
            flags = AnalysisFlags(container_file=has_dockerfile, compose_file=compose_file is not None)
            package_manager = "npm"
            project_name = self._sanitize_name(workspace.root.name)

        patterns = []
        if has_dockerfile or compose_file:
            patterns.append("containerized")
        if compose_file:
            patterns.append("multi-service")
        if project_type == "nodejs" and flags.build_script and not flags.start_script:
            patterns.append("static")

        analysis = ProjectAnalysis(
            project_type=project_type,
            framework=framework,
            flags=flags,
            manifest=manifest,
            architecture_pattern=patterns,
            package_manager=package_manager,
            project_name=project_name or "app",
            required_env_vars=self._required_env_vars(workspace),
        )
        logger.debug("Analyzed %s: %s", workspace.root, analysis.model_dump())
        return analysis

    def _read_package_json(self, workspace: Workspace) -> Optional[dict]:
        if not workspace.is_file("package.json"):
            return None
        try:
            data = json.loads(workspace.read_text("package.json"))
        except (json.JSONDecodeError, UnicodeDecodeError) as e:
            logger.warning("Unreadable package.json in %s: %s", workspace.root, e)
            return {}
        return data if isinstance(data, dict) else {}

    def _node_package_manager(self, workspace: Workspace) -> str:
        if workspace.is_file("pnpm-lock.yaml"):
            return "pnpm"
        if workspace.is_file("yarn.lock"):
            return "yarn"
        return "npm"

    def _python_framework(self, workspace: Workspace) -> Optional[str]:
        text = ""
        for manifest in PYTHON_MANIFESTS:
            if workspace.is_file(manifest):
                text += workspace.read_text(manifest).lower()
        return next((name for dep, name in PYTHON_FRAMEWORKS if re.search(rf"\b{dep}\b", text)), None)

    def _required_env_vars(self, workspace: Workspace) -> list[str]:
        for template in ENV_TEMPLATES:
            if workspace.is_file(template):
                names = []
                for line in workspace.read_text(template).splitlines():
                    line = line.strip()
                    if line and not line.startswith("#") and "=" in line:
                        names.append(line.split("=", 1)[0].removeprefix("export ").strip())
                return names
        return []

    @staticmethod
    def _sanitize_name(name: Optional[str]) -> Optional[str]:
        """Turn a package name into something usable as an image tag."""
        if not name:
            return None
        cleaned = re.sub(r"[^a-z0-9._-]+", "-", name.lower().lstrip("@").replace("/", "-")).strip("-.")
        return cleaned or None
