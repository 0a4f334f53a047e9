"""
WorkspaceManager - One working directory per deployment.

Each deployment owns exactly one workspace directory. Commands run there,
the gate looks for generated artifacts there and the analyzer reads the
project manifest from there. All relative paths are validated so they
cannot escape the workspace (e.g. ../../etc/passwd).

Usage:
    workspaces = WorkspaceManager("/var/lib/deploy-engine/workspaces")

    # Created on first use below the root
    ws = workspaces.get("a1b2c3")
    ws.resolve_path("terraform/main.tf")

    # Existing checkout, never deleted by cleanup
    workspaces.register("d4e5f6", "/home/me/project")

    # Removes directories the manager created itself
    workspaces.cleanup("a1b2c3")
"""

import shutil
from pathlib import Path
from typing import Optional, Union

from deploy_engine.errors import ValidationError
from deploy_engine.utils.logging import get_logger

logger = get_logger(__name__)


class WorkspaceSecurityError(ValidationError):
    """Raised when a path operation would escape the workspace."""

    code = "WORKSPACE_ESCAPE"


class Workspace:
    """
    A single deployment's working directory.

    Attributes:
        deployment_id: Owner of this directory
        root: Absolute path of the directory
        owned: True when the manager created it (and may delete it)
    """

    def __init__(self, deployment_id: str, root: Union[str, Path], owned: bool = True):
        self.deployment_id = deployment_id
        self.root = Path(root).resolve()
        self.owned = owned

    def resolve_path(self, relative_path: str) -> Path:
        """
        Resolve a relative path to an absolute path within the workspace.

        Raises:
            WorkspaceSecurityError: If path would escape workspace
        """
        # Handle both forward and back slashes
        normalized = relative_path.replace("\\", "/")
        full_path = (self.root / normalized).resolve()

        try:
            full_path.relative_to(self.root)
        except ValueError:
            raise WorkspaceSecurityError(
                f"Path '{relative_path}' escapes workspace boundary. "
                f"All paths must be within: {self.root}",
                context={"path": relative_path, "workspace": str(self.root)},
            )

        return full_path

    def exists(self, relative_path: str) -> bool:
        """Check if a path exists within the workspace."""
        try:
            return self.resolve_path(relative_path).exists()
        except WorkspaceSecurityError:
            return False

    def is_file(self, relative_path: str) -> bool:
        try:
            return self.resolve_path(relative_path).is_file()
        except WorkspaceSecurityError:
            return False

    def is_dir(self, relative_path: str) -> bool:
        try:
            return self.resolve_path(relative_path).is_dir()
        except WorkspaceSecurityError:
            return False

    def read_text(self, relative_path: str) -> str:
        """
        Read a file from the workspace.

        Raises:
            WorkspaceSecurityError: If path escapes workspace
            FileNotFoundError: If file doesn't exist
        """
        full_path = self.resolve_path(relative_path)
        if not full_path.is_file():
            raise FileNotFoundError(f"File not found: {relative_path}")
        return full_path.read_text(encoding="utf-8")

    def write_text(self, relative_path: str, content: str) -> Path:
        """Write a file, creating parent directories if needed."""
        full_path = self.resolve_path(relative_path)
        full_path.parent.mkdir(parents=True, exist_ok=True)
        full_path.write_text(content, encoding="utf-8")
        return full_path

    def __repr__(self) -> str:
        return f"<Workspace deployment='{self.deployment_id}' root='{self.root}'>"


class WorkspaceManager:
    """
    Registry of deployment workspaces.

    Lifecycle:
    - get(): creates <root>/<deployment_id> on first use
    - register(): adopts an existing directory (not owned)
    - cleanup(): forgets the entry and removes the directory if owned
    """

    def __init__(self, workspace_root: Union[str, Path]):
        self.root = Path(workspace_root).resolve()
        self.root.mkdir(parents=True, exist_ok=True)
        self._workspaces: dict[str, Workspace] = {}

    def get(self, deployment_id: str, path: Optional[str] = None) -> Workspace:
        """
        Get the workspace for a deployment, creating it on first use.

        Args:
            deployment_id: Deployment the workspace belongs to
            path: Persisted workspace path, adopted when not yet registered
        """
        workspace = self._workspaces.get(deployment_id)
        if workspace is not None:
            return workspace

        if path:
            return self.register(deployment_id, path)

        directory = self._default_path(deployment_id)
        directory.mkdir(parents=True, exist_ok=True)
        workspace = Workspace(deployment_id, directory, owned=True)
        self._workspaces[deployment_id] = workspace
        logger.debug("Created workspace %s", workspace.root)
        return workspace

    def register(self, deployment_id: str, path: Union[str, Path]) -> Workspace:
        """Adopt an existing directory as a deployment's workspace."""
        directory = Path(path).resolve()
        if not directory.is_dir():
            raise ValidationError(
                f"Workspace path is not a directory: {directory}",
                context={"deployment_id": deployment_id, "path": str(directory)},
            )
        owned = directory == self._default_path(deployment_id)
        workspace = Workspace(deployment_id, directory, owned=owned)
        self._workspaces[deployment_id] = workspace
        return workspace

    def cleanup(self, deployment_id: str) -> bool:
        """
        Forget a deployment's workspace and remove it if the manager owns it.

        Returns:
            True if a directory was removed
        """
        workspace = self._workspaces.pop(deployment_id, None)
        if workspace is None or not workspace.owned:
            return False
        shutil.rmtree(workspace.root, ignore_errors=True)
        logger.info("Removed workspace %s", workspace.root)
        return True

    def default_path(self, deployment_id: str) -> Path:
        return self._default_path(deployment_id)

    def _default_path(self, deployment_id: str) -> Path:
        directory = (self.root / deployment_id).resolve()
        try:
            directory.relative_to(self.root)
        except ValueError:
            raise WorkspaceSecurityError(
                f"Invalid deployment id for workspace: {deployment_id}",
                context={"deployment_id": deployment_id},
            )
        return directory

    def __contains__(self, deployment_id: str) -> bool:
        return deployment_id in self._workspaces

    def __repr__(self) -> str:
        return f"<WorkspaceManager root='{self.root}' active={len(self._workspaces)}>"
