"""
Workspace store - maps workspace ids to root directories under a base path.
"""

import logging
import re
from pathlib import Path
from typing import List

from runbox.errors import NotFound, PathTraversalError
from runbox.utils import PathLike, resolve_path


logger = logging.getLogger(__name__)

WORKSPACE_ID_PATTERN = re.compile(r"^[A-Za-z0-9_-]{1,64}$")


class WorkspaceStore:
    """Resolves workspace ids to their root directories."""

    def __init__(self, base_path: PathLike):
        self.base_path = Path(base_path).resolve()

    def _path_for(self, workspace_id: str) -> Path:
        if not WORKSPACE_ID_PATTERN.match(workspace_id or ""):
            raise NotFound(f"Unknown workspace: {workspace_id!r}")
        try:
            return resolve_path(self.base_path, workspace_id)
        except PathTraversalError:
            raise NotFound(f"Unknown workspace: {workspace_id!r}")

    def exists(self, workspace_id: str) -> bool:
        """Check whether the workspace root directory exists."""
        try:
            return self._path_for(workspace_id).is_dir()
        except NotFound:
            return False

    def root(self, workspace_id: str) -> Path:
        """
        Get the root directory of an existing workspace.

        Raises:
            NotFound: If the id is malformed or the directory does not exist
        """
        path = self._path_for(workspace_id)
        if not path.is_dir():
            raise NotFound(f"Unknown workspace: {workspace_id!r}")
        return path

    def create(self, workspace_id: str) -> Path:
        """Create the workspace root directory if needed and return it."""
        if not WORKSPACE_ID_PATTERN.match(workspace_id or ""):
            raise NotFound(f"Invalid workspace id: {workspace_id!r}")
        self.base_path.mkdir(parents=True, exist_ok=True)
        path = self.base_path / workspace_id
        path.mkdir(exist_ok=True)
        logger.info("Workspace %s ready at %s", workspace_id, path)
        return path

    def list(self) -> List[str]:
        """List the ids of all existing workspaces."""
        if not self.base_path.is_dir():
            return []
        return sorted(
            child.name
            for child in self.base_path.iterdir()
            if child.is_dir() and WORKSPACE_ID_PATTERN.match(child.name)
        )
