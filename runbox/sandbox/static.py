"""
Preview Server - serve workspace files as static content.

Read-only and independent of the session registry, so previews keep working
while an execution is active.
"""

from typing import Tuple

from runbox.utils import DEFAULT_DOCUMENT, content_type_for, read_file_within
from runbox.workspaces import WorkspaceStore


class PreviewServer:
    """Reads workspace files through the path resolver."""

    def __init__(self, workspaces: WorkspaceStore):
        self.workspaces = workspaces

    def serve(self, workspace_id: str, relative_path: str = "") -> Tuple[bytes, str]:
        """
        Read a workspace file for preview.

        Args:
            workspace_id: Workspace identifier
            relative_path: Path inside the workspace, defaults to index.html

        Returns:
            Tuple of (file bytes, content type)

        Raises:
            NotFound: If the workspace or file does not exist
            PathTraversalError: If the path escapes the workspace
        """
        root = self.workspaces.root(workspace_id)
        relative_path = relative_path or DEFAULT_DOCUMENT
        data = read_file_within(root, relative_path)
        name = relative_path
        if (root / relative_path).is_dir():
            name = f"{relative_path.rstrip('/')}/{DEFAULT_DOCUMENT}"
        return data, content_type_for(name)

    @staticmethod
    def preview_url(workspace_id: str, relative_path: str) -> str:
        """Relative URL under which ``relative_path`` is previewed."""
        return f"/preview/{workspace_id}/{relative_path.lstrip('/')}"
