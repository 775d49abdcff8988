"""
Execution strategy selection - a closed table keyed by file extension.

Adding a runtime means adding a row here (and an image in ``container.py``).
"""

from pathlib import PurePosixPath
from typing import Dict, Optional

from runbox.schemas import Strategy


STRATEGIES: Dict[str, Strategy] = {
    # Served as-is by the preview server
    ".html": Strategy.STATIC,
    ".htm": Strategy.STATIC,
    ".css": Strategy.STATIC,
    ".svg": Strategy.STATIC,
    ".png": Strategy.STATIC,
    ".jpg": Strategy.STATIC,
    ".jpeg": Strategy.STATIC,
    ".json": Strategy.STATIC,
    # Embedded interpreter
    ".js": Strategy.SANDBOXED_SCRIPT,
    ".mjs": Strategy.SANDBOXED_SCRIPT,
    # Isolated containers
    ".php": Strategy.CONTAINER,
    ".py": Strategy.CONTAINER,
}

# Extensions the in-process sandbox handles unless scripts are routed to containers
SCRIPT_EXTENSIONS = frozenset(ext for ext, strategy in STRATEGIES.items() if strategy is Strategy.SANDBOXED_SCRIPT)

UNSUPPORTED_MESSAGE = (
    "This file type has no execution strategy. Static files (HTML, CSS, images, JSON) "
    "are previewed, JavaScript runs in the script sandbox, and PHP or Python run in "
    "containers."
)


def extension_of(relative_path: str) -> str:
    return PurePosixPath(relative_path.replace("\\", "/")).suffix.lower()


def select_strategy(relative_path: str, js_strategy: str = "sandbox") -> Optional[Strategy]:
    """
    Pick the strategy for a file.

    Args:
        relative_path: Workspace-relative file path
        js_strategy: "sandbox" to run scripts in-process, "container" to run them in Node

    Returns:
        The strategy, or None if the extension is unsupported
    """
    ext = extension_of(relative_path)
    strategy = STRATEGIES.get(ext)
    if strategy is Strategy.SANDBOXED_SCRIPT and js_strategy == "container":
        return Strategy.CONTAINER
    return strategy
