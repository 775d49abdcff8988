"""
Path safety and content-type helpers.

Every filesystem access against a workspace goes through ``resolve_path`` or
``read_file_within``.
"""

import os
import re
import stat
from pathlib import Path, PurePosixPath, PureWindowsPath
from typing import Union

from runbox.errors import NotFound, PathTraversalError


PathLike = Union[str, os.PathLike]

DEFAULT_DOCUMENT = "index.html"

# Mapping of file extensions to preview content types (closed)
CONTENT_TYPES = {
    ".html": "text/html",
    ".htm": "text/html",
    ".css": "text/css",
    ".js": "application/javascript",
    ".json": "application/json",
    ".svg": "image/svg+xml",
    ".png": "image/png",
    ".jpg": "image/jpeg",
    ".jpeg": "image/jpeg",
}

DEFAULT_CONTENT_TYPE = "application/octet-stream"

_DRIVE_PATTERN = re.compile(r"^[A-Za-z]:")


def content_type_for(path: PathLike) -> str:
    """
    Derive the content type of a file purely from its extension.

    Args:
        path: File path or filename

    Returns:
        Content type, defaults to "application/octet-stream"
    """
    suffix = Path(path).suffix.lower()
    return CONTENT_TYPES.get(suffix, DEFAULT_CONTENT_TYPE)


def _is_within(child: Path, parent: Path) -> bool:
    return child != parent and parent in child.parents


def resolve_path(root: PathLike, relative_path: str) -> Path:
    """
    Resolve a workspace-relative path strictly inside ``root``.

    Absolute paths, drive letters, NUL bytes and ``..`` segments are rejected
    outright. The joined path is then resolved with symlinks followed and must
    still lie strictly inside the resolved root.

    Args:
        root: Workspace root directory
        relative_path: Path relative to the root

    Returns:
        Absolute path prefixed by the resolved root

    Raises:
        PathTraversalError: If the path escapes the root
    """
    if "\x00" in relative_path:
        raise PathTraversalError("Path contains a NUL byte")

    normalized = relative_path.replace("\\", "/")
    if (
        normalized.startswith("/")
        or _DRIVE_PATTERN.match(normalized)
        or PureWindowsPath(relative_path).anchor
    ):
        raise PathTraversalError(f"Absolute paths are not allowed: {relative_path!r}")

    parts = [part for part in PurePosixPath(normalized).parts if part not in ("", ".")]
    if ".." in parts:
        raise PathTraversalError(f"Parent segments are not allowed: {relative_path!r}")
    if not parts:
        raise PathTraversalError("Path resolves to the workspace root")

    resolved_root = Path(root).resolve()
    candidate = resolved_root.joinpath(*parts)

    # Follow symlinks; a link pointing outside the root is a traversal too.
    resolved = candidate.resolve()
    if not _is_within(resolved, resolved_root):
        raise PathTraversalError(f"Path escapes the workspace root: {relative_path!r}")

    return resolved


def read_file_within(root: PathLike, relative_path: str) -> bytes:
    """
    Read a file inside ``root``, re-checking containment at open time.

    A directory resolves to its ``index.html``. The file is opened without
    following a final symlink and the opened inode must match the resolved
    path, so a link swapped in after resolution is rejected.

    Raises:
        PathTraversalError: If the path escapes the root
        NotFound: If the file does not exist
    """
    path = resolve_path(root, relative_path or DEFAULT_DOCUMENT)
    if path.is_dir():
        path = resolve_path(root, str(PurePosixPath(relative_path.replace("\\", "/")) / DEFAULT_DOCUMENT))

    # O_NONBLOCK keeps a FIFO from blocking the open; it is rejected below
    flags = os.O_RDONLY | getattr(os, "O_NOFOLLOW", 0) | getattr(os, "O_NONBLOCK", 0) | getattr(os, "O_BINARY", 0)
    try:
        fd = os.open(path, flags)
    except FileNotFoundError:
        raise NotFound(f"File not found: {relative_path}")
    except IsADirectoryError:
        raise NotFound(f"Not a file: {relative_path}")
    except OSError as exc:
        # ELOOP: the final component became a symlink after resolution
        raise PathTraversalError(f"Refusing to open {relative_path!r}: {exc.strerror}")

    with os.fdopen(fd, "rb") as handle:
        opened = os.fstat(handle.fileno())
        if not stat.S_ISREG(opened.st_mode):
            raise NotFound(f"Not a file: {relative_path}")

        # An intermediate directory swapped for a symlink shows up here.
        current = path.resolve()
        if not _is_within(current, Path(root).resolve()):
            raise PathTraversalError(f"Path escapes the workspace root: {relative_path!r}")
        try:
            expected = os.stat(current)
        except FileNotFoundError:
            raise NotFound(f"File not found: {relative_path}")
        if (expected.st_dev, expected.st_ino) != (opened.st_dev, opened.st_ino):
            raise PathTraversalError(f"File changed while opening: {relative_path!r}")

        return handle.read()
