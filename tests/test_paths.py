"""Tests for path resolution, safe reads, content types and the workspace store."""

from __future__ import annotations

import os
from pathlib import Path

import pytest

from runbox.errors import NotFound, PathTraversalError
from runbox.sandbox.static import PreviewServer
from runbox.utils import content_type_for, read_file_within, resolve_path
from runbox.workspaces import WorkspaceStore


@pytest.fixture
def root(workspaces_dir: Path) -> Path:
    return workspaces_dir / "W1"


class TestResolvePath:
    """Tests for resolve_path."""

    @pytest.mark.parametrize(
        "relative_path",
        [
            "../../etc/passwd",
            "..",
            "../W2/index.html",
            "assets/../../W2/index.html",
            "assets/../index.html",
            "..\\..\\etc\\passwd",
            "/etc/passwd",
            "\\etc\\passwd",
            "C:\\Windows\\win.ini",
            "c:/windows",
            "index.html\x00.png",
        ],
    )
    def test_rejects_traversal_and_absolute_paths(self, root: Path, relative_path: str) -> None:
        """Parent segments and absolute overrides always fail."""
        with pytest.raises(PathTraversalError):
            resolve_path(root, relative_path)

    @pytest.mark.parametrize("relative_path", ["", ".", "./", "./."])
    def test_rejects_the_root_itself(self, root: Path, relative_path: str) -> None:
        with pytest.raises(PathTraversalError):
            resolve_path(root, relative_path)

    @pytest.mark.parametrize(
        "relative_path",
        ["index.html", "./index.html", "assets/site.css", "assets//site.css", "assets\\site.css", "missing.txt"],
    )
    def test_paths_inside_root_resolve_under_root(self, root: Path, relative_path: str) -> None:
        resolved = resolve_path(root, relative_path)
        assert resolved.is_absolute()
        assert root.resolve() in resolved.parents

    def test_sibling_workspace_with_common_prefix_is_outside(self, workspaces_dir: Path) -> None:
        """W1 must not be able to reach W10 through a prefix match."""
        (workspaces_dir / "W10").mkdir()
        (workspaces_dir / "W10" / "secret.txt").write_text("secret")
        (workspaces_dir / "W1" / "link").symlink_to(workspaces_dir / "W10")
        with pytest.raises(PathTraversalError):
            resolve_path(workspaces_dir / "W1", "link/secret.txt")

    def test_symlink_escaping_root_is_rejected(self, root: Path, tmp_path: Path) -> None:
        outside = tmp_path / "outside.txt"
        outside.write_text("outside")
        (root / "escape.txt").symlink_to(outside)
        with pytest.raises(PathTraversalError):
            resolve_path(root, "escape.txt")

    def test_symlink_inside_root_is_followed(self, root: Path) -> None:
        (root / "alias.html").symlink_to(root / "index.html")
        assert resolve_path(root, "alias.html") == (root / "index.html").resolve()


class TestReadFileWithin:
    """Tests for read_file_within."""

    def test_reads_file(self, root: Path) -> None:
        assert read_file_within(root, "index.html") == b"<h1>hello</h1>"

    def test_defaults_to_index(self, root: Path) -> None:
        assert read_file_within(root, "") == b"<h1>hello</h1>"

    def test_directory_serves_its_index(self, root: Path) -> None:
        assert read_file_within(root, "assets") == b"<p>assets</p>"
        assert read_file_within(root, "assets/") == b"<p>assets</p>"

    def test_missing_file_is_not_found(self, root: Path) -> None:
        with pytest.raises(NotFound):
            read_file_within(root, "missing.html")

    def test_directory_without_index_is_not_found(self, root: Path) -> None:
        (root / "empty").mkdir()
        with pytest.raises(NotFound):
            read_file_within(root, "empty")

    def test_traversal_is_rejected_before_reading(self, root: Path) -> None:
        with pytest.raises(PathTraversalError):
            read_file_within(root, "../../etc/passwd")

    @pytest.mark.skipif(not hasattr(os, "mkfifo"), reason="requires FIFOs")
    def test_special_files_are_not_served(self, root: Path) -> None:
        os.mkfifo(root / "pipe")
        with pytest.raises(NotFound):
            read_file_within(root, "pipe")


class TestContentTypes:
    """Tests for content-type mapping."""

    @pytest.mark.parametrize(
        "name, expected",
        [
            ("index.html", "text/html"),
            ("page.HTM", "text/html"),
            ("site.css", "text/css"),
            ("app.js", "application/javascript"),
            ("data.json", "application/json"),
            ("logo.svg", "image/svg+xml"),
            ("logo.png", "image/png"),
            ("photo.jpg", "image/jpeg"),
            ("photo.jpeg", "image/jpeg"),
            ("notes.txt", "application/octet-stream"),
            ("Makefile", "application/octet-stream"),
        ],
    )
    def test_content_type_from_extension(self, name: str, expected: str) -> None:
        assert content_type_for(name) == expected


class TestPreviewServer:
    """Tests for the static preview server."""

    def test_serves_with_content_type(self, workspaces_dir: Path) -> None:
        server = PreviewServer(WorkspaceStore(workspaces_dir))
        assert server.serve("W1", "assets/site.css") == (b"body { color: red; }", "text/css")

    def test_directory_index_is_html(self, workspaces_dir: Path) -> None:
        server = PreviewServer(WorkspaceStore(workspaces_dir))
        assert server.serve("W1", "assets") == (b"<p>assets</p>", "text/html")

    def test_unknown_workspace_is_not_found(self, workspaces_dir: Path) -> None:
        server = PreviewServer(WorkspaceStore(workspaces_dir))
        with pytest.raises(NotFound):
            server.serve("nope", "index.html")

    def test_traversal_is_rejected(self, workspaces_dir: Path) -> None:
        server = PreviewServer(WorkspaceStore(workspaces_dir))
        with pytest.raises(PathTraversalError):
            server.serve("W1", "../../etc/passwd")

    def test_preview_url(self) -> None:
        assert PreviewServer.preview_url("W1", "index.html") == "/preview/W1/index.html"


class TestWorkspaceStore:
    """Tests for the workspace store."""

    def test_root_of_existing_workspace(self, workspaces_dir: Path) -> None:
        store = WorkspaceStore(workspaces_dir)
        assert store.root("W1") == (workspaces_dir / "W1").resolve()
        assert store.exists("W1")

    @pytest.mark.parametrize("workspace_id", ["missing", "..", "a/b", "", "x" * 65])
    def test_unknown_or_malformed_ids(self, workspaces_dir: Path, workspace_id: str) -> None:
        store = WorkspaceStore(workspaces_dir)
        assert not store.exists(workspace_id)
        with pytest.raises(NotFound):
            store.root(workspace_id)

    def test_create_and_list(self, tmp_path: Path) -> None:
        store = WorkspaceStore(tmp_path / "base")
        store.create("beta")
        store.create("alpha")
        assert store.list() == ["alpha", "beta"]

    def test_create_rejects_malformed_id(self, tmp_path: Path) -> None:
        store = WorkspaceStore(tmp_path / "base")
        with pytest.raises(NotFound):
            store.create("../escape")
        assert not (tmp_path / "escape").exists()
