"""Pytest configuration and fixtures for runbox tests."""

from __future__ import annotations

import asyncio
import threading
import time
import uuid
from pathlib import Path
from typing import Any, Dict, Generator, Iterable, List, Optional

import pytest
from docker.errors import APIError, ImageNotFound, NotFound

from runbox.config import Config
from runbox.runner import Runner
from runbox.sandbox.relay import Subscription
from runbox.schemas import LogEvent


# =============================================================================
# FAKE DOCKER SDK
# =============================================================================

class FakeContainer:
    """Container double: streams canned output and exits when told to."""

    def __init__(self, client: "FakeDockerClient", name: str, labels: Dict[str, str], kwargs: Dict):
        self.client = client
        self.id = uuid.uuid4().hex
        self.name = name
        self.labels = labels
        self.kwargs = kwargs
        self.status = "running"
        self.exit_code: Optional[int] = None
        self.stopped = False
        self.removed = False
        self._stdout = list(client.stdout_chunks)
        self._stderr = list(client.stderr_chunks)
        self._exited = threading.Event()

    def logs(self, stream: bool = False, follow: bool = False, stdout: bool = True, stderr: bool = True) -> Iterable[bytes]:
        chunks = self._stdout if stdout else self._stderr
        for chunk in chunks:
            yield chunk
        if follow:
            self._exited.wait(10)

    def wait(self) -> Dict:
        self._exited.wait(10)
        return {"StatusCode": self.exit_code if self.exit_code is not None else -1}

    def exit(self, code: int) -> None:
        if self.exit_code is None:
            self.exit_code = code
            self.status = "exited"
        self._exited.set()

    def stop(self, timeout: int = 10) -> None:
        if self.client.fail_stop:
            raise APIError("stop failed")
        self.stopped = True
        self.exit(137)

    def remove(self, force: bool = False) -> None:
        if self.client.fail_remove:
            raise APIError("remove failed")
        if self.removed:
            raise NotFound(f"No such container: {self.id}")
        self.removed = True
        self.client.containers.items.pop(self.id, None)
        self.exit(137)


class FakeContainers:
    def __init__(self, client: "FakeDockerClient"):
        self.client = client
        self.items: Dict[str, FakeContainer] = {}
        self.created: List[FakeContainer] = []

    def run(self, image: str, name: str, labels: Dict[str, str], **kwargs) -> FakeContainer:
        if self.client.run_delay:
            time.sleep(self.client.run_delay)
        if self.client.fail_run is not None:
            raise self.client.fail_run
        container = FakeContainer(self.client, name, labels, dict(kwargs, image=image))
        self.items[container.id] = container
        self.created.append(container)
        return container

    def get(self, container_id: str) -> FakeContainer:
        for container in self.items.values():
            if container_id in (container.id, container.name):
                return container
        raise NotFound(f"No such container: {container_id}")

    def list(self, all: bool = False, filters: Optional[Dict] = None) -> List[FakeContainer]:
        containers = list(self.items.values())
        label = (filters or {}).get("label")
        if label:
            key, _, value = label.partition("=")
            containers = [c for c in containers if c.labels.get(key) == value]
        return containers


class FakeImages:
    def __init__(self):
        self.available = set()
        self.pulled: List[str] = []

    def get(self, name: str) -> str:
        if name not in self.available:
            raise ImageNotFound(f"No such image: {name}")
        return name

    def pull(self, name: str) -> str:
        self.pulled.append(name)
        self.available.add(name)
        return name


class FakeDockerClient:
    """Implements the subset of ``docker.DockerClient`` used by the container executor."""

    def __init__(self):
        self.containers = FakeContainers(self)
        self.images = FakeImages()
        self.stdout_chunks: List[bytes] = []
        self.stderr_chunks: List[bytes] = []
        self.fail_run: Optional[Exception] = None
        self.run_delay = 0.0
        self.fail_stop = False
        self.fail_remove = False

    def adopt(self, name: str, labels: Dict[str, str]) -> FakeContainer:
        """Add a container that was not launched through the executor."""
        container = FakeContainer(self, name, labels, {})
        self.containers.items[container.id] = container
        return container

    def exit_all(self) -> None:
        for container in list(self.containers.created):
            container.exit(0)


# =============================================================================
# FIXTURES
# =============================================================================

@pytest.fixture
def workspaces_dir(tmp_path: Path) -> Path:
    """Workspaces W1 and W2 with a page, a script and server entry files."""
    base = tmp_path / "workspaces"
    for workspace_id in ("W1", "W2"):
        root = base / workspace_id
        (root / "assets").mkdir(parents=True)
        (root / "index.html").write_text("<h1>hello</h1>")
        (root / "assets" / "site.css").write_text("body { color: red; }")
        (root / "assets" / "index.html").write_text("<p>assets</p>")
        (root / "script.js").write_text('console.log("hi")')
        (root / "server.php").write_text("<?php echo 'hi';")
        (root / "server.js").write_text("require('http').createServer().listen(process.env.PORT)")
        (root / "app.py").write_text("print('hi')")
        (root / "notes.txt").write_text("notes")
    return base


@pytest.fixture
def fake_docker() -> Generator[FakeDockerClient, None, None]:
    client = FakeDockerClient()
    try:
        yield client
    finally:
        client.exit_all()


@pytest.fixture
def config(workspaces_dir: Path) -> Config:
    return Config(
        workspaces_path=str(workspaces_dir),
        port_range_start=9100,
        port_range_end=9110,
        probe_ports=False,
        script_timeout_ms=2000,
        stop_grace_seconds=1,
        reaper_interval_seconds=0.05,
        reconcile_interval_seconds=60,
        public_host="localhost",
    )


@pytest.fixture
def runner(config: Config, fake_docker: FakeDockerClient) -> Runner:
    return Runner(config, docker_client=fake_docker)


async def next_event(subscription: Subscription, timeout: float = 2.0) -> LogEvent:
    """Wait for the next event on a subscription."""
    return await asyncio.wait_for(subscription.get(), timeout)


async def wait_until(predicate, timeout: float = 3.0, interval: float = 0.01) -> None:
    """Poll ``predicate`` on the event loop until it is true."""
    deadline = asyncio.get_running_loop().time() + timeout
    while not predicate():
        if asyncio.get_running_loop().time() > deadline:
            raise AssertionError("condition not met in time")
        await asyncio.sleep(interval)


def receive_json_within(websocket, timeout: float = 10.0) -> Any:
    """``websocket.receive_json()`` that fails instead of hanging."""
    box: Dict[str, Any] = {}

    def receive() -> None:
        try:
            box["value"] = websocket.receive_json()
        except Exception as e:
            box["error"] = e

    thread = threading.Thread(target=receive, daemon=True)
    thread.start()
    thread.join(timeout)
    if thread.is_alive():
        raise AssertionError("no WebSocket message in time")
    if "error" in box:
        raise box["error"]
    return box["value"]
