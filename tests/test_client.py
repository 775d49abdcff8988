"""Tests for the HTTP client against the API app."""

from __future__ import annotations

from typing import Generator

import httpx
import pytest
from fastapi.testclient import TestClient

from runbox.api import create_app
from runbox.client import RunnerClient, RunnerClientError
from runbox.errors import NotFound
from runbox.runner import Runner
from runbox.schemas import ExecutionState, NetworkProfile, RunOptions, Strategy


@pytest.fixture
def client(runner: Runner) -> Generator[RunnerClient, None, None]:
    with TestClient(create_app(runner=runner)) as http:
        yield RunnerClient("http://testserver", http=http)


class TestRunnerClient:
    """Tests for RunnerClient."""

    def test_health_and_workspaces(self, client: RunnerClient) -> None:
        assert client.health()
        assert client.workspaces() == ["W1", "W2"]

    def test_run_script(self, client: RunnerClient) -> None:
        result = client.run("W1", "script.js", RunOptions(timeout_ms=1000))
        assert result.success
        assert result.strategy == Strategy.SANDBOXED_SCRIPT
        assert result.stdout == "hi\n"
        assert client.output("W1") == "hi\n"

    def test_run_container_status_and_stop(self, client: RunnerClient) -> None:
        result = client.run("W1", "server.php")
        assert result.port is not None

        status = client.status("W1")
        assert status.state == ExecutionState.RUNNING
        assert status.time_remaining is not None

        assert client.stop("W1") is True
        assert client.status("W1").outcome == ExecutionState.STOPPED

    def test_preview(self, client: RunnerClient) -> None:
        data, content_type = client.preview("W1", "index.html")
        assert data == b"<h1>hello</h1>"
        assert content_type.startswith("text/html")

    def test_not_found(self, client: RunnerClient) -> None:
        with pytest.raises(NotFound):
            client.preview("W1", "missing.html")
        with pytest.raises(NotFound):
            client.run("W1", "missing.html")

    def test_network_profile(self, client: RunnerClient) -> None:
        client.set_network_profile("W1", NetworkProfile(latency_ms=10, failure_rate=0.0))
        assert client.network_profile("W1").latency_ms == 10
        client.clear_network_profile("W1")
        assert client.network_profile("W1") == NetworkProfile()

    def test_server_error_is_wrapped(self, client: RunnerClient) -> None:
        client.set_network_profile("W1", NetworkProfile(failure_rate=1.0))
        with pytest.raises(RunnerClientError, match="Simulated network failure"):
            client.preview("W1", "index.html")


class TestUnreachableServer:
    """Tests for network errors."""

    def test_connection_error_is_wrapped(self) -> None:
        def refuse(request: httpx.Request) -> httpx.Response:
            raise httpx.ConnectError("connection refused", request=request)

        http = httpx.Client(base_url="http://runbox.invalid", transport=httpx.MockTransport(refuse))
        with RunnerClient("http://runbox.invalid", http=http) as client:
            assert not client.health()
            with pytest.raises(RunnerClientError):
                client.status("W1")
