"""Tests for the HTTP and WebSocket API."""

from __future__ import annotations

import asyncio
import logging
from typing import Generator

import pytest
from fastapi.testclient import TestClient

from runbox.api import create_app, stop_event_pump
from runbox.runner import Runner

from conftest import receive_json_within


@pytest.fixture
def client(runner: Runner) -> Generator[TestClient, None, None]:
    with TestClient(create_app(runner=runner)) as client:
        yield client


class TestRunEndpoints:
    """Tests for run/stop/status/output."""

    def test_health(self, client: TestClient) -> None:
        response = client.get("/")
        assert response.status_code == 200
        assert "running" in response.text

    def test_list_workspaces(self, client: TestClient) -> None:
        assert client.get("/workspaces").json() == ["W1", "W2"]

    def test_run_static(self, client: TestClient) -> None:
        response = client.post("/workspaces/W1/run", json={"file": "index.html"})
        assert response.status_code == 200
        body = response.json()
        assert body["strategy"] == "static"
        assert body["preview_url"] == "/preview/W1/index.html"
        assert body["success"] is True

    def test_run_defaults_to_index(self, client: TestClient) -> None:
        body = client.post("/workspaces/W1/run", json={}).json()
        assert body["preview_url"] == "/preview/W1/index.html"

    def test_run_script(self, client: TestClient) -> None:
        body = client.post("/workspaces/W1/run", json={"file": "script.js"}).json()
        assert body["success"] is True
        assert body["stdout"] == "hi\n"
        assert client.get("/workspaces/W1/output").text == "hi\n"

    def test_run_container_then_stop(self, client: TestClient, runner: Runner) -> None:
        body = client.post("/workspaces/W1/run", json={"file": "server.php", "options": {"mode": "dedicated"}}).json()
        assert body["strategy"] == "container"
        assert body["preview_url"] == f"http://localhost:{body['port']}/server.php"

        status = client.get("/workspaces/W1/status").json()
        assert status["state"] == "running"
        assert status["port"] == body["port"]

        assert client.post("/workspaces/W1/stop").json() == {"ok": True}
        status = client.get("/workspaces/W1/status").json()
        assert status["state"] == "cleaned"
        assert status["outcome"] == "stopped"
        assert runner.ports.leases() == []

    def test_unsupported_type(self, client: TestClient) -> None:
        body = client.post("/workspaces/W1/run", json={"file": "notes.txt"}).json()
        assert body["success"] is False
        assert body["error_code"] == "unsupported_type"

    def test_missing_file_is_404(self, client: TestClient) -> None:
        response = client.post("/workspaces/W1/run", json={"file": "missing.html"})
        assert response.status_code == 404
        assert response.json() == {"error": "Not found"}

    def test_invalid_options_are_rejected(self, client: TestClient) -> None:
        response = client.post("/workspaces/W1/run", json={"file": "index.html", "options": {"mode": "turbo"}})
        assert response.status_code == 422

    def test_status_of_idle_workspace(self, client: TestClient) -> None:
        body = client.get("/workspaces/W2/status").json()
        assert body["state"] == "idle"
        assert body["execution_id"] is None

    def test_stop_idle_workspace(self, client: TestClient) -> None:
        assert client.post("/workspaces/W2/stop").json() == {"ok": True}


class TestPreviewEndpoints:
    """Tests for static previews."""

    def test_preview_file(self, client: TestClient) -> None:
        response = client.get("/preview/W1/assets/site.css")
        assert response.status_code == 200
        assert response.text == "body { color: red; }"
        assert response.headers["content-type"].startswith("text/css")

    def test_preview_root_serves_index(self, client: TestClient) -> None:
        response = client.get("/preview/W1")
        assert response.status_code == 200
        assert response.text == "<h1>hello</h1>"
        assert response.headers["content-type"].startswith("text/html")

    def test_missing_file_is_404(self, client: TestClient) -> None:
        response = client.get("/preview/W1/missing.html")
        assert response.status_code == 404

    def test_unknown_workspace_is_404(self, client: TestClient) -> None:
        assert client.get("/preview/nope/index.html").status_code == 404

    @pytest.mark.parametrize("path", ["..%2F..%2Fetc%2Fpasswd", "assets%2F..%2F..%2FW2%2Findex.html", "%2Fetc%2Fpasswd"])
    def test_traversal_is_404_not_contents(self, client: TestClient, path: str) -> None:
        response = client.get(f"/preview/W1/{path}")
        assert response.status_code == 404
        assert response.json() == {"error": "Not found"}

    def test_simulated_network_failure(self, client: TestClient) -> None:
        client.put("/workspaces/W1/network", json={"latency_ms": 0, "failure_rate": 1.0})
        response = client.get("/preview/W1/index.html")
        assert response.status_code == 500
        assert response.json() == {"ok": False, "error": "Simulated network failure"}

        client.delete("/workspaces/W1/network")
        assert client.get("/preview/W1/index.html").status_code == 200


class TestNetworkEndpoints:
    """Tests for network profiles."""

    def test_default_profile(self, client: TestClient) -> None:
        assert client.get("/workspaces/W1/network").json() == {"latency_ms": 0, "failure_rate": 0.0}

    def test_set_and_clear_profile(self, client: TestClient) -> None:
        response = client.put("/workspaces/W1/network", json={"latency_ms": 20, "failure_rate": 0.5})
        assert response.json() == {"latency_ms": 20, "failure_rate": 0.5}
        assert client.get("/workspaces/W1/network").json()["latency_ms"] == 20

        assert client.delete("/workspaces/W1/network").json() == {"ok": True}
        assert client.get("/workspaces/W1/network").json()["latency_ms"] == 0

    def test_invalid_profile(self, client: TestClient) -> None:
        response = client.put("/workspaces/W1/network", json={"latency_ms": -1, "failure_rate": 2})
        assert response.status_code == 422


class TestEventStream:
    """Tests for the WebSocket event stream."""

    def test_script_events_are_streamed(self, client: TestClient) -> None:
        with client.websocket_connect("/workspaces/W1/events") as websocket:
            client.post("/workspaces/W1/run", json={"file": "script.js"})
            log = receive_json_within(websocket)
            close = receive_json_within(websocket)

        assert (log["stream"], log["kind"], log["text"], log["sequence"]) == ("stdout", "log", "hi", 0)
        assert (close["stream"], close["kind"], close["sequence"], close["code"]) == ("lifecycle", "close", 1, 0)
        assert log["execution_id"] == close["execution_id"]

    def test_events_are_scoped_to_workspace(self, client: TestClient) -> None:
        with client.websocket_connect("/workspaces/W2/events") as websocket:
            client.post("/workspaces/W1/run", json={"file": "script.js"})
            client.post("/workspaces/W2/run", json={"file": "index.html"})
            event = receive_json_within(websocket)

        assert event["workspace_id"] == "W2"
        assert event["kind"] == "preview"

    async def test_pump_failure_is_logged(self, caplog: pytest.LogCaptureFixture) -> None:
        async def pump():
            raise RuntimeError("socket went away")

        task = asyncio.create_task(pump())
        await asyncio.sleep(0)

        with caplog.at_level(logging.ERROR, logger="runbox.api"):
            await stop_event_pump(task, "W1")

        assert "Event stream for W1 failed" in caplog.text
        assert "socket went away" in caplog.text

    async def test_idle_pump_is_cancelled_quietly(self, caplog: pytest.LogCaptureFixture) -> None:
        task = asyncio.create_task(asyncio.Event().wait())
        await asyncio.sleep(0)

        with caplog.at_level(logging.ERROR, logger="runbox.api"):
            await stop_event_pump(task, "W1")

        assert task.cancelled()
        assert caplog.text == ""
