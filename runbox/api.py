"""
HTTP and WebSocket API for running and previewing workspace files.

Provides run/stop/status/output per workspace, static previews, network
profiles and a real-time event stream via WebSocket.
"""

import argparse
import asyncio
import logging
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import Depends, FastAPI, Request, WebSocket, WebSocketDisconnect
from fastapi.responses import JSONResponse, PlainTextResponse, Response

from runbox.config import Config, ConfigError, get_config, setup_logging
from runbox.errors import NotFound, PathTraversalError
from runbox.network import simulate
from runbox.runner import Runner
from runbox.schemas import ExecutionStatus, NetworkProfile, RunRequest, RunResult


logger = logging.getLogger(__name__)


def get_runner(request: Request) -> Runner:
    return request.app.state.runner


async def stop_event_pump(task: asyncio.Task, workspace_id: str) -> None:
    """Cancel an event pump and log the error it ended with, if any."""
    task.cancel()
    try:
        await task
    except asyncio.CancelledError:
        pass
    except Exception:
        logger.exception("Event stream for %s failed", workspace_id)


def create_app(config: Optional[Config] = None, runner: Optional[Runner] = None) -> FastAPI:
    """Create a configured FastAPI app around a runner."""
    runner = runner or Runner(config)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """Start the runner on startup and release everything on shutdown."""
        await runner.start()
        try:
            yield
        finally:
            await runner.shutdown()

    app = FastAPI(title="runbox", lifespan=lifespan)
    app.state.runner = runner

    @app.exception_handler(NotFound)
    @app.exception_handler(PathTraversalError)
    async def not_found(request: Request, exc: Exception):
        if isinstance(exc, PathTraversalError):
            logger.warning("Rejected path outside workspace: %s", request.url.path)
        return JSONResponse({"error": "Not found"}, status_code=404)

    @app.get("/", response_class=PlainTextResponse)
    async def index():
        return "runbox is running"

    # -------------------------------------------------------------------------
    # Executions
    # -------------------------------------------------------------------------

    @app.get("/workspaces")
    async def list_workspaces(runner: Runner = Depends(get_runner)):
        return runner.workspaces.list()

    @app.post("/workspaces/{workspace_id}/run", response_model=RunResult)
    async def run(workspace_id: str, body: RunRequest, runner: Runner = Depends(get_runner)):
        return await runner.run(workspace_id, body.file, body.options)

    @app.post("/workspaces/{workspace_id}/stop")
    async def stop(workspace_id: str, runner: Runner = Depends(get_runner)):
        return {"ok": await runner.stop(workspace_id)}

    @app.get("/workspaces/{workspace_id}/status", response_model=ExecutionStatus)
    async def status(workspace_id: str, runner: Runner = Depends(get_runner)):
        return runner.status(workspace_id)

    @app.get("/workspaces/{workspace_id}/output", response_class=PlainTextResponse)
    async def output(workspace_id: str, runner: Runner = Depends(get_runner)):
        return runner.output(workspace_id)

    # -------------------------------------------------------------------------
    # Network profiles
    # -------------------------------------------------------------------------

    @app.get("/workspaces/{workspace_id}/network", response_model=NetworkProfile)
    async def get_network(workspace_id: str, runner: Runner = Depends(get_runner)):
        return runner.network_profile(workspace_id) or NetworkProfile()

    @app.put("/workspaces/{workspace_id}/network", response_model=NetworkProfile)
    async def put_network(workspace_id: str, profile: NetworkProfile, runner: Runner = Depends(get_runner)):
        return runner.set_network_profile(workspace_id, profile)

    @app.delete("/workspaces/{workspace_id}/network")
    async def delete_network(workspace_id: str, runner: Runner = Depends(get_runner)):
        runner.clear_network_profile(workspace_id)
        return {"ok": True}

    # -------------------------------------------------------------------------
    # Preview
    # -------------------------------------------------------------------------

    @app.get("/preview/{workspace_id}")
    @app.get("/preview/{workspace_id}/{path:path}")
    async def preview(workspace_id: str, path: str = "", runner: Runner = Depends(get_runner)):
        if not await simulate(runner.network_profile(workspace_id)):
            return JSONResponse({"ok": False, "error": "Simulated network failure"}, status_code=500)
        data, content_type = await asyncio.to_thread(runner.preview, workspace_id, path)
        return Response(content=data, media_type=content_type)

    # -------------------------------------------------------------------------
    # Event stream
    # -------------------------------------------------------------------------

    @app.websocket("/workspaces/{workspace_id}/events")
    async def events(websocket: WebSocket, workspace_id: str):
        """WebSocket endpoint for real-time execution events."""
        subscription = websocket.app.state.runner.subscribe(workspace_id)
        await websocket.accept()
        logger.info("Event stream opened for %s", workspace_id)

        async def pump():
            async for event in subscription:
                await websocket.send_json(event.model_dump(mode="json"))

        pump_task = asyncio.create_task(pump())
        try:
            while True:
                await websocket.receive_text()
        except WebSocketDisconnect:
            logger.info("Event stream closed for %s", workspace_id)
        finally:
            subscription.close()
            await stop_event_pump(pump_task, workspace_id)

    return app


def main():
    """Run the API server."""
    import uvicorn

    parser = argparse.ArgumentParser(description="runbox API server")
    parser.add_argument("--host", type=str, default=None, help="Host to bind to (default: RUNBOX_HOST)")
    parser.add_argument("--port", type=int, default=None, help="Port to bind to (default: RUNBOX_PORT)")
    parser.add_argument("--reload", action="store_true", help="Enable auto-reload for development")
    args = parser.parse_args()

    try:
        config = get_config()
    except ConfigError as e:
        setup_logging()
        logger.error("%s", e)
        raise SystemExit(1)

    setup_logging(config.log_level)
    host = args.host or config.host
    port = args.port or config.port

    if args.reload:
        uvicorn.run("runbox.api:create_app", factory=True, host=host, port=port, reload=True)
    else:
        uvicorn.run(create_app(config), host=host, port=port)


if __name__ == "__main__":
    main()
