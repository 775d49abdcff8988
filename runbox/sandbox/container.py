"""
Container Executor - Run workspace entry files in isolated Docker containers.

This module handles:
- Selecting a runtime image from the entry file's extension (closed table)
- Leasing a host port and publishing the runtime's port on it
- Mounting the workspace (read-only for servers that only serve files)
- Applying CPU/memory ceilings from the run mode
- Following container stdout/stderr line by line into the execution channel
- Forced termination that always returns the port to the pool

Supported Runtimes:
- Static files: nginx:alpine
- PHP: php:8.2-apache
- Node.js: node:18-slim
- Python: python:3.11-slim
"""

import asyncio
import codecs
import functools
import logging
import shlex
import threading
import time
from dataclasses import dataclass, field
from pathlib import Path, PurePosixPath
from typing import Any, Dict, List, Optional, Set

import docker
from docker.errors import APIError, ImageNotFound
from docker.errors import NotFound as ContainerNotFound

from runbox.errors import LaunchFailed
from runbox.network import NetworkProfiles
from runbox.sandbox.ports import PortLease, PortPool
from runbox.sandbox.relay import ExecutionChannel
from runbox.schemas import RunOptions


logger = logging.getLogger(__name__)


# =============================================================================
# CONSTANTS
# =============================================================================

@dataclass(frozen=True)
class RuntimeImage:
    """How to run one kind of entry file."""
    image: str
    internal_port: int
    mount_path: str
    read_only: bool
    command: Optional[str] = None  # formatted with {entry}; None keeps the image default
    environment: Dict[str, str] = field(default_factory=dict)


_STATIC = RuntimeImage("nginx:alpine", 80, "/usr/share/nginx/html", read_only=True)
_NODE = RuntimeImage(
    "node:18-slim",
    3000,
    "/app",
    read_only=False,
    command="if [ -f package.json ]; then npm install --silent; fi && node {entry}",
    environment={"NODE_ENV": "production"},
)

# Runtime images for each entry extension
RUNTIME_IMAGES: Dict[str, RuntimeImage] = {
    ".html": _STATIC,
    ".htm": _STATIC,
    ".php": RuntimeImage("php:8.2-apache", 80, "/var/www/html", read_only=True),
    ".js": _NODE,
    ".mjs": _NODE,
    ".py": RuntimeImage(
        "python:3.11-slim",
        8000,
        "/app",
        read_only=False,
        command="if [ -f requirements.txt ]; then pip install -q -r requirements.txt; fi && python {entry}",
        environment={"PYTHONUNBUFFERED": "1"},
    ),
}


@dataclass(frozen=True)
class ContainerLimits:
    cpu: float
    memory: str


# Resource limits per run mode
MODE_LIMITS: Dict[str, ContainerLimits] = {
    "shared": ContainerLimits(cpu=0.5, memory="256m"),
    "dedicated": ContainerLimits(cpu=1.0, memory="1g"),
}

CPU_PERIOD = 100000

LABEL_MANAGED = "runbox.managed"
LABEL_WORKSPACE = "runbox.workspace"
LABEL_EXECUTION = "runbox.execution"

# Extra time on top of the stop grace before giving up on the Docker API
HARD_DEADLINE_EXTRA = 5.0


def runtime_for(entry_file: str) -> Optional[RuntimeImage]:
    """Get the runtime image for an entry file, or None if unsupported."""
    return RUNTIME_IMAGES.get(PurePosixPath(entry_file).suffix.lower())


def limits_for(options: Optional[RunOptions]) -> ContainerLimits:
    """Resolve CPU/memory ceilings from the run mode plus explicit overrides."""
    options = options or RunOptions()
    base = MODE_LIMITS[options.mode]
    return ContainerLimits(
        cpu=options.cpu_limit or base.cpu,
        memory=options.memory_limit or base.memory,
    )


# =============================================================================
# DATA CLASSES
# =============================================================================

@dataclass
class ContainerHandle:
    """A launched container and the port lease it holds."""
    execution_id: str
    workspace_id: str
    container_id: str
    container_name: str
    image: str
    port: int
    preview_url: str
    lease: PortLease
    started_at: float
    container: Any = field(default=None, repr=False)
    exited: Optional["asyncio.Future[int]"] = field(default=None, repr=False)


# =============================================================================
# CONTAINER EXECUTOR
# =============================================================================

class ContainerExecutor:
    """
    Launches and terminates preview containers.

    Docker SDK calls are blocking and run in worker threads. Log following and
    exit waiting run in daemon threads for the lifetime of each container.
    """

    def __init__(
        self,
        ports: PortPool,
        *,
        client: Optional["docker.DockerClient"] = None,
        public_host: str = "localhost",
        stop_grace_seconds: float = 5.0,
        network_profiles: Optional[NetworkProfiles] = None,
    ):
        self.ports = ports
        self.public_host = public_host
        self.stop_grace_seconds = stop_grace_seconds
        self.network_profiles = network_profiles
        self._client = client
        self._handles: Dict[str, ContainerHandle] = {}
        self._launching: Set[str] = set()
        self._abandoned: Set[str] = set()

    @property
    def client(self) -> "docker.DockerClient":
        """Lazy initialization of Docker client."""
        if self._client is None:
            self._client = docker.from_env()
        return self._client

    def handle(self, execution_id: str) -> Optional[ContainerHandle]:
        return self._handles.get(execution_id)

    def handles(self) -> List[ContainerHandle]:
        return list(self._handles.values())

    async def launch(
        self,
        execution_id: str,
        workspace_id: str,
        root: Path,
        entry_file: str,
        options: Optional[RunOptions] = None,
        channel: Optional[ExecutionChannel] = None,
    ) -> ContainerHandle:
        """
        Start a container serving ``entry_file`` from the workspace.

        Returns once the container has been created; the service inside may
        still be booting.

        Raises:
            LaunchFailed: If no runtime matches, no port is free, or Docker
                fails. The port lease is released in every failure case.
        """
        runtime = runtime_for(entry_file)
        if runtime is None:
            raise LaunchFailed(f"No container runtime for {entry_file}")

        limits = limits_for(options)
        environment = self.network_profiles.environment(workspace_id) if self.network_profiles else {}

        lease = self.ports.acquire(execution_id)
        self._launching.add(execution_id)
        creating = asyncio.ensure_future(asyncio.to_thread(
            self._create_container,
            execution_id,
            workspace_id,
            Path(root),
            entry_file,
            runtime,
            limits,
            lease.port,
            environment,
        ))
        try:
            try:
                container = await asyncio.shield(creating)
            except asyncio.CancelledError:
                # The worker thread keeps going; discard whatever it creates
                creating.add_done_callback(functools.partial(self._discard_late, lease))
                raise
            except Exception as e:
                self.ports.release(lease)
                error_msg = str(e)
                logger.error("Container launch failed for %s/%s: %s", workspace_id, entry_file, error_msg)
                if "port is already allocated" in error_msg.lower():
                    raise LaunchFailed(f"Port {lease.port} is already in use.", diagnostic=error_msg) from e
                raise LaunchFailed(f"Failed to start container: {error_msg[:200]}", diagnostic=error_msg) from e

            if execution_id in self._abandoned:
                logger.info("Execution %s ended while its container was starting", execution_id)
                await asyncio.to_thread(self._discard_container, container, lease)
                raise LaunchFailed("Execution ended before its container started")

            preview_url = f"http://{self.public_host}:{lease.port}/{entry_file.lstrip('/')}"
            handle = ContainerHandle(
                execution_id=execution_id,
                workspace_id=workspace_id,
                container_id=container.id,
                container_name=getattr(container, "name", "") or "",
                image=runtime.image,
                port=lease.port,
                preview_url=preview_url,
                lease=lease,
                started_at=time.time(),
                container=container,
                exited=asyncio.get_running_loop().create_future(),
            )
            self._handles[execution_id] = handle
        finally:
            self._launching.discard(execution_id)
            self._abandoned.discard(execution_id)

        logger.info(
            "Launched %s for %s (container %s, port %d, cpu %.2f, memory %s)",
            runtime.image, workspace_id, handle.container_id[:12], handle.port, limits.cpu, limits.memory,
        )

        if channel is not None:
            channel.lifecycle("preview", preview_url)
            for stream in ("stdout", "stderr"):
                threading.Thread(
                    target=self._follow,
                    args=(handle, stream, channel),
                    name=f"runbox-logs-{execution_id[:8]}-{stream}",
                    daemon=True,
                ).start()

        threading.Thread(
            target=self._wait_for_exit,
            args=(handle, asyncio.get_running_loop()),
            name=f"runbox-wait-{execution_id[:8]}",
            daemon=True,
        ).start()

        return handle

    async def wait(self, execution_id: str) -> Optional[int]:
        """Wait for a launched container to exit and return its exit code."""
        handle = self._handles.get(execution_id)
        if handle is None or handle.exited is None:
            return None
        return await asyncio.shield(handle.exited)

    async def terminate(self, execution_id: str) -> bool:
        """
        Force-stop a container and release its port.

        Idempotent: unknown or already terminated executions are a no-op. The
        port lease is released even when stopping the container fails. For a
        launch still in flight, the launch removes the container and releases
        the port once creation returns.

        Returns:
            True if a container was terminated by this call
        """
        handle = self._handles.pop(execution_id, None)
        if handle is None:
            if execution_id in self._launching:
                self._abandoned.add(execution_id)
            else:
                self.ports.release(self.ports.lease_for(execution_id))
            return False

        try:
            await asyncio.wait_for(
                asyncio.to_thread(self._destroy_container, handle),
                timeout=self.stop_grace_seconds + HARD_DEADLINE_EXTRA,
            )
        except asyncio.TimeoutError:
            logger.warning(
                "Timed out stopping container %s; releasing port %d anyway",
                handle.container_id[:12], handle.port,
            )
        except Exception as e:
            logger.warning(
                "Failed to stop container %s (%s); releasing port %d anyway",
                handle.container_id[:12], e, handle.port,
            )
        finally:
            self.ports.release(handle.lease)

        logger.info("Terminated container %s for %s", handle.container_id[:12], handle.workspace_id)
        return True

    async def reconcile(self) -> List[str]:
        """
        Remove managed containers that no live execution owns.

        Returns:
            IDs of the removed containers
        """
        live = set(self._handles) | set(self._launching)
        return await asyncio.to_thread(self._remove_orphans, live)

    # -------------------------------------------------------------------------
    # Blocking helpers (worker threads)
    # -------------------------------------------------------------------------

    def _create_container(
        self,
        execution_id: str,
        workspace_id: str,
        root: Path,
        entry_file: str,
        runtime: RuntimeImage,
        limits: ContainerLimits,
        port: int,
        environment: Dict[str, str],
    ):
        """Pull the image if needed and start the container (blocking)."""
        client = self.client

        # Pull image if needed
        try:
            client.images.get(runtime.image)
        except ImageNotFound:
            logger.info("Pulling image %s", runtime.image)
            client.images.pull(runtime.image)

        container_name = f"runbox_{workspace_id[:16]}_{port}"

        # Clean up any existing container with the same name
        self._cleanup_old_container(client, container_name)

        env_vars = {
            "HOST": "0.0.0.0",
            "PORT": str(runtime.internal_port),
            **runtime.environment,
            **environment,
        }

        kwargs: Dict[str, Any] = dict(
            image=runtime.image,
            working_dir=runtime.mount_path,
            volumes={str(root): {"bind": runtime.mount_path, "mode": "ro" if runtime.read_only else "rw"}},
            ports={f"{runtime.internal_port}/tcp": port},
            mem_limit=limits.memory,
            cpu_period=CPU_PERIOD,
            cpu_quota=int(CPU_PERIOD * limits.cpu),
            detach=True,
            remove=False,
            name=container_name,
            environment=env_vars,
            labels={
                LABEL_MANAGED: "true",
                LABEL_WORKSPACE: workspace_id,
                LABEL_EXECUTION: execution_id,
            },
        )
        if runtime.command:
            entry = PurePosixPath(entry_file.replace("\\", "/")).as_posix()
            kwargs["command"] = ["sh", "-c", runtime.command.format(entry=shlex.quote(entry))]

        return client.containers.run(**kwargs)

    @staticmethod
    def _cleanup_old_container(client, container_name: str) -> None:
        """Remove an existing container with the same name."""
        try:
            existing = client.containers.get(container_name)
        except ContainerNotFound:
            return
        logger.info("Removing stale container %s", container_name)
        existing.remove(force=True)

    def _discard_container(self, container, lease: PortLease) -> None:
        """Force-remove a container nobody owns any more and free its port (blocking)."""
        try:
            container.remove(force=True)
        except ContainerNotFound:
            pass
        except APIError as e:
            logger.warning("Failed to remove container %s: %s", container.id[:12], e)
        finally:
            self.ports.release(lease)

    def _discard_late(self, lease: PortLease, creating: "asyncio.Future") -> None:
        if creating.cancelled() or creating.exception() is not None:
            self.ports.release(lease)
            return
        threading.Thread(
            target=self._discard_container,
            args=(creating.result(), lease),
            name=f"runbox-discard-{lease.execution_id[:8]}",
            daemon=True,
        ).start()

    def _destroy_container(self, handle: ContainerHandle) -> None:
        """Stop then force-remove a container (blocking)."""
        container = handle.container
        if container is None:
            try:
                container = self.client.containers.get(handle.container_id)
            except ContainerNotFound:
                return

        try:
            container.stop(timeout=int(self.stop_grace_seconds))
        except ContainerNotFound:
            return
        except APIError as e:
            logger.warning("Graceful stop of %s failed: %s; forcing removal", handle.container_id[:12], e)

        try:
            container.remove(force=True)
        except ContainerNotFound:
            pass

    def _remove_orphans(self, live: Set[str]) -> List[str]:
        removed = []
        containers = self.client.containers.list(all=True, filters={"label": f"{LABEL_MANAGED}=true"})
        for container in containers:
            labels = getattr(container, "labels", None) or {}
            if labels.get(LABEL_EXECUTION) in live:
                continue
            try:
                container.remove(force=True)
                removed.append(container.id)
                logger.info("Reconciled orphaned container %s", container.id[:12])
            except ContainerNotFound:
                pass
            except APIError as e:
                logger.warning("Could not remove orphaned container %s: %s", container.id[:12], e)
        return removed

    def _follow(self, handle: ContainerHandle, stream: str, channel: ExecutionChannel) -> None:
        """Forward each line of one container stream to the channel (daemon thread)."""
        decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        pending = ""

        def forward(line: str) -> None:
            line = line.rstrip("\r")
            if stream == "stdout":
                channel.stdout(line)
            else:
                channel.stderr(line)

        try:
            chunks = handle.container.logs(
                stream=True,
                follow=True,
                stdout=stream == "stdout",
                stderr=stream == "stderr",
            )
            for chunk in chunks:
                pending += decoder.decode(chunk) if isinstance(chunk, bytes) else chunk
                *lines, pending = pending.split("\n")
                for line in lines:
                    forward(line)
        except Exception as e:
            # The stream breaks when the container is removed underneath it
            logger.debug("Log stream %s of %s ended: %s", stream, handle.container_id[:12], e)

        pending += decoder.decode(b"", final=True)
        if pending:
            forward(pending)

    def _wait_for_exit(self, handle: ContainerHandle, loop: asyncio.AbstractEventLoop) -> None:
        """Block until the container exits and resolve ``handle.exited`` (daemon thread)."""
        try:
            result = handle.container.wait()
            exit_code = int(result.get("StatusCode", -1))
        except Exception as e:
            logger.debug("Waiting on %s failed: %s", handle.container_id[:12], e)
            exit_code = -1

        def resolve() -> None:
            if handle.exited is not None and not handle.exited.done():
                handle.exited.set_result(exit_code)

        try:
            loop.call_soon_threadsafe(resolve)
        except RuntimeError:
            logger.debug("Event loop closed before %s exited", handle.container_id[:12])
