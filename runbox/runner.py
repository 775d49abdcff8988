"""
Runner - composes the execution components from a configuration.

Provides the single entry point used by the HTTP API: one owned instance of
the workspace store, port pool, log relay, executors and session registry.
"""

import logging
from typing import Optional, Tuple

from runbox.config import Config, get_config
from runbox.network import NetworkProfiles
from runbox.sandbox.container import ContainerExecutor
from runbox.sandbox.executor import SandboxExecutor
from runbox.sandbox.ports import PortPool
from runbox.sandbox.registry import SessionRegistry
from runbox.sandbox.relay import LogRelay, Subscription
from runbox.sandbox.static import PreviewServer
from runbox.schemas import ExecutionStatus, NetworkProfile, RunOptions, RunResult
from runbox.workspaces import WorkspaceStore


logger = logging.getLogger(__name__)


class Runner:
    """
    Owns every component for the lifetime of the process.

    Args:
        config: Settings; defaults to the process configuration
        docker_client: Docker client to use instead of ``docker.from_env()``
    """

    def __init__(self, config: Optional[Config] = None, docker_client=None):
        self.config = config or get_config()

        self.workspaces = WorkspaceStore(self.config.workspaces_path)
        self.relay = LogRelay()
        self.network = NetworkProfiles()
        self.ports = PortPool(
            self.config.port_range_start,
            self.config.port_range_end,
            probe=self.config.probe_ports,
        )
        self.preview_server = PreviewServer(self.workspaces)
        self.sandbox = SandboxExecutor()
        self.containers = ContainerExecutor(
            self.ports,
            client=docker_client,
            public_host=self.config.public_host,
            stop_grace_seconds=self.config.stop_grace_seconds,
            network_profiles=self.network,
        )
        self.registry = SessionRegistry(
            self.workspaces,
            self.relay,
            self.sandbox,
            self.containers,
            js_strategy=self.config.js_strategy,
            script_timeout_ms=self.config.script_timeout_ms,
            script_memory_mb=self.config.script_memory_mb,
            container_ttl_minutes=self.config.container_ttl_minutes,
            output_limit=self.config.output_limit,
            reaper_interval_seconds=self.config.reaper_interval_seconds,
            reconcile_interval_seconds=self.config.reconcile_interval_seconds,
        )

    async def start(self) -> None:
        logger.info(
            "Runner starting (workspaces=%s, ports=%d-%d, js=%s)",
            self.config.workspaces_path,
            self.config.port_range_start,
            self.config.port_range_end - 1,
            self.config.js_strategy,
        )
        self.config.workspaces_path.mkdir(parents=True, exist_ok=True)
        await self.registry.start()

    async def shutdown(self) -> None:
        logger.info("Runner shutting down")
        await self.registry.shutdown()

    # -------------------------------------------------------------------------
    # Executions
    # -------------------------------------------------------------------------

    async def run(self, workspace_id: str, file: str = "index.html", options: Optional[RunOptions] = None) -> RunResult:
        return await self.registry.run(workspace_id, file, options)

    async def stop(self, workspace_id: str) -> bool:
        return await self.registry.stop(workspace_id)

    def status(self, workspace_id: str) -> ExecutionStatus:
        return self.registry.status(workspace_id)

    def output(self, workspace_id: str) -> str:
        return self.registry.output(workspace_id)

    def subscribe(self, workspace_id: str) -> Subscription:
        return self.relay.subscribe(workspace_id)

    # -------------------------------------------------------------------------
    # Preview and network profiles
    # -------------------------------------------------------------------------

    def preview(self, workspace_id: str, relative_path: str = "") -> Tuple[bytes, str]:
        return self.preview_server.serve(workspace_id, relative_path)

    def network_profile(self, workspace_id: str) -> Optional[NetworkProfile]:
        return self.network.get(workspace_id)

    def set_network_profile(self, workspace_id: str, profile: NetworkProfile) -> NetworkProfile:
        self.network.set(workspace_id, profile)
        logger.info(
            "Network profile for %s: latency=%dms failure_rate=%.2f",
            workspace_id, profile.latency_ms, profile.failure_rate,
        )
        return profile

    def clear_network_profile(self, workspace_id: str) -> None:
        self.network.clear(workspace_id)
