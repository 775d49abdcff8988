"""
Sandbox module for running and previewing workspace files.

Components:
- strategy: Pick static preview, sandboxed script or container per extension
- static: Serve workspace files for preview (no process)
- executor: Run scripts in an embedded JavaScript engine (immediate execution)
- container: Host runtimes in Docker containers with exposed ports (long-running)
- ports: Exclusive host-port leases for containers
- relay: Fan out output and lifecycle events to subscribers
- registry: Track the active execution of each workspace with deadlines
"""

from runbox.sandbox.cancel import CancelToken
from runbox.sandbox.container import ContainerExecutor, ContainerHandle, runtime_for
from runbox.sandbox.executor import SandboxExecutor, SandboxResult, ScriptOptions
from runbox.sandbox.ports import PortLease, PortPool
from runbox.sandbox.registry import Execution, SessionRegistry
from runbox.sandbox.relay import ExecutionChannel, LogRelay, Subscription
from runbox.sandbox.static import PreviewServer
from runbox.sandbox.strategy import select_strategy

__all__ = [
    # Strategy
    "select_strategy",
    # Static
    "PreviewServer",
    # Executor
    "SandboxExecutor",
    "SandboxResult",
    "ScriptOptions",
    "CancelToken",
    # Container
    "ContainerExecutor",
    "ContainerHandle",
    "runtime_for",
    "PortPool",
    "PortLease",
    # Relay
    "LogRelay",
    "Subscription",
    "ExecutionChannel",
    # Registry
    "Execution",
    "SessionRegistry",
]
