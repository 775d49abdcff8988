"""
Pydantic schemas for run requests, results, status and log events.
"""

from enum import Enum
from typing import Literal, Optional

from pydantic import BaseModel, Field


class Strategy(str, Enum):
    """How a file is executed."""
    STATIC = "static"
    SANDBOXED_SCRIPT = "sandboxed-script"
    CONTAINER = "container"


class ExecutionState(str, Enum):
    """Execution lifecycle. ``idle`` is reported when no execution exists."""
    IDLE = "idle"
    STARTING = "starting"
    RUNNING = "running"
    STOPPED = "stopped"
    CRASHED = "crashed"
    TIMED_OUT = "timedOut"
    CLEANED = "cleaned"


ACTIVE_STATES = frozenset({ExecutionState.STARTING, ExecutionState.RUNNING})
TERMINAL_STATES = frozenset({ExecutionState.STOPPED, ExecutionState.CRASHED, ExecutionState.TIMED_OUT})


class LogEvent(BaseModel):
    """A single line of output or a lifecycle notification for an execution."""
    execution_id: str = Field(..., description="Execution that produced the event")
    workspace_id: str = Field(..., description="Workspace the execution belongs to")
    stream: Literal["stdout", "stderr", "lifecycle"] = Field(..., description="Event stream")
    kind: str = Field(..., description="log, error, preview, close, crashed or timedOut")
    text: str = Field(default="", description="Line of output or lifecycle detail")
    sequence: int = Field(..., ge=0, description="Per-execution sequence number, gap-free from 0")
    timestamp: float = Field(..., description="Unix time the event was produced")
    level: Optional[str] = Field(None, description="Severity marker, set on stderr lines")
    code: Optional[int] = Field(None, description="Exit or status code for terminal events")


class RunOptions(BaseModel):
    """Per-run overrides. Unset values fall back to configuration."""
    timeout_ms: Optional[int] = Field(None, gt=0, description="Execution deadline in milliseconds")
    memory_limit_mb: Optional[int] = Field(None, gt=0, description="Sandbox interpreter memory ceiling")
    mode: Literal["shared", "dedicated"] = Field("shared", description="Container isolation mode")
    cpu_limit: Optional[float] = Field(None, gt=0, description="Container CPU ceiling (cores)")
    memory_limit: Optional[str] = Field(None, description="Container memory ceiling, e.g. '512m'")


class RunRequest(BaseModel):
    """Body of a run request."""
    file: str = Field("index.html", description="Workspace-relative path of the file to run")
    options: RunOptions = Field(default_factory=RunOptions)


class RunResult(BaseModel):
    """Outcome of accepting (and, for scripts, completing) a run request."""
    workspace_id: str
    execution_id: Optional[str] = None
    strategy: Optional[Strategy] = None
    state: Optional[ExecutionState] = None
    success: bool = False
    preview_url: Optional[str] = None
    port: Optional[int] = None
    stdout: Optional[str] = None
    error: Optional[str] = None
    error_code: Optional[
        Literal["unsupported_type", "launch_failed", "crashed", "timed_out", "stopped"]
    ] = None
    message: Optional[str] = None


class ExecutionStatus(BaseModel):
    """Snapshot of the current, or most recent, execution of a workspace."""
    workspace_id: str
    execution_id: Optional[str] = None
    strategy: Optional[Strategy] = None
    file: Optional[str] = None
    state: ExecutionState = ExecutionState.IDLE
    outcome: Optional[ExecutionState] = None
    started_at: Optional[float] = None
    deadline: Optional[float] = None
    time_remaining: Optional[int] = None
    port: Optional[int] = None
    preview_url: Optional[str] = None
    exit_code: Optional[int] = None
    error: Optional[str] = None
    output: str = ""
    output_truncated: bool = False


class NetworkProfile(BaseModel):
    """Artificial network conditions applied to a workspace's preview traffic."""
    latency_ms: int = Field(0, ge=0, description="Delay added before serving preview traffic")
    failure_rate: float = Field(0.0, ge=0.0, le=1.0, description="Probability of a simulated failure")

    @property
    def is_active(self) -> bool:
        return self.latency_ms > 0 or self.failure_rate > 0
