"""
Session Registry - Track the active execution of each workspace.

Responsibilities:
- Pick a strategy for the requested file and dispatch to its handler
- Keep at most one active execution per workspace (stop-then-start)
- Serialize start/stop per workspace without a global lock
- Enforce deadlines with a background reaper
- Release resources through a single cleanup routine for every terminal state
"""

import asyncio
import itertools
import logging
import time
import uuid
from collections import defaultdict
from dataclasses import dataclass, field
from pathlib import Path
from typing import Awaitable, Callable, Dict, List, Optional, Tuple

from runbox.errors import LaunchFailed, NotFound
from runbox.sandbox.cancel import CancelToken
from runbox.sandbox.container import ContainerExecutor
from runbox.sandbox.executor import STARTUP_TIMEOUT_SECONDS, SandboxExecutor, ScriptOptions
from runbox.sandbox.relay import ExecutionChannel, LogRelay
from runbox.sandbox.static import PreviewServer
from runbox.sandbox.strategy import UNSUPPORTED_MESSAGE, extension_of, select_strategy
from runbox.schemas import (
    ExecutionState,
    ExecutionStatus,
    RunOptions,
    RunResult,
    Strategy,
)
from runbox.utils import read_file_within, resolve_path
from runbox.workspaces import WorkspaceStore


logger = logging.getLogger(__name__)


# Lifecycle event emitted for each terminal state
TERMINAL_EVENTS = {
    ExecutionState.STOPPED: "close",
    ExecutionState.CRASHED: "crashed",
    ExecutionState.TIMED_OUT: "timedOut",
}

# Result error code for each failed terminal state
RESULT_ERROR_CODES = {
    ExecutionState.STOPPED: "stopped",
    ExecutionState.CRASHED: "crashed",
    ExecutionState.TIMED_OUT: "timed_out",
}


# =============================================================================
# DATA CLASSES
# =============================================================================

@dataclass
class Execution:
    """One run attempt of a file in a workspace."""
    id: str
    workspace_id: str
    file: str
    strategy: Strategy
    channel: ExecutionChannel
    token: CancelToken
    started_at: float
    deadline: Optional[float]
    state: ExecutionState = ExecutionState.STARTING
    outcome: Optional[ExecutionState] = None
    port: Optional[int] = None
    preview_url: Optional[str] = None
    stdout: Optional[str] = None
    exit_code: Optional[int] = None
    error: Optional[str] = None
    history: List[Tuple[int, ExecutionState]] = field(default_factory=list)
    task: Optional["asyncio.Task"] = field(default=None, repr=False)
    finished: asyncio.Event = field(default_factory=asyncio.Event, repr=False)

    @property
    def active(self) -> bool:
        return self.outcome is None

    def is_expired(self, now: Optional[float] = None) -> bool:
        """Check if the execution has exceeded its deadline."""
        if self.deadline is None:
            return False
        return (now or time.time()) > self.deadline

    def time_remaining(self) -> Optional[int]:
        """Get remaining time in seconds."""
        if self.deadline is None or not self.active:
            return None
        return max(0, int(self.deadline - time.time()))


Handler = Callable[[Execution, Path, RunOptions], Awaitable[Optional[RunResult]]]


# =============================================================================
# REGISTRY CLASS
# =============================================================================

class SessionRegistry:
    """
    Owns the execution slot of every workspace.

    Created and started by ``Runner``; all methods run on the event loop.
    """

    def __init__(
        self,
        workspaces: WorkspaceStore,
        relay: LogRelay,
        sandbox: SandboxExecutor,
        containers: ContainerExecutor,
        *,
        js_strategy: str = "sandbox",
        script_timeout_ms: int = 2000,
        script_memory_mb: int = 64,
        container_ttl_minutes: int = 15,
        output_limit: int = 64 * 1024,
        reaper_interval_seconds: float = 5.0,
        reconcile_interval_seconds: float = 60.0,
    ):
        self.workspaces = workspaces
        self.relay = relay
        self.sandbox = sandbox
        self.containers = containers
        self.js_strategy = js_strategy
        self.script_timeout_ms = script_timeout_ms
        self.script_memory_mb = script_memory_mb
        self.container_ttl_minutes = container_ttl_minutes
        self.output_limit = output_limit
        self.reaper_interval_seconds = reaper_interval_seconds
        self.reconcile_interval_seconds = reconcile_interval_seconds

        self._locks: Dict[str, asyncio.Lock] = defaultdict(asyncio.Lock)
        self._executions: Dict[str, Execution] = {}
        self._stamps = itertools.count()
        self._reaper: Optional[asyncio.Task] = None
        self._handlers: Dict[Strategy, Handler] = {
            Strategy.STATIC: self._start_static,
            Strategy.SANDBOXED_SCRIPT: self._start_script,
            Strategy.CONTAINER: self._start_container,
        }

    # -------------------------------------------------------------------------
    # Public operations
    # -------------------------------------------------------------------------

    async def run(
        self,
        workspace_id: str,
        file: str = "index.html",
        options: Optional[RunOptions] = None,
    ) -> RunResult:
        """
        Run a workspace file, stopping the workspace's active execution first.

        Static files complete immediately, containers return once launched and
        scripts return once they have settled.

        Raises:
            NotFound: If the workspace or file does not exist
            PathTraversalError: If the file path escapes the workspace
        """
        options = options or RunOptions()
        strategy = select_strategy(file, self.js_strategy)
        if strategy is None:
            return RunResult(
                workspace_id=workspace_id,
                success=False,
                error=f"Unsupported file type: {extension_of(file) or file}",
                error_code="unsupported_type",
                message=UNSUPPORTED_MESSAGE,
            )

        async with self._locks[workspace_id]:
            root = self.workspaces.root(workspace_id)
            if not resolve_path(root, file).is_file():
                raise NotFound(f"File not found: {file}")

            previous = self._executions.get(workspace_id)
            if previous is not None and previous.active:
                logger.info("Stopping %s before starting %s in %s", previous.id, file, workspace_id)
                await self._finish(previous, ExecutionState.STOPPED)

            execution = self._create_execution(workspace_id, file, strategy, options)
            self._executions[workspace_id] = execution
            logger.info("Starting %s (%s) in %s as %s", file, strategy.value, workspace_id, execution.id)

            try:
                result = await self._handlers[strategy](execution, root, options)
            except Exception as e:
                logger.exception("Executor failed to start %s in %s", file, workspace_id)
                await self._finish(execution, ExecutionState.CRASHED, error=str(e))
                return self._result(execution, error=str(e), error_code="crashed")

        if result is not None:
            return result

        await execution.finished.wait()
        return self._script_result(execution)

    async def stop(self, workspace_id: str) -> bool:
        """Stop the active execution of a workspace. Idempotent."""
        async with self._locks[workspace_id]:
            execution = self._executions.get(workspace_id)
            if execution is not None and execution.active:
                logger.info("Stop requested for %s in %s", execution.id, workspace_id)
                await self._finish(execution, ExecutionState.STOPPED)
        return True

    def current(self, workspace_id: str) -> Optional[Execution]:
        """The active or most recent execution of a workspace."""
        return self._executions.get(workspace_id)

    def active_executions(self) -> List[Execution]:
        return [e for e in self._executions.values() if e.active]

    def status(self, workspace_id: str) -> ExecutionStatus:
        """Snapshot of the workspace's active or most recent execution."""
        execution = self._executions.get(workspace_id)
        if execution is None:
            return ExecutionStatus(workspace_id=workspace_id)
        return ExecutionStatus(
            workspace_id=workspace_id,
            execution_id=execution.id,
            strategy=execution.strategy,
            file=execution.file,
            state=execution.state,
            outcome=execution.outcome,
            started_at=execution.started_at,
            deadline=execution.deadline,
            time_remaining=execution.time_remaining(),
            port=execution.port,
            preview_url=execution.preview_url,
            exit_code=execution.exit_code,
            error=execution.error,
            output=execution.channel.output(),
            output_truncated=execution.channel.truncated,
        )

    def output(self, workspace_id: str) -> str:
        """Buffered output of the workspace's active or most recent execution."""
        execution = self._executions.get(workspace_id)
        return execution.channel.output() if execution is not None else ""

    async def reap(self) -> List[str]:
        """
        Terminate executions past their deadline.

        Returns:
            IDs of the executions that timed out
        """
        now = time.time()
        expired = [e for e in self._executions.values() if e.active and self._overdue(e, now)]
        for execution in expired:
            logger.info("Execution %s in %s exceeded its deadline", execution.id, execution.workspace_id)
            await self._finish(execution, ExecutionState.TIMED_OUT)
        return [e.id for e in expired]

    async def start(self) -> None:
        """Sweep leftover containers and start the reaper."""
        await self._reconcile()
        if self._reaper is None:
            self._reaper = asyncio.create_task(self._reap_loop())

    async def shutdown(self) -> None:
        """Stop the reaper and every active execution."""
        if self._reaper is not None:
            self._reaper.cancel()
            try:
                await self._reaper
            except asyncio.CancelledError:
                pass
            self._reaper = None

        for execution in self.active_executions():
            await self._finish(execution, ExecutionState.STOPPED)

    # -------------------------------------------------------------------------
    # Strategy handlers
    # -------------------------------------------------------------------------

    async def _start_static(self, execution: Execution, root: Path, options: RunOptions) -> RunResult:
        execution.preview_url = PreviewServer.preview_url(execution.workspace_id, execution.file)
        self._transition(execution, ExecutionState.RUNNING)
        execution.channel.lifecycle("preview", execution.preview_url)
        await self._finish(execution, ExecutionState.STOPPED, exit_code=0)
        return self._result(execution, success=True)

    async def _start_script(self, execution: Execution, root: Path, options: RunOptions) -> None:
        data = await asyncio.to_thread(read_file_within, root, execution.file)
        code = data.decode("utf-8", errors="replace")
        script_options = ScriptOptions(
            timeout_ms=options.timeout_ms or self.script_timeout_ms,
            memory_limit_mb=options.memory_limit_mb or self.script_memory_mb,
        )
        self._transition(execution, ExecutionState.RUNNING)
        execution.task = asyncio.create_task(self._run_script(execution, code, script_options))
        return None

    async def _start_container(self, execution: Execution, root: Path, options: RunOptions) -> RunResult:
        try:
            handle = await self.containers.launch(
                execution.id,
                execution.workspace_id,
                root,
                execution.file,
                options,
                execution.channel,
            )
        except LaunchFailed as e:
            if not execution.active:
                # Stopped or timed out while the container was being created
                await execution.finished.wait()
                return self._result(
                    execution,
                    error=execution.error or str(e),
                    error_code=RESULT_ERROR_CODES[execution.outcome],
                )
            await self._finish(execution, ExecutionState.CRASHED, error=str(e))
            return self._result(execution, error=str(e), error_code="launch_failed", message=e.diagnostic)

        execution.port = handle.port
        execution.preview_url = handle.preview_url
        self._transition(execution, ExecutionState.RUNNING)
        execution.task = asyncio.create_task(self._watch_container(execution))
        return self._result(execution, success=True)

    # -------------------------------------------------------------------------
    # Completion
    # -------------------------------------------------------------------------

    async def _run_script(self, execution: Execution, code: str, options: ScriptOptions) -> None:
        try:
            result = await self.sandbox.execute(code, options, channel=execution.channel, token=execution.token)
        except Exception as e:
            logger.exception("Sandbox failed for %s", execution.id)
            await self._finish(execution, ExecutionState.CRASHED, exit_code=1, error=str(e))
            return

        execution.stdout = result.stdout
        if result.cancelled:
            # Whoever cancelled the token is finishing the execution
            return
        if result.timed_out:
            await self._finish(execution, ExecutionState.TIMED_OUT, error=result.error)
        elif result.success:
            await self._finish(execution, ExecutionState.STOPPED, exit_code=0)
        else:
            await self._finish(execution, ExecutionState.CRASHED, exit_code=1, error=result.error)

    async def _watch_container(self, execution: Execution) -> None:
        exit_code = await self.containers.wait(execution.id)
        if exit_code is None or not execution.active:
            return
        logger.info("Container for %s exited with code %d", execution.id, exit_code)
        outcome = ExecutionState.STOPPED if exit_code == 0 else ExecutionState.CRASHED
        await self._finish(execution, outcome, exit_code=exit_code)

    async def _finish(
        self,
        execution: Execution,
        outcome: ExecutionState,
        *,
        exit_code: Optional[int] = None,
        error: Optional[str] = None,
    ) -> None:
        """
        Move an execution to ``outcome`` and then ``cleaned``.

        The first caller wins; concurrent callers wait for cleanup to finish.
        Release failures are logged and never block the transition to cleaned.
        """
        if not execution.active:
            await execution.finished.wait()
            return

        execution.outcome = outcome
        execution.exit_code = exit_code
        if error is not None:
            execution.error = error
        self._transition(execution, outcome)
        execution.token.cancel(outcome)

        if execution.strategy is Strategy.CONTAINER:
            try:
                await self.containers.terminate(execution.id)
            except Exception:
                logger.exception("Failed to release container of %s", execution.id)
            task = execution.task
            if task is not None and task is not asyncio.current_task():
                task.cancel()

        execution.channel.lifecycle(TERMINAL_EVENTS[outcome], error or "", code=exit_code)
        self._transition(execution, ExecutionState.CLEANED)
        execution.finished.set()

    # -------------------------------------------------------------------------
    # Helpers
    # -------------------------------------------------------------------------

    def _create_execution(
        self,
        workspace_id: str,
        file: str,
        strategy: Strategy,
        options: RunOptions,
    ) -> Execution:
        execution_id = uuid.uuid4().hex
        started_at = time.time()

        if options.timeout_ms:
            deadline = started_at + options.timeout_ms / 1000
        elif strategy is Strategy.SANDBOXED_SCRIPT:
            deadline = started_at + self.script_timeout_ms / 1000
        elif strategy is Strategy.CONTAINER:
            deadline = started_at + self.container_ttl_minutes * 60
        else:
            deadline = None

        execution = Execution(
            id=execution_id,
            workspace_id=workspace_id,
            file=file,
            strategy=strategy,
            channel=ExecutionChannel(
                self.relay,
                workspace_id,
                execution_id,
                asyncio.get_running_loop(),
                output_limit=self.output_limit,
            ),
            token=CancelToken(),
            started_at=started_at,
            deadline=deadline,
        )
        execution.history.append((next(self._stamps), ExecutionState.STARTING))
        return execution

    def _transition(self, execution: Execution, state: ExecutionState) -> None:
        execution.state = state
        execution.history.append((next(self._stamps), state))
        logger.info("Execution %s in %s -> %s", execution.id, execution.workspace_id, state.value)

    def _result(self, execution: Execution, success: bool = False, **kwargs) -> RunResult:
        return RunResult(
            workspace_id=execution.workspace_id,
            execution_id=execution.id,
            strategy=execution.strategy,
            state=execution.outcome or execution.state,
            success=success,
            preview_url=execution.preview_url,
            port=execution.port,
            **kwargs,
        )

    def _script_result(self, execution: Execution) -> RunResult:
        stdout = execution.stdout if execution.stdout is not None else execution.channel.output()
        outcome = execution.outcome
        if outcome is ExecutionState.STOPPED and execution.exit_code == 0:
            return self._result(execution, success=True, stdout=stdout)
        return self._result(
            execution,
            stdout=stdout,
            error=execution.error or "Execution stopped",
            error_code=RESULT_ERROR_CODES.get(outcome, "crashed"),
        )

    async def _reconcile(self) -> None:
        try:
            removed = await self.containers.reconcile()
        except Exception as e:
            logger.warning("Container reconciliation skipped: %s", e)
            return
        if removed:
            logger.info("Removed %d orphaned container(s)", len(removed))

    @staticmethod
    def _overdue(execution: Execution, now: float) -> bool:
        if execution.strategy is Strategy.SANDBOXED_SCRIPT:
            # The sandbox times scripts out itself; this is only a backstop
            now -= STARTUP_TIMEOUT_SECONDS
        return execution.is_expired(now)

    async def _reap_loop(self) -> None:
        last_reconcile = time.monotonic()
        while True:
            await asyncio.sleep(self.reaper_interval_seconds)
            try:
                await self.reap()
                if time.monotonic() - last_reconcile >= self.reconcile_interval_seconds:
                    last_reconcile = time.monotonic()
                    await self._reconcile()
            except Exception:
                logger.exception("Reaper pass failed")
