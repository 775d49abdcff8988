"""
Sandbox Executor - Run scripts in an embedded, capability-restricted JavaScript engine.

Security Requirements:
- Each run gets a fresh QuickJS context in its own child process; nothing is
  shared between runs
- The global scope only exposes console.log/console.error and a frozen
  process.env snapshot; the engine has no filesystem, network or process API
- Memory ceiling per context
- Wall-clock deadline enforced by the parent, which kills the child process
- Stop kills the child process the same way

Output Handling:
- console.log lines are captured as "<text>\\n"
- console.error lines are captured as "ERROR: <text>\\n"
- Every call is sent over a pipe in call order and forwarded to the
  execution channel as it arrives
"""

import asyncio
import json
import logging
import multiprocessing
import os
import time
from dataclasses import dataclass
from typing import Dict, List, Optional

import quickjs

from runbox.sandbox.cancel import CancelToken
from runbox.sandbox.relay import ExecutionChannel


logger = logging.getLogger(__name__)


# =============================================================================
# CONSTANTS
# =============================================================================

DEFAULT_TIMEOUT_MS = 2000
DEFAULT_MEMORY_LIMIT_MB = 64

# Time allowed for the child process to start and build its context;
# the script's own timeout starts once it reports ready
STARTUP_TIMEOUT_SECONDS = 10.0
POLL_INTERVAL_SECONDS = 0.05

ERROR_PREFIX = "ERROR: "

# Result slot written by the async wrapper once the script settles
_STATE_KEY = "__runbox_state"
_ERROR_KEY = "__runbox_error"

# Installs console and process.env, then hides the raw host callables.
_PRELUDE = """
(function (env) {
  const log = globalThis.__runbox_log;
  const error = globalThis.__runbox_error_line;
  delete globalThis.__runbox_log;
  delete globalThis.__runbox_error_line;
  const format = (args) => args.map((value) => {
    if (typeof value === "string") return value;
    try {
      const text = JSON.stringify(value);
      return text === undefined ? String(value) : text;
    } catch (e) {
      return String(value);
    }
  }).join(" ");
  const frozen = (name, value) => Object.defineProperty(globalThis, name, {
    value: Object.freeze(value), writable: false, configurable: false, enumerable: false,
  });
  frozen("console", {
    log: (...args) => { log(format(args)); },
    error: (...args) => { error(format(args)); },
  });
  frozen("process", { env: Object.freeze(env) });
})(%s);
"""

_WRAPPER_HEAD = "(async () => {\n"
_WRAPPER_TAIL = """
})().then(
  () => { globalThis.%(state)s = "ok"; },
  (e) => {
    globalThis.%(state)s = "error";
    let text;
    try {
      text = (e && e.stack) ? String(e) + "\\n" + e.stack : String(e);
    } catch (inner) {
      text = "Uncaught exception";
    }
    globalThis.%(error)s = text;
  }
);
""" % {"state": _STATE_KEY, "error": _ERROR_KEY}


# =============================================================================
# DATA CLASSES
# =============================================================================

@dataclass
class ScriptOptions:
    """Limits for one sandboxed run."""
    timeout_ms: int = DEFAULT_TIMEOUT_MS
    memory_limit_mb: int = DEFAULT_MEMORY_LIMIT_MB


@dataclass
class SandboxResult:
    """Result of a sandboxed script run."""
    success: bool
    stdout: str = ""
    error: Optional[str] = None
    timed_out: bool = False
    cancelled: bool = False

    def to_dict(self) -> Dict:
        """Convert to dictionary for serialization."""
        return {
            "success": self.success,
            "stdout": self.stdout,
            "error": self.error,
            "timed_out": self.timed_out,
            "cancelled": self.cancelled,
        }


# =============================================================================
# CHILD PROCESS
# =============================================================================

def _script_process(connection, code: str, env: Dict[str, str], memory_limit_mb: int) -> None:
    """
    Evaluate ``code`` and report over ``connection``.

    Messages, in order: ``("ready",)``, any number of ``("log", text)`` and
    ``("error", text)``, then ``("done", success, error)``.
    """
    context = quickjs.Context()
    context.set_memory_limit(memory_limit_mb * 1024 * 1024)
    context.add_callable("__runbox_log", lambda text: connection.send(("log", str(text))))
    context.add_callable("__runbox_error_line", lambda text: connection.send(("error", str(text))))
    connection.send(("ready",))

    try:
        context.eval(_PRELUDE % json.dumps(env))
        context.eval(_WRAPPER_HEAD + code + _WRAPPER_TAIL)

        # Drain promise jobs until the wrapper settles
        while context.execute_pending_job():
            pass

        state = context.eval(f"globalThis.{_STATE_KEY}")
        if state == "ok":
            connection.send(("done", True, None))
        elif state == "error":
            connection.send(("done", False, str(context.eval(f"globalThis.{_ERROR_KEY}"))))
        else:
            connection.send(("done", False, "Script never settled: it awaited a promise that cannot resolve"))
    except quickjs.JSException as exc:
        connection.send(("done", False, str(exc)))
    except MemoryError:
        connection.send(("done", False, f"Memory limit of {memory_limit_mb}MB exceeded"))
    finally:
        connection.close()


# =============================================================================
# SANDBOX EXECUTOR
# =============================================================================

class SandboxExecutor:
    """Runs script source in a fresh QuickJS context in a killable child process."""

    def __init__(self, env: Optional[Dict[str, str]] = None):
        self.env = dict(env) if env is not None else {
            "NODE_ENV": os.getenv("NODE_ENV", "production"),
        }
        self._mp = multiprocessing.get_context("spawn")

    async def execute(
        self,
        code: str,
        options: Optional[ScriptOptions] = None,
        *,
        channel: Optional[ExecutionChannel] = None,
        token: Optional[CancelToken] = None,
    ) -> SandboxResult:
        """
        Run ``code`` and wait for it to settle.

        Synchronous scripts and scripts that return or await promises both
        complete before this returns. The child process is supervised from a
        worker thread, so the event loop is never blocked.

        Args:
            code: Script source
            options: Timeout and memory limits
            channel: Receives each console call as it happens
            token: Kills the script as soon as it is cancelled

        Returns:
            SandboxResult with success flag, captured output and error
        """
        options = options or ScriptOptions()
        token = token or CancelToken()
        return await asyncio.to_thread(self._run, code, options, channel, token)

    def _run(
        self,
        code: str,
        options: ScriptOptions,
        channel: Optional[ExecutionChannel],
        token: CancelToken,
    ) -> SandboxResult:
        capture: List[str] = []

        def on_log(text: str) -> None:
            capture.append(text + "\n")
            if channel is not None:
                channel.stdout(text)

        def on_error(text: str) -> None:
            capture.append(ERROR_PREFIX + text + "\n")
            if channel is not None:
                channel.stderr(text, prefix=ERROR_PREFIX)

        def result(success: bool, **kwargs) -> SandboxResult:
            return SandboxResult(success=success, stdout="".join(capture), **kwargs)

        if token.cancelled:
            return result(False, error="Execution cancelled", cancelled=True)

        receiver, sender = self._mp.Pipe(duplex=False)
        process = self._mp.Process(
            target=_script_process,
            args=(sender, code, self.env, options.memory_limit_mb),
            name="runbox-script",
            daemon=True,
        )
        process.start()
        sender.close()

        started = False
        deadline = time.monotonic() + STARTUP_TIMEOUT_SECONDS
        try:
            while True:
                if token.cancelled:
                    return result(False, error="Execution cancelled", cancelled=True)
                remaining = deadline - time.monotonic()
                if remaining <= 0:
                    if not started:
                        return result(False, error="Script process failed to start")
                    return result(False, error=f"Execution timed out after {options.timeout_ms}ms", timed_out=True)
                if not receiver.poll(min(remaining, POLL_INTERVAL_SECONDS)):
                    continue

                try:
                    message = receiver.recv()
                except EOFError:
                    process.join(1)
                    return result(False, error=f"Script process exited with code {process.exitcode}")

                kind = message[0]
                if kind == "ready":
                    started = True
                    deadline = time.monotonic() + options.timeout_ms / 1000
                elif kind == "log":
                    on_log(message[1])
                elif kind == "error":
                    on_error(message[1])
                else:
                    _, success, error = message
                    if not success:
                        logger.debug("Script failed: %s", error)
                    return result(success, error=error)
        finally:
            if process.is_alive():
                process.kill()
            process.join()
            receiver.close()
