"""
Log Relay - fan out execution output and lifecycle events per workspace.

Components:
- LogRelay: publish/subscribe hub, one channel per workspace, no replay
- Subscription: async iterator over the events of one subscriber
- ExecutionChannel: per-execution producer assigning gap-free sequence
  numbers and keeping a bounded output buffer
- OutputBuffer: bounded text buffer that drops the oldest text first
"""

import asyncio
import logging
import threading
import time
from collections import defaultdict
from typing import Dict, List, Optional, Set

from runbox.schemas import LogEvent


logger = logging.getLogger(__name__)


class Subscription:
    """Events published to a workspace after this subscription was made."""

    def __init__(self, relay: "LogRelay", workspace_id: str):
        self.workspace_id = workspace_id
        self._relay = relay
        self._queue: "asyncio.Queue[LogEvent]" = asyncio.Queue()
        self._closed = False

    def _deliver(self, event: LogEvent) -> None:
        if not self._closed:
            self._queue.put_nowait(event)

    async def get(self) -> LogEvent:
        """Wait for the next event."""
        return await self._queue.get()

    def get_nowait(self) -> Optional[LogEvent]:
        """Return the next queued event, or None if nothing is queued."""
        try:
            return self._queue.get_nowait()
        except asyncio.QueueEmpty:
            return None

    def drain(self) -> List[LogEvent]:
        """Return every event queued so far."""
        events = []
        while True:
            event = self.get_nowait()
            if event is None:
                return events
            events.append(event)

    def close(self) -> None:
        """Stop receiving events. Idempotent."""
        if not self._closed:
            self._closed = True
            self._relay._unsubscribe(self)

    def __aiter__(self) -> "Subscription":
        return self

    async def __anext__(self) -> LogEvent:
        return await self.get()

    def __enter__(self) -> "Subscription":
        return self

    def __exit__(self, *args: object) -> None:
        self.close()


class LogRelay:
    """
    Single point of fan-out from executions to subscribers.

    Must be used from the event loop thread; producers on other threads go
    through ``ExecutionChannel``, which hands events over thread-safely.
    """

    def __init__(self):
        self._subscribers: Dict[str, Set[Subscription]] = defaultdict(set)

    def subscribe(self, workspace_id: str) -> Subscription:
        subscription = Subscription(self, workspace_id)
        self._subscribers[workspace_id].add(subscription)
        return subscription

    def _unsubscribe(self, subscription: Subscription) -> None:
        subscribers = self._subscribers.get(subscription.workspace_id)
        if subscribers is not None:
            subscribers.discard(subscription)
            if not subscribers:
                del self._subscribers[subscription.workspace_id]

    def subscriber_count(self, workspace_id: str) -> int:
        return len(self._subscribers.get(workspace_id, ()))

    def publish(self, workspace_id: str, event: LogEvent) -> None:
        """Deliver ``event`` to every current subscriber of the workspace."""
        for subscription in list(self._subscribers.get(workspace_id, ())):
            subscription._deliver(event)


class OutputBuffer:
    """Bounded text buffer; the oldest characters are dropped past ``limit``."""

    def __init__(self, limit: int):
        self.limit = limit
        self._chunks: List[str] = []
        self._size = 0
        self.truncated = False

    def append(self, text: str) -> None:
        self._chunks.append(text)
        self._size += len(text)
        if self._size > self.limit:
            joined = "".join(self._chunks)[-self.limit:]
            self._chunks = [joined]
            self._size = len(joined)
            self.truncated = True

    def text(self) -> str:
        return "".join(self._chunks)


class ExecutionChannel:
    """
    Producer side of one execution's event stream.

    Safe to call from any thread. Sequence numbers are assigned under a lock
    and the hand-off to the loop happens inside the same critical section, so
    subscribers observe events in sequence order.
    """

    def __init__(
        self,
        relay: LogRelay,
        workspace_id: str,
        execution_id: str,
        loop: asyncio.AbstractEventLoop,
        output_limit: int = 64 * 1024,
    ):
        self.relay = relay
        self.workspace_id = workspace_id
        self.execution_id = execution_id
        self._loop = loop
        self._lock = threading.Lock()
        self._sequence = 0
        self._buffer = OutputBuffer(output_limit)

    def stdout(self, text: str) -> LogEvent:
        return self._emit("stdout", "log", text, buffered=text + "\n")

    def stderr(self, text: str, prefix: str = "") -> LogEvent:
        return self._emit("stderr", "error", text, buffered=prefix + text + "\n", level="error")

    def lifecycle(self, kind: str, text: str = "", code: Optional[int] = None) -> LogEvent:
        return self._emit("lifecycle", kind, text, code=code)

    def output(self) -> str:
        with self._lock:
            return self._buffer.text()

    @property
    def truncated(self) -> bool:
        return self._buffer.truncated

    @property
    def next_sequence(self) -> int:
        return self._sequence

    def _emit(
        self,
        stream: str,
        kind: str,
        text: str,
        buffered: Optional[str] = None,
        level: Optional[str] = None,
        code: Optional[int] = None,
    ) -> LogEvent:
        with self._lock:
            event = LogEvent(
                execution_id=self.execution_id,
                workspace_id=self.workspace_id,
                stream=stream,
                kind=kind,
                text=text,
                sequence=self._sequence,
                timestamp=time.time(),
                level=level,
                code=code,
            )
            self._sequence += 1
            if buffered is not None:
                self._buffer.append(buffered)
            try:
                self._loop.call_soon_threadsafe(self.relay.publish, self.workspace_id, event)
            except RuntimeError:
                # Loop closed during shutdown; the buffer still has the text.
                logger.debug("Dropped event %s/%d after loop shutdown", self.execution_id, event.sequence)
        return event
