"""
Port pool - exclusive host-port leases for preview containers.
"""

import logging
import socket
import threading
import time
from dataclasses import dataclass
from typing import Dict, List, Optional, Union

from runbox.errors import PortsExhausted


logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class PortLease:
    """A host port held by one execution."""
    port: int
    execution_id: str
    acquired_at: float


class PortPool:
    """
    Allocates ports from ``[start, end)``.

    Acquire and release are atomic under a lock; a port is never handed out
    while leased. With ``probe`` enabled a port must also be bindable on the
    host before it is leased.
    """

    def __init__(self, start: int = 8100, end: int = 8200, probe: bool = True):
        if not 0 < start < end <= 65536:
            raise ValueError(f"Invalid port range {start}..{end}")
        self.start = start
        self.end = end
        self.probe = probe
        self._lock = threading.Lock()
        self._leases: Dict[int, PortLease] = {}

    def acquire(self, execution_id: str) -> PortLease:
        """
        Lease the lowest free port.

        Raises:
            PortsExhausted: If every port in the range is leased or busy
        """
        with self._lock:
            for port in range(self.start, self.end):
                if port in self._leases:
                    continue
                # Double-check port is actually free on the system
                if self.probe and not self._is_port_free(port):
                    continue
                lease = PortLease(port=port, execution_id=execution_id, acquired_at=time.time())
                self._leases[port] = lease
                logger.debug("Leased port %d to %s", port, execution_id)
                return lease

        raise PortsExhausted(
            "No available ports. Too many preview containers running.",
            diagnostic=f"all ports in {self.start}..{self.end - 1} are leased or busy",
        )

    def release(self, lease: Union[PortLease, int, None]) -> None:
        """Return a port to the pool. Releasing an unleased port is a no-op."""
        if lease is None:
            return
        port = lease.port if isinstance(lease, PortLease) else lease
        with self._lock:
            current = self._leases.get(port)
            if current is None:
                return
            if isinstance(lease, PortLease) and current.execution_id != lease.execution_id:
                # Stale lease object; the port already belongs to someone else.
                return
            del self._leases[port]
        logger.debug("Released port %d", port)

    def lease_for(self, execution_id: str) -> Optional[PortLease]:
        with self._lock:
            for lease in self._leases.values():
                if lease.execution_id == execution_id:
                    return lease
        return None

    def leases(self) -> List[PortLease]:
        with self._lock:
            return list(self._leases.values())

    def _is_port_free(self, port: int) -> bool:
        """Check if a port is free on the system."""
        with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as s:
            try:
                s.bind(("0.0.0.0", port))
                return True
            except OSError:
                return False
