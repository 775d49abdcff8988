"""
Per-workspace network-condition profiles.

Profiles are advisory: the container executor passes them to the runtime as
environment variables, and the preview route applies them before serving.
"""

import asyncio
import random
import threading
from typing import Callable, Dict, Optional

from runbox.schemas import NetworkProfile


class NetworkProfiles:
    """Thread-safe store of network profiles keyed by workspace id."""

    def __init__(self):
        self._lock = threading.Lock()
        self._profiles: Dict[str, NetworkProfile] = {}

    def set(self, workspace_id: str, profile: NetworkProfile) -> None:
        with self._lock:
            self._profiles[workspace_id] = profile

    def get(self, workspace_id: str) -> Optional[NetworkProfile]:
        with self._lock:
            return self._profiles.get(workspace_id)

    def clear(self, workspace_id: str) -> None:
        with self._lock:
            self._profiles.pop(workspace_id, None)

    def environment(self, workspace_id: str) -> Dict[str, str]:
        """Environment variables describing the profile, empty when unset."""
        profile = self.get(workspace_id)
        if profile is None or not profile.is_active:
            return {}
        return {
            "NETWORK_LATENCY": str(profile.latency_ms),
            "NETWORK_FAILURE_RATE": str(profile.failure_rate),
        }


async def simulate(
    profile: Optional[NetworkProfile],
    rng: Callable[[], float] = random.random,
) -> bool:
    """
    Apply a profile to one request.

    Returns:
        False if the request should fail, True if it may proceed
    """
    if profile is None:
        return True
    if rng() < profile.failure_rate:
        return False
    if profile.latency_ms > 0:
        await asyncio.sleep(profile.latency_ms / 1000)
    return True
