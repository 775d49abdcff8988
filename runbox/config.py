"""
Configuration module for loading and validating environment variables.
"""

import logging
import os
from pathlib import Path
from typing import Any, Optional

from dotenv import load_dotenv


JS_STRATEGIES = ("sandbox", "container")


class ConfigError(Exception):
    """Raised when configuration is invalid or missing."""
    pass


class Config:
    """Application configuration loaded from environment variables.

    Keyword overrides take precedence over the environment, which lets tests
    and embedding code build a config without touching ``os.environ``.
    """

    def __init__(self, **overrides: Any):
        # Load .env file from project root
        env_path = Path(__file__).parent.parent / ".env"
        load_dotenv(dotenv_path=env_path)

        self._overrides = overrides

        # Workspaces
        self.workspaces_path = Path(self._str("RUNBOX_WORKSPACES_PATH", "./workspaces")).resolve()

        # HTTP server
        self.host = self._str("RUNBOX_HOST", "0.0.0.0")
        self.port = self._int("RUNBOX_PORT", 8080)
        self.public_host = self._str("RUNBOX_PUBLIC_HOST", "localhost")
        self.api_url = self._str("RUNBOX_API_URL", f"http://localhost:{self.port}")

        # Container preview ports (end is exclusive)
        self.port_range_start = self._int("RUNBOX_PORT_RANGE_START", 8100)
        self.port_range_end = self._int("RUNBOX_PORT_RANGE_END", 8200)
        self.probe_ports = self._bool("RUNBOX_PROBE_PORTS", True)

        # Execution limits
        self.js_strategy = self._str("RUNBOX_JS_STRATEGY", "sandbox").lower()
        self.script_timeout_ms = self._int("RUNBOX_SCRIPT_TIMEOUT_MS", 2000)
        self.script_memory_mb = self._int("RUNBOX_SCRIPT_MEMORY_MB", 64)
        self.container_ttl_minutes = self._int("RUNBOX_CONTAINER_TTL_MINUTES", 15)
        self.stop_grace_seconds = self._float("RUNBOX_STOP_GRACE_SECONDS", 5.0)
        self.reaper_interval_seconds = self._float("RUNBOX_REAPER_INTERVAL_SECONDS", 5.0)
        self.reconcile_interval_seconds = self._float("RUNBOX_RECONCILE_INTERVAL_SECONDS", 60.0)
        self.output_limit = self._int("RUNBOX_OUTPUT_LIMIT", 64 * 1024)

        self.log_level = self._str("RUNBOX_LOG_LEVEL", "INFO").upper()

        # Validate settings
        self._validate()

    def _raw(self, name: str) -> Optional[str]:
        key = name.lower().replace("runbox_", "", 1)
        if key in self._overrides:
            value = self._overrides[key]
            return None if value is None else str(value)
        return os.getenv(name)

    def _str(self, name: str, default: str) -> str:
        value = self._raw(name)
        return default if value in (None, "") else value

    def _int(self, name: str, default: int) -> int:
        value = self._raw(name)
        if value in (None, ""):
            return default
        try:
            return int(value)
        except ValueError:
            raise ConfigError(f"{name} must be an integer, got {value!r}")

    def _float(self, name: str, default: float) -> float:
        value = self._raw(name)
        if value in (None, ""):
            return default
        try:
            return float(value)
        except ValueError:
            raise ConfigError(f"{name} must be a number, got {value!r}")

    def _bool(self, name: str, default: bool) -> bool:
        value = self._raw(name)
        if value in (None, ""):
            return default
        return value.strip().lower() in ("1", "true", "yes", "on")

    def _validate(self):
        """Validate value ranges and enumerations."""
        problems = []

        if not 0 < self.port_range_start < self.port_range_end <= 65536:
            problems.append(
                f"RUNBOX_PORT_RANGE_START/END must satisfy 0 < start < end <= 65536 "
                f"(got {self.port_range_start}..{self.port_range_end})"
            )
        if self.js_strategy not in JS_STRATEGIES:
            problems.append(f"RUNBOX_JS_STRATEGY must be one of {', '.join(JS_STRATEGIES)}")
        if self.script_timeout_ms <= 0:
            problems.append("RUNBOX_SCRIPT_TIMEOUT_MS must be positive")
        if self.script_memory_mb <= 0:
            problems.append("RUNBOX_SCRIPT_MEMORY_MB must be positive")
        if self.container_ttl_minutes <= 0:
            problems.append("RUNBOX_CONTAINER_TTL_MINUTES must be positive")
        if self.reaper_interval_seconds <= 0:
            problems.append("RUNBOX_REAPER_INTERVAL_SECONDS must be positive")
        if self.output_limit <= 0:
            problems.append("RUNBOX_OUTPUT_LIMIT must be positive")

        if problems:
            raise ConfigError("Invalid configuration:\n- " + "\n- ".join(problems))


def setup_logging(level: str = "INFO") -> None:
    """Configure root logging for the server and console entry points."""
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


# Global config instance
_config: Optional[Config] = None


def get_config() -> Config:
    """Get the global configuration instance."""
    global _config
    if _config is None:
        _config = Config()
    return _config
