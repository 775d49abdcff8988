"""
Error taxonomy for workspace execution.

Crashes, timeouts and unsupported file types are reported as results and
terminal states, not raised.
"""


class RunboxError(Exception):
    """Base class for errors raised by runbox."""
    pass


class PathTraversalError(RunboxError):
    """Raised when a workspace-relative path escapes the workspace root."""
    pass


class NotFound(RunboxError):
    """Raised when a workspace or a file inside it does not exist."""
    pass


class LaunchFailed(RunboxError):
    """Raised when a container runtime fails to start."""

    def __init__(self, message: str, diagnostic: str = ""):
        super().__init__(message)
        self.diagnostic = diagnostic or message


class PortsExhausted(LaunchFailed):
    """Raised when every port in the preview pool is leased."""
    pass
