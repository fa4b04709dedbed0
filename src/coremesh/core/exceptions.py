"""Custom exceptions for coremesh.

This module defines the exceptions raised while starting, running and
stopping a supervised run:
- Run configuration problems
- Processes that fail to launch or die during their grace window
- System proxy read and write failures
- Operator cancellation

Startup-phase errors abort the run. Anything raised while shutting down is
logged by the run controller and never replaces the run's outcome.

Example:
    try:
        supervisor.start_and_health_check(spec)
    except EarlyExitError as e:
        console.print(f"[red]{e}")
"""


class CoremeshError(Exception):
    """Base exception for coremesh errors."""


class ConfigError(CoremeshError):
    """Raised when the run configuration cannot be loaded or is invalid."""


class SpawnError(CoremeshError):
    """Raised when an executable could not be launched."""

    def __init__(self, name: str, reason: str) -> None:
        super().__init__(f"start {name} failed: {reason}")
        self.name = name


class EarlyExitError(CoremeshError):
    """Raised when a process exits inside its crash-detection window."""

    def __init__(self, name: str, returncode: int | None) -> None:
        super().__init__(f"{name} exited early with status {returncode}")
        self.name = name
        self.returncode = returncode


class ProcessExitError(CoremeshError):
    """Raised when the edge proxy exits with a failure status while running."""

    def __init__(self, name: str, returncode: int | None) -> None:
        super().__init__(f"{name} exited with status {returncode}")
        self.name = name
        self.returncode = returncode


class SystemProxyError(CoremeshError):
    """Raised when the system proxy settings cannot be read or applied."""


class EndpointNotFoundError(SystemProxyError):
    """Raised when the edge config declares no usable inbound."""


class CancellationRequested(CoremeshError):
    """Raised when the operator stops a run. Not a failure."""
