"""
Error taxonomy for the supervisor.

Process-level failures (CrashExit, LaunchError during auto-restart,
RestartBudgetExceeded, ShutdownTimeout) are handled by the restart policy and
reported; they never terminate the supervisor. ValidationError rejects a single
descriptor before anything is spawned.
"""

from typing import Optional


class SupervisorError(Exception):
    """Base class for supervisor errors."""


class ValidationError(SupervisorError):
    """A descriptor is malformed or refers to an unusable working directory."""


class UnknownAppError(SupervisorError):
    """No descriptor with the given name is registered."""

    def __init__(self, name: str):
        super().__init__(f"App '{name}' not found")
        self.name = name


class InvalidTransition(SupervisorError):
    """An instance was asked to move along an edge the state machine lacks."""


class InstanceError(SupervisorError):
    """An error attributed to one instance of an app."""

    def __init__(self, app_name: str, index: int, message: str):
        super().__init__(f"{app_name}[{index}]: {message}")
        self.app_name = app_name
        self.index = index


class LaunchError(InstanceError):
    """The child process could not be created."""

    def __init__(self, app_name: str, index: int, reason: str):
        super().__init__(app_name, index, f"launch failed: {reason}")
        self.reason = reason


class CrashExit(InstanceError):
    """The child exited on its own while it was supposed to be running."""

    def __init__(self, app_name: str, index: int, returncode: Optional[int], signal_name: Optional[str] = None):
        reason = f"signal {signal_name}" if signal_name else f"exit code {returncode}"
        super().__init__(app_name, index, f"exited unexpectedly ({reason})")
        self.returncode = returncode
        self.signal_name = signal_name


class RestartBudgetExceeded(InstanceError):
    """Too many crashes inside the restart window; the instance is parked."""

    def __init__(self, app_name: str, index: int, crashes: int, window: float):
        super().__init__(
            app_name,
            index,
            f"crashed {crashes} times within {window:g}s, not restarting until restarted by an operator",
        )
        self.crashes = crashes
        self.window = window


class ShutdownTimeout(InstanceError):
    """The child ignored SIGTERM for the whole grace period and was killed."""

    def __init__(self, app_name: str, index: int, timeout: float):
        super().__init__(app_name, index, f"did not exit within {timeout:g}s of SIGTERM, sent SIGKILL")
        self.timeout = timeout
