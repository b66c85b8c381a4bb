from typing import Optional


class DevwardError(Exception):
    """Base class for every failure devward reports for a service operation."""


class ConfigurationError(DevwardError):
    """The service configuration is invalid or contradictory."""


class CommandFailedError(DevwardError):
    """A build, launch or stop command exited unsuccessfully."""

    def __init__(self, service: str, command: str, returncode: Optional[int], output: str = ""):
        self.service = service
        self.command = command
        self.returncode = returncode
        self.output = output
        message = f"{service}: command '{command}' failed with exit status {returncode}"
        if output:
            message += f"\n{output}"
        super().__init__(message)


class LaunchTimeoutError(DevwardError):
    """The launch check was never satisfied. The process is left running."""

    def __init__(self, service: str, timeout: float, reason: str = ""):
        self.service = service
        self.timeout = timeout
        message = f"{service}: service did not start within {timeout:g}s"
        if reason:
            message += f" ({reason})"
        super().__init__(message)


class ProcessControlError(DevwardError):
    """An OS-level process operation failed while acting on a service."""

    def __init__(self, service: str, step: str, cause: Optional[BaseException] = None):
        self.service = service
        self.step = step
        self.cause = cause
        message = f"{service}: {step} failed"
        if cause is not None:
            message += f": {cause}"
        super().__init__(message)


class UnsafeTerminationError(ProcessControlError):
    """The process group resolved to 0 or 1, so no group kill was attempted."""

    def __init__(self, service: str, pgid: int):
        self.pgid = pgid
        super().__init__(service, f"force-kill (suspect pgid: {pgid})")
