"""
Exception hierarchy for scanforge.

Adapter-level errors (ScannerError subclasses, sandbox policy errors) are contained
at the adapter boundary and recorded on the ScannerInvocation. Job-level errors
(SourceFetchError, PersistenceError) propagate to the worker pool, which retries.
"""

from typing import Optional


class ScanforgeError(Exception):
    """Base class for every error raised by scanforge."""

    retryable = True


class ConfigError(ScanforgeError):
    retryable = False


class SandboxError(ScanforgeError):
    retryable = False


class CommandNotAllowed(SandboxError):
    def __init__(self, command: str):
        super().__init__(f"Command not allowed: {command}")
        self.command = command


class UnsafeArgument(SandboxError):
    def __init__(self, argument: str):
        super().__init__("Invalid argument: contains dangerous characters")
        self.argument = argument


class ScannerError(ScanforgeError):
    def __init__(self, scanner: str, message: str):
        super().__init__(message)
        self.scanner = scanner


class ScannerUnavailable(ScannerError):
    def __init__(self, scanner: str, message: str = "Scanner not available"):
        super().__init__(scanner, message)


class ScannerTimeout(ScannerError):
    def __init__(self, scanner: str, message: str = "Scanner timed out"):
        super().__init__(scanner, message)


class ScannerExecutionError(ScannerError):
    def __init__(self, scanner: str, message: str, exit_code: Optional[int] = None):
        super().__init__(scanner, message)
        self.exit_code = exit_code


class SourceFetchError(ScanforgeError):
    def __init__(self, message: str, retryable: bool = True):
        super().__init__(message)
        self.retryable = retryable


class PersistenceError(ScanforgeError):
    pass


class NotificationError(ScanforgeError):
    pass


class InvalidTransition(ScanforgeError):
    retryable = False

    def __init__(self, current: str, target: str):
        super().__init__(f"Invalid status transition: {current} -> {target}")
        self.current = current
        self.target = target


class CancellationRequested(ScanforgeError):
    """Raised at a phase boundary once a job has been cancelled. Not a failure."""

    retryable = False

    def __init__(self, job_id: str):
        super().__init__(f"Scan {job_id} was cancelled")
        self.job_id = job_id


class JobTimeout(ScanforgeError):
    retryable = False

    def __init__(self, job_id: str, timeout: float):
        super().__init__(f"Job {job_id} exceeded its {timeout:g}s timeout")
        self.job_id = job_id
        self.timeout = timeout
