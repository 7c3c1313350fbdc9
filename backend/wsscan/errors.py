from __future__ import annotations


class ScanError(Exception):
    """Base exception for scanner errors."""


class ConfigurationError(ScanError):
    """Raised when the analyzer cannot be configured, e.g. incomplete credentials."""


class ProcessError(ScanError):
    """Raised when the analyzer process exits unsuccessfully."""

    def __init__(
        self,
        message: str,
        exit_code: int | None = None,
        signal: int | None = None,
        stderr: str = "",
    ):
        self.exit_code = exit_code
        self.signal = signal
        self.stderr = stderr
        super().__init__(message)


class MissingResponseError(ProcessError):
    """Raised when the analyzer exited cleanly but did not write its response."""


class ScanTimeoutError(ScanError):
    """Raised when the analyzer exceeds its wall-clock budget and is killed."""

    def __init__(self, message: str, timeout_seconds: float):
        self.timeout_seconds = timeout_seconds
        super().__init__(message)


class ScanCancelled(ScanError):
    """Raised when a workspace scan is cancelled during execution."""

    def __init__(self, message: str = "Scan was cancelled"):
        super().__init__(message)


class NotEntitledError(ScanError):
    """Raised when the user is not entitled to run a scanner."""


class FileScanError(ScanError):
    """
    Raised when a file or scanner target could not be scanned. The ``reason`` is
    surfaced on the failed-file record of the workspace aggregate.
    """

    def __init__(self, message: str, reason: str):
        self.reason = reason
        super().__init__(message)


class NotSupportedError(FileScanError):
    def __init__(self, scanner: str):
        super().__init__(f"{scanner} is not supported", "[Not supported]")


class OsNotSupportedError(FileScanError):
    def __init__(self, scanner: str):
        super().__init__(f"{scanner} is not supported on this operating system", "[OS not supported]")
