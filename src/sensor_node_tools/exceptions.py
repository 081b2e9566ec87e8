"""Custom exceptions for port discovery, serial dialogue and firmware upload."""

from __future__ import annotations

from typing import List, Optional


class SensorNodeToolsError(Exception):
    """Common base exception for all sensor_node_tools errors."""
    pass


class TransportError(SensorNodeToolsError):
    """Exception for serial transport failures.

    Raised when the serial port cannot be opened (missing, busy, permission
    denied), when a write times out, or when the port faults mid-dialogue.
    Fatal to the current session; never retried.
    """
    pass


class PortNotFound(SensorNodeToolsError):
    """Exception raised when no port was given and none could be discovered."""
    pass


class ConfigParseError(SensorNodeToolsError):
    """Exception for a malformed configuration document.

    Attributes:
        field: Dotted path of the offending field (``""`` for the document).
    """

    def __init__(self, message: str, *, field: str = "") -> None:
        super().__init__(message)
        self.field = field


class UploadError(SensorNodeToolsError):
    """Base exception for firmware upload errors.

    Raised directly when the upload tool cannot be started at all (missing
    project directory, missing build manifest, tool not on PATH).
    """
    pass


class UploadTimeout(UploadError):
    """Exception raised after the upload process was killed at its deadline.

    Attributes:
        command: The command line that was run.
        output: Output captured before the process was terminated.
        timeout_s: The deadline that expired.
    """

    def __init__(
        self,
        message: str,
        *,
        command: List[str],
        output: str,
        timeout_s: float,
    ) -> None:
        super().__init__(message)
        self.command = command
        self.output = output
        self.timeout_s = timeout_s


class UploadFailed(UploadError):
    """Exception for a non-zero upload tool exit code.

    Attributes:
        command: The command line that was run.
        return_code: The non-zero exit code.
        output: Combined stdout/stderr of the tool.
    """

    def __init__(
        self,
        message: str,
        *,
        command: List[str],
        return_code: Optional[int],
        output: str,
    ) -> None:
        super().__init__(message)
        self.command = command
        self.return_code = return_code
        self.output = output
