# src/engine/exceptions.py
"""
Exceptions raised by the scan pipeline and mapped to HTTP responses by the routes.
"""


class ScanflowError(Exception):
    """
    Base class for all Scanflow errors.
    """
    status_code = 500

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class NotFound(ScanflowError):
    status_code = 404

    def __init__(self, resource: str, identifier: str):
        super().__init__(f"{resource} not found: {identifier}")
        self.resource = resource
        self.identifier = identifier


class ConfigurationError(ScanflowError):
    """
    A batch cannot start because of how it is configured. The batch is never created.
    """
    status_code = 400


class BatchDisabled(ConfigurationError):
    def __init__(self, scheduled_scan_id: str):
        super().__init__("Scheduled scan is disabled")
        self.scheduled_scan_id = scheduled_scan_id


class NoTargetsResolved(ConfigurationError):
    def __init__(self):
        super().__init__("No images found to scan")


class InvalidPattern(ConfigurationError):
    def __init__(self, pattern: str, reason: str):
        super().__init__(f"Invalid image pattern {pattern!r}: {reason}")
        self.pattern = pattern


class SelectionModeNotImplemented(ConfigurationError):
    status_code = 501

    def __init__(self, mode: str):
        super().__init__(f"Selection mode {mode} is not implemented")
        self.mode = mode


class ScanExecutionError(ScanflowError):
    """
    A single target failed to scan. Counted against the batch, never fatal to it.
    """


class TransportError(ScanflowError):
    """
    A push channel failed to open, broke, or went silent.
    """
