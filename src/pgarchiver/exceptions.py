"""Exceptions for the archiver node agent."""

from pathlib import Path


class ArchiverError(Exception):
    """Base exception for archiver errors."""

    retryable: bool = False


class RuleFileError(ArchiverError):
    """Error reading or writing the HBA file."""

    path: Path

    def __init__(self, path: Path | str, message: str) -> None:
        self.path = Path(path)
        super().__init__(f"{message}: {self.path}")


class RuleFileReadError(RuleFileError):
    """Could not read the current HBA file contents."""

    pass


class RuleFileWriteError(RuleFileError):
    """Computed the new HBA file contents but could not write them."""

    pass


class NetworkResolutionError(ArchiverError):
    """Hostname or address could not be mapped to local network settings."""

    target: str

    def __init__(self, target: str, message: str) -> None:
        self.target = target
        super().__init__(message)


class MonitorError(ArchiverError):
    """Error while calling the monitor."""

    endpoint: str

    def __init__(self, endpoint: str, message: str) -> None:
        self.endpoint = endpoint
        super().__init__(f"{message} (monitor {endpoint})")


class MonitorTimeoutError(MonitorError):
    """Monitor call did not complete in time."""

    retryable = True


class MonitorTransportError(MonitorError):
    """Monitor could not be reached."""

    retryable = True


class MonitorRejectedError(MonitorError):
    """Monitor explicitly refused the request."""

    pass


class StateError(ArchiverError):
    """Local node state could not be read or written."""

    pass


class StateIntegrityError(StateError):
    """Local node state conflicts with the monitor's view."""

    pass


class ValidationError(ArchiverError):
    """Topology received from the monitor is out of bounds or inconsistent."""

    pass


class ServerControlError(ArchiverError):
    """Local PostgreSQL server did not answer a control request."""

    pass
