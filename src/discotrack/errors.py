from __future__ import annotations


class TrackerError(Exception):
    pass


class ConfigError(TrackerError):
    """Invalid or missing configuration. Only raised at startup."""


class FetchError(TrackerError):
    def __init__(self, message: str, service_id: str, status_code: int | None = None) -> None:
        super().__init__(message)
        self.service_id = service_id
        self.status_code = status_code


class StorageError(TrackerError):
    pass


class WriteError(StorageError):
    """The change log could not persist a record."""


class DispatchError(TrackerError):
    def __init__(self, message: str, destination: str, status_code: int | None = None) -> None:
        super().__init__(message)
        self.destination = destination
        self.status_code = status_code
