class WatcherError(Exception):
    """Base class for errors raised by the alert pipeline."""


class UpstreamError(WatcherError):
    """Listing search request failed or returned a non-success status."""

    def __init__(self, message: str, status_code: int | None = None):
        super().__init__(message)
        self.status_code = status_code


class RegistryError(WatcherError):
    """Building registry lookup failed."""


class DeliveryError(WatcherError):
    """A notification provider rejected or failed a send."""
