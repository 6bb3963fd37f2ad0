"""Exceptions raised by Reddit Relay components."""


class RelayError(Exception):
    """Base class for relay errors."""


class FetchError(RelayError):
    """Retrieving items from a source failed (network, auth or rate limit)."""

    def __init__(self, source_name: str, message: str):
        self.source_name = source_name
        super().__init__(f"r/{source_name}: {message}")


class DeliveryError(RelayError):
    """Sending a single item to its delivery target failed."""

    def __init__(self, message: str, status_code: int | None = None):
        self.status_code = status_code
        super().__init__(message)


class ConfigurationError(RelayError):
    """A source or setting is missing required fields or holds invalid values."""
