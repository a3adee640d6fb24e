from __future__ import annotations


class RaceAlertError(Exception):
    """Base class for pipeline errors."""


class ConfigurationError(RaceAlertError):
    """Required configuration is missing or malformed."""


class FetchError(RaceAlertError):
    """A race page could not be loaded (timeout, network or navigation failure)."""

    def __init__(self, url: str, message: str) -> None:
        super().__init__(f"{message} ({url})")
        self.url = url
        self.message = message


class BrowserLaunchError(RaceAlertError):
    """The headless browser could not be started. Fatal for a scrape run."""


class StoreError(RaceAlertError, RuntimeError):
    """The durable store was unreachable or rejected the operation.

    Callers must treat it as retryable and assume nothing changed.
    """


class DeliveryError(RaceAlertError):
    """The email provider refused or failed to accept a message."""
