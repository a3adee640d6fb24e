"""Race registration monitoring and alerting pipeline."""

from .classifier import classify, match_keywords
from .config import Settings
from .errors import (
    BrowserLaunchError,
    ConfigurationError,
    DeliveryError,
    FetchError,
    RaceAlertError,
    StoreError,
)
from .models import NotificationBatch, Race, RaceStatus, ScrapeResult
from .notifier import EmailClient, NotificationDispatcher
from .scraper import ScrapeOrchestrator, ScrapeRun
from .store import RaceStore

__all__ = [
    "BrowserLaunchError",
    "ConfigurationError",
    "DeliveryError",
    "EmailClient",
    "FetchError",
    "NotificationBatch",
    "NotificationDispatcher",
    "Race",
    "RaceAlertError",
    "RaceStatus",
    "RaceStore",
    "ScrapeOrchestrator",
    "ScrapeResult",
    "ScrapeRun",
    "Settings",
    "StoreError",
    "classify",
    "match_keywords",
]
