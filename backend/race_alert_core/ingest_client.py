from __future__ import annotations

import logging

import httpx

from .config import Settings
from .errors import StoreError
from .models import ScrapeResult

logger = logging.getLogger(__name__)


class IngestClient:
    """Posts scrape results to the ingestion webhook."""

    def __init__(self, webhook_url: str, secret: str, timeout: float = 15.0) -> None:
        self.webhook_url = webhook_url
        self.secret = secret
        self.timeout = timeout

    @classmethod
    def from_settings(cls, settings: Settings) -> "IngestClient":
        return cls(webhook_url=settings.webhook_url, secret=settings.webhook_secret)

    def submit(self, result: ScrapeResult) -> int:
        """Return the number of notifications the server created for ``result``."""

        if not self.webhook_url:
            logger.warning("No webhook URL configured, skipping notification for race %s", result.race_id)
            return 0

        headers = {
            "Authorization": f"Bearer {self.secret}",
            "Content-Type": "application/json",
        }
        try:
            with httpx.Client(timeout=self.timeout) as client:
                response = client.post(self.webhook_url, json=result.to_payload(), headers=headers)
                response.raise_for_status()
                payload = response.json()
        except httpx.HTTPStatusError as exc:
            raise StoreError(
                f"Webhook failed with status {exc.response.status_code}: {exc.response.text[:200]}"
            ) from exc
        except httpx.HTTPError as exc:
            raise StoreError(f"Webhook error: {exc}") from exc
        except ValueError as exc:
            raise StoreError("Webhook returned invalid JSON") from exc

        if not isinstance(payload, dict) or not payload.get("success"):
            raise StoreError(f"Webhook reported failure: {payload}")
        return int(payload.get("notifications_sent") or 0)
