from __future__ import annotations

from typing import Any, Dict, List

import httpx
import pytest

from race_alert_core import RaceStatus, ScrapeResult, StoreError
from race_alert_core import ingest_client as ingest_module
from race_alert_core.ingest_client import IngestClient


class _WebhookClient:
    requests: List[Dict[str, Any]] = []
    reply: Any = (200, {"success": True, "notifications_sent": 4})

    def __init__(self, *args: Any, **kwargs: Any) -> None:
        pass

    def __enter__(self) -> "_WebhookClient":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:  # pragma: no cover - nothing to clean up
        return None

    def post(self, url: str, json: Any, headers: Dict[str, str]) -> httpx.Response:
        _WebhookClient.requests.append({"url": url, "json": json, "headers": headers})
        if isinstance(_WebhookClient.reply, Exception):
            raise _WebhookClient.reply
        status, payload = _WebhookClient.reply
        return httpx.Response(status, request=httpx.Request("POST", url), json=payload)


@pytest.fixture(autouse=True)
def webhook(monkeypatch: pytest.MonkeyPatch):
    _WebhookClient.requests = []
    _WebhookClient.reply = (200, {"success": True, "notifications_sent": 4})
    monkeypatch.setattr(ingest_module.httpx, "Client", _WebhookClient)
    return _WebhookClient


def _result() -> ScrapeResult:
    return ScrapeResult(race_id="race-1", status=RaceStatus.OPEN, content_snippet="register now")


def test_submit_posts_with_bearer_secret(webhook) -> None:
    client = IngestClient("https://racealert.example/api/webhook", "s3cret")

    assert client.submit(_result()) == 4

    request = webhook.requests[0]
    assert request["headers"]["Authorization"] == "Bearer s3cret"
    assert request["json"]["race_id"] == "race-1"
    assert request["json"]["status"] == "open"
    assert request["json"]["content_snippet"] == "register now"


def test_submit_without_url_is_skipped(webhook) -> None:
    assert IngestClient("", "s3cret").submit(_result()) == 0
    assert webhook.requests == []


@pytest.mark.parametrize(
    "reply",
    [(503, {"detail": "Store unavailable, retry later"}), (200, {"success": False}), httpx.ReadTimeout("slow")],
)
def test_submit_failures_raise_store_error(webhook, reply: Any) -> None:
    webhook.reply = reply

    with pytest.raises(StoreError):
        IngestClient("https://racealert.example/api/webhook", "s3cret").submit(_result())
