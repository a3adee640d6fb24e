from __future__ import annotations

import datetime as dt
import hmac
import logging
from functools import lru_cache
from typing import Any, Dict, List, Optional
from urllib.parse import urlencode

from fastapi import Depends, FastAPI, HTTPException, Request
from fastapi.encoders import jsonable_encoder
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import RedirectResponse
from pydantic import BaseModel, ConfigDict, EmailStr, Field, ValidationError
from starlette.concurrency import run_in_threadpool

from race_alert_core import (
    DeliveryError,
    EmailClient,
    NotificationDispatcher,
    RaceStatus,
    RaceStore,
    Settings,
    StoreError,
)
from race_alert_core.emails import welcome_email
from race_alert_core.models import SubscriberStatus

app = FastAPI(title="Race Alert API", version="1.0.0")
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

logger = logging.getLogger(__name__)


class IngestPayload(BaseModel):
    race_id: str = Field(pattern=r"^[0-9a-fA-F]{8}-[0-9a-fA-F]{4}-[0-9a-fA-F]{4}-[0-9a-fA-F]{4}-[0-9a-fA-F]{12}$")
    status: RaceStatus
    scraped_at: Optional[dt.datetime] = None
    content_snippet: Optional[str] = None
    error: Optional[str] = None

    model_config = ConfigDict(extra="ignore")


class IngestResponse(BaseModel):
    success: bool
    notifications_sent: int


class SubscribeRequest(BaseModel):
    email: EmailStr
    timezone: str = "UTC"
    race_ids: Optional[List[str]] = Field(default=None, alias="raceIds")

    model_config = ConfigDict(populate_by_name=True)


class SubscribeResponse(BaseModel):
    success: bool
    subscriber_id: str = Field(alias="subscriberId")
    subscriptions: int

    model_config = ConfigDict(populate_by_name=True)


class UnsubscribeRequest(BaseModel):
    email: EmailStr


class UnsubscribeResponse(BaseModel):
    success: bool
    deactivated: int
    already_unsubscribed: bool = Field(default=False, alias="alreadyUnsubscribed")

    model_config = ConfigDict(populate_by_name=True)


class RaceModel(BaseModel):
    id: str
    name: str
    url: str
    current_status: RaceStatus = Field(alias="currentStatus")
    last_scraped_at: Optional[str] = Field(default=None, alias="lastScrapedAt")

    model_config = ConfigDict(populate_by_name=True)


class RaceListResponse(BaseModel):
    races: List[RaceModel]


@lru_cache(maxsize=1)
def settings() -> Settings:
    return Settings.from_env()


@lru_cache(maxsize=1)
def _store() -> RaceStore:
    return RaceStore(settings())


@lru_cache(maxsize=1)
def _email_client() -> EmailClient:
    return EmailClient.from_settings(settings())


@lru_cache(maxsize=1)
def _dispatcher() -> NotificationDispatcher:
    return NotificationDispatcher(_store(), _email_client(), settings().site_url)


def get_settings() -> Settings:
    return settings()


def get_store() -> RaceStore:
    return _store()


def get_email_client() -> EmailClient:
    return _email_client()


def get_dispatcher() -> NotificationDispatcher:
    return _dispatcher()


def _authorised(request: Request, config: Settings) -> bool:
    header = request.headers.get("authorization") or ""
    expected = f"Bearer {config.webhook_secret}"
    return hmac.compare_digest(header.encode(), expected.encode())


@app.get("/health")
def health() -> dict[str, str]:
    return {"status": "ok"}


@app.get("/webhook")
def webhook_health() -> dict[str, str]:
    return {"status": "healthy", "timestamp": dt.datetime.now(dt.timezone.utc).isoformat()}


@app.post("/webhook", response_model=IngestResponse)
async def webhook(
    request: Request,
    config: Settings = Depends(get_settings),
    store: RaceStore = Depends(get_store),
    dispatcher: NotificationDispatcher = Depends(get_dispatcher),
):
    if not _authorised(request, config):
        raise HTTPException(status_code=401, detail="Unauthorized")

    try:
        body: Any = await request.json()
    except ValueError as exc:
        raise HTTPException(status_code=400, detail="Invalid JSON body") from exc

    try:
        payload = IngestPayload.model_validate(body)
    except ValidationError as exc:
        raise HTTPException(
            status_code=400,
            detail={"message": "Invalid payload", "errors": jsonable_encoder(exc.errors(include_url=False))},
        ) from exc

    logger.info("Received scrape result for race %s: %s", payload.race_id, payload.status.value)

    # Store and email calls block, so they run off the event loop.
    try:
        batch = await run_in_threadpool(store.ingest, payload.race_id, payload.status, payload.scraped_at)
    except ValueError as exc:
        if str(exc) == "Race not found":
            raise HTTPException(status_code=404, detail=str(exc)) from exc
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    except StoreError as exc:
        logger.error("Transition failed for race %s: %s", payload.race_id, exc)
        raise HTTPException(status_code=503, detail="Store unavailable, retry later") from exc

    logger.info(
        "Status update processed for race %s (%s -> %s). Notifications created: %d",
        payload.race_id,
        batch.previous_status.value,
        batch.current_status.value,
        batch.notifications_created,
    )

    if batch.created and payload.status is RaceStatus.OPEN:
        await run_in_threadpool(dispatcher.dispatch, batch)

    return IngestResponse(success=True, notifications_sent=batch.notifications_created)


@app.get("/races", response_model=RaceListResponse)
def list_races(store: RaceStore = Depends(get_store)):
    races = store.fetch_races()
    return RaceListResponse(
        races=[
            RaceModel(
                id=race.id,
                name=race.name,
                url=race.url,
                currentStatus=race.current_status,
                lastScrapedAt=race.to_row()["last_scraped_at"],
            )
            for race in races
        ]
    )


@app.post("/subscribe", response_model=SubscribeResponse)
def subscribe(
    payload: SubscribeRequest,
    config: Settings = Depends(get_settings),
    store: RaceStore = Depends(get_store),
    email_client: EmailClient = Depends(get_email_client),
):
    try:
        result: Dict[str, Any] = store.subscribe(payload.email, payload.race_ids, payload.timezone)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    except StoreError as exc:
        raise HTTPException(status_code=502, detail=str(exc)) from exc

    address = str(result["subscriber"]["email"])
    content = welcome_email(address, result["subscriptions"], config.site_url)
    try:
        email_client.send([address], content.subject, content.html, content.text)
        logger.info("Welcome email sent to %s", address)
    except DeliveryError as exc:
        logger.error("Error sending welcome email to %s: %s", address, exc)

    return SubscribeResponse(
        success=True,
        subscriberId=str(result["subscriber"]["id"]),
        subscriptions=result["subscriptions"],
    )


def _unsubscribe(store: RaceStore, email: str) -> UnsubscribeResponse:
    try:
        subscriber = store.get_subscriber(email)
        if subscriber is None:
            raise HTTPException(status_code=404, detail="Subscriber not found")
        if subscriber.get("status") == SubscriberStatus.UNSUBSCRIBED.value:
            return UnsubscribeResponse(success=True, deactivated=0, alreadyUnsubscribed=True)
        deactivated = store.unsubscribe(email)
    except ValueError as exc:
        if str(exc) == "Subscriber not found":
            raise HTTPException(status_code=404, detail=str(exc)) from exc
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    except StoreError as exc:
        raise HTTPException(status_code=502, detail=str(exc)) from exc
    logger.info("Subscriber unsubscribed: %s", email)
    return UnsubscribeResponse(success=True, deactivated=deactivated, alreadyUnsubscribed=False)


@app.post("/unsubscribe", response_model=UnsubscribeResponse)
def unsubscribe(payload: UnsubscribeRequest, store: RaceStore = Depends(get_store)):
    return _unsubscribe(store, payload.email)


@app.get("/unsubscribe")
def unsubscribe_link(
    email: Optional[str] = None,
    config: Settings = Depends(get_settings),
    store: RaceStore = Depends(get_store),
) -> RedirectResponse:
    """Target of the unsubscribe link in emails; redirects to the site's unsubscribe page."""

    page = f"{config.site_url.rstrip('/')}/unsubscribe"
    if not email:
        return RedirectResponse(f"{page}?{urlencode({'error': 'missing-email'})}", status_code=303)

    try:
        parsed = UnsubscribeRequest(email=email)
    except ValidationError:
        return RedirectResponse(f"{page}?{urlencode({'error': 'invalid-request'})}", status_code=303)

    try:
        result = _unsubscribe(store, parsed.email)
    except HTTPException as exc:
        return RedirectResponse(f"{page}?{urlencode({'error': str(exc.detail)})}", status_code=303)

    query = {"success": "true", "already": "true" if result.already_unsubscribed else "false"}
    return RedirectResponse(f"{page}?{urlencode(query)}", status_code=303)
