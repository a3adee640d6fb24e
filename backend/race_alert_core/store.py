from __future__ import annotations

import datetime as dt
import json
import logging
import threading
import uuid
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional, Tuple

import httpx

from .config import Settings
from .emails import registration_open_subject
from .errors import StoreError
from .models import (
    DeliveryStatus,
    NotificationBatch,
    Race,
    RaceStatus,
    SubscriberStatus,
    isoformat,
    normalise_email,
    utc_now,
)
from .scraper import fallback_races

logger = logging.getLogger(__name__)

# Local stores that share a data directory within one process share these locks.
_LOCK_REGISTRY = threading.Lock()
_IO_LOCKS: Dict[Path, threading.RLock] = {}
_RACE_LOCKS: Dict[Tuple[Path, str], threading.Lock] = {}


def _io_lock(data_dir: Path) -> threading.RLock:
    with _LOCK_REGISTRY:
        return _IO_LOCKS.setdefault(data_dir, threading.RLock())


def _race_lock(data_dir: Path, race_id: str) -> threading.Lock:
    with _LOCK_REGISTRY:
        return _RACE_LOCKS.setdefault((data_dir, race_id), threading.Lock())


class RaceStore:
    """Races, subscribers, subscriptions and notification records.

    Backed by Supabase (PostgREST + the ``ingest_race_transition`` function)
    when configured, otherwise by JSON files under ``settings.data_dir``.
    """

    races_table = "races"
    subscribers_table = "subscribers"
    subscriptions_table = "subscriptions"
    notifications_table = "notifications"
    ingest_function = "ingest_race_transition"

    def __init__(self, settings: Settings, timeout: float = 10.0) -> None:
        self.settings = settings
        self.timeout = timeout
        self.data_dir = Path(settings.data_dir).resolve()
        self.local_races_path = self.data_dir / "races_local.json"
        self.local_subscribers_path = self.data_dir / "subscribers_local.json"
        self.local_subscriptions_path = self.data_dir / "subscriptions_local.json"
        self.local_notifications_path = self.data_dir / "notifications_local.json"

    @property
    def remote(self) -> bool:
        return self.settings.supabase_configured

    # ------------------------------------------------------------------
    # Races

    def fetch_races(self, race_id: str | None = None, fallback: bool = True) -> List[Race]:
        """Races to scrape, falling back to a built-in list when the store is unavailable.

        With ``fallback=False`` store errors propagate and an empty store yields no races.
        """

        if not self.remote:
            races = self._load_local_races()
            if not races and fallback:
                logger.warning("Supabase is not configured and no local races exist; using fallback races")
                return self._filter_races(fallback_races(), race_id)
            return self._filter_races(races, race_id)

        params = {"select": "*", "order": "name.asc"}
        if race_id:
            params["id"] = f"eq.{race_id}"

        try:
            rows = self._supabase_request("GET", self.races_table, params=params)
        except (StoreError, ValueError) as exc:
            if not fallback:
                raise
            logger.error("Failed to fetch races (%s); using fallback races", exc)
            return self._filter_races(fallback_races(), race_id)

        races = [Race.from_row(row) for row in rows or [] if isinstance(row, dict)]
        logger.info("Fetched %d races from database", len(races))
        return races

    def get_race(self, race_id: str) -> Optional[Race]:
        if not self.remote:
            for race in self._load_local_races():
                if race.id == race_id:
                    return race
            return None

        rows = self._supabase_request(
            "GET",
            self.races_table,
            params={"select": "*", "id": f"eq.{race_id}", "limit": 1},
        )
        if isinstance(rows, list) and rows and isinstance(rows[0], dict):
            return Race.from_row(rows[0])
        return None

    def create_race(self, payload: Dict[str, Any]) -> Race:
        name = str(payload.get("name") or "").strip()
        url = str(payload.get("url") or "").strip()
        if not name or not url:
            raise ValueError("Race name and url are required")

        record = {
            "name": name,
            "url": url,
            "open_keywords": [str(item) for item in payload.get("open_keywords") or []],
            "closed_keywords": [str(item) for item in payload.get("closed_keywords") or []],
            "current_status": RaceStatus.parse(payload.get("current_status") or "unknown").value,
        }
        if payload.get("id"):
            record["id"] = str(payload["id"])

        if not self.remote:
            return self._create_race_local(record)

        rows = self._supabase_request(
            "POST",
            self.races_table,
            params={"select": "*"},
            payload=record,
            prefer="return=representation",
        )
        if isinstance(rows, list) and rows:
            return Race.from_row(rows[0])
        raise StoreError("Unexpected response when creating race")

    # ------------------------------------------------------------------
    # Transition gate

    def ingest(
        self,
        race_id: str,
        new_status: RaceStatus | str,
        scraped_at: dt.datetime | None = None,
    ) -> NotificationBatch:
        """Record a scraped status and materialise a notification batch on a move into open.

        The read-compare-write-insert sequence runs atomically per race, so of
        several concurrent calls reporting the same opening only one creates
        records. Raises ``ValueError`` for an unknown race and ``StoreError``
        when the store cannot be reached; in that case nothing has changed.
        """

        status = RaceStatus.parse(new_status)
        scraped_at = scraped_at or utc_now()

        if not self.remote:
            return self._ingest_local(race_id, status, scraped_at)

        payload = {
            "p_race_id": race_id,
            "p_new_status": status.value,
            "p_scraped_at": isoformat(scraped_at),
            "p_cooldown_seconds": self.settings.cooldown_seconds,
        }
        try:
            rows = self._supabase_request("POST", f"rpc/{self.ingest_function}", payload=payload)
        except ValueError as exc:
            if "race not found" in str(exc).lower():
                raise ValueError("Race not found") from exc
            raise

        row = rows[0] if isinstance(rows, list) and rows else rows
        if not isinstance(row, dict):
            raise StoreError("Unexpected response from ingest_race_transition")

        batch_id = row.get("batch_id")
        return NotificationBatch(
            race_id=race_id,
            notifications_created=int(row.get("notifications_created") or 0),
            batch_id=str(batch_id) if batch_id else None,
            previous_status=RaceStatus.parse(row.get("previous_status") or "unknown"),
            current_status=RaceStatus.parse(row.get("current_status") or status.value),
        )

    def _ingest_local(self, race_id: str, status: RaceStatus, scraped_at: dt.datetime) -> NotificationBatch:
        with _race_lock(self.data_dir, race_id):
            race = self.get_race(race_id)
            if race is None:
                raise ValueError("Race not found")

            previous = race.current_status
            now = utc_now()
            batch_id: Optional[str] = None
            created = 0

            if self._qualifies(race, status, now):
                recipients = self._active_recipients_local(race_id)
                if recipients:
                    batch_id = str(uuid.uuid4())
                    records = [
                        {
                            "id": str(uuid.uuid4()),
                            "race_id": race_id,
                            "batch_id": batch_id,
                            "recipient_email": email,
                            "subject": registration_open_subject(race.name),
                            "delivery_status": DeliveryStatus.PENDING.value,
                            "delivery_error": None,
                            "delivered_at": None,
                            "created_at": isoformat(now),
                        }
                        for email in recipients
                    ]
                    with _io_lock(self.data_dir):
                        data = self._read_json_file(self.local_notifications_path, [])
                        data.extend(records)
                        self._write_json_file(self.local_notifications_path, data)
                    created = len(records)

            def _apply(row: Dict[str, Any]) -> None:
                row["current_status"] = status.value
                row["last_scraped_at"] = isoformat(scraped_at)
                if created:
                    row["last_notified_at"] = isoformat(now)

            try:
                self._update_local_race(race_id, _apply)
            except StoreError:
                if batch_id is not None:
                    self._discard_batch_local(batch_id)
                raise

        return NotificationBatch(
            race_id=race_id,
            notifications_created=created,
            batch_id=batch_id,
            previous_status=previous,
            current_status=status,
        )

    def _qualifies(self, race: Race, status: RaceStatus, now: dt.datetime) -> bool:
        if status is not RaceStatus.OPEN or race.current_status is RaceStatus.OPEN:
            return False
        cooldown = self.settings.cooldown_seconds
        if cooldown and race.last_notified_at is not None:
            if now - race.last_notified_at < dt.timedelta(seconds=cooldown):
                logger.info("Race %s re-opened within the notification cooldown; no new batch", race.id)
                return False
        return True

    # ------------------------------------------------------------------
    # Notification records

    def fetch_batch_recipients(self, batch_id: str) -> List[str]:
        """Recipient addresses of exactly the records created by one transition."""

        if not self.remote:
            with _io_lock(self.data_dir):
                data = self._read_json_file(self.local_notifications_path, [])
            return sorted(
                row["recipient_email"]
                for row in data
                if isinstance(row, dict) and row.get("batch_id") == batch_id
            )

        rows = self._supabase_request(
            "GET",
            self.notifications_table,
            params={
                "select": "recipient_email",
                "batch_id": f"eq.{batch_id}",
                "order": "recipient_email.asc",
            },
        )
        return [
            str(row["recipient_email"])
            for row in rows or []
            if isinstance(row, dict) and row.get("recipient_email")
        ]

    def mark_batch_delivery(self, batch_id: str, status: DeliveryStatus, error: str | None = None) -> int:
        values = {
            "delivery_status": status.value,
            "delivery_error": error,
            "delivered_at": isoformat(utc_now()) if status is DeliveryStatus.SENT else None,
        }

        if not self.remote:
            updated = 0
            with _io_lock(self.data_dir):
                data = self._read_json_file(self.local_notifications_path, [])
                for row in data:
                    if isinstance(row, dict) and row.get("batch_id") == batch_id:
                        row.update(values)
                        updated += 1
                self._write_json_file(self.local_notifications_path, data)
            return updated

        rows = self._supabase_request(
            "PATCH",
            self.notifications_table,
            params={"batch_id": f"eq.{batch_id}", "select": "id"},
            payload=values,
            prefer="return=representation",
        )
        return len(rows) if isinstance(rows, list) else 0

    def fetch_notifications(self, race_id: str | None = None) -> List[Dict[str, Any]]:
        if not self.remote:
            with _io_lock(self.data_dir):
                data = self._read_json_file(self.local_notifications_path, [])
            return [
                row for row in data
                if isinstance(row, dict) and (race_id is None or row.get("race_id") == race_id)
            ]

        params = {"select": "*", "order": "created_at.asc"}
        if race_id:
            params["race_id"] = f"eq.{race_id}"
        rows = self._supabase_request("GET", self.notifications_table, params=params)
        return [row for row in rows or [] if isinstance(row, dict)]

    # ------------------------------------------------------------------
    # Subscribers

    def upsert_subscriber(self, email: str, timezone: str = "UTC") -> Dict[str, Any]:
        address = normalise_email(email)
        if not address or "@" not in address:
            raise ValueError("A valid email address is required")

        record = {
            "email": address,
            "status": SubscriberStatus.ACTIVE.value,
            "timezone": (timezone or "UTC").strip() or "UTC",
        }

        if not self.remote:
            with _io_lock(self.data_dir):
                data = self._read_json_file(self.local_subscribers_path, [])
                for row in data:
                    if isinstance(row, dict) and row.get("email") == address:
                        row.update(record)
                        row["updated_at"] = isoformat(utc_now())
                        self._write_json_file(self.local_subscribers_path, data)
                        return dict(row)
                entry = {"id": str(uuid.uuid4()), **record, "created_at": isoformat(utc_now())}
                data.append(entry)
                self._write_json_file(self.local_subscribers_path, data)
                return dict(entry)

        rows = self._supabase_request(
            "POST",
            self.subscribers_table,
            params={"on_conflict": "email", "select": "*"},
            payload=record,
            prefer="resolution=merge-duplicates,return=representation",
        )
        if isinstance(rows, list) and rows and isinstance(rows[0], dict):
            return rows[0]
        raise StoreError("Unexpected response when saving subscriber")

    def get_subscriber(self, email: str) -> Optional[Dict[str, Any]]:
        address = normalise_email(email)

        if not self.remote:
            with _io_lock(self.data_dir):
                data = self._read_json_file(self.local_subscribers_path, [])
            for row in data:
                if isinstance(row, dict) and row.get("email") == address:
                    return dict(row)
            return None

        rows = self._supabase_request(
            "GET",
            self.subscribers_table,
            params={"select": "*", "email": f"eq.{address}", "limit": 1},
        )
        if isinstance(rows, list) and rows and isinstance(rows[0], dict):
            return rows[0]
        return None

    def subscribe(
        self,
        email: str,
        race_ids: Iterable[str] | None = None,
        timezone: str = "UTC",
    ) -> Dict[str, Any]:
        """Create or re-activate a subscriber and their subscriptions.

        ``race_ids=None`` subscribes to every race.
        """

        known = {race.id for race in self.fetch_races(fallback=False)}
        if race_ids is None:
            wanted = sorted(known)
        else:
            wanted = sorted({str(race_id) for race_id in race_ids})
            missing = [race_id for race_id in wanted if race_id not in known]
            if missing:
                raise ValueError(f"Unknown race ids: {', '.join(missing)}")

        subscriber = self.upsert_subscriber(email, timezone)

        records = [
            {"subscriber_id": subscriber["id"], "race_id": race_id, "is_active": True}
            for race_id in wanted
        ]

        if not self.remote:
            with _io_lock(self.data_dir):
                data = self._read_json_file(self.local_subscriptions_path, [])
                index = {
                    (row.get("subscriber_id"), row.get("race_id")): row
                    for row in data
                    if isinstance(row, dict)
                }
                for record in records:
                    existing = index.get((record["subscriber_id"], record["race_id"]))
                    if existing is not None:
                        existing["is_active"] = True
                    else:
                        data.append({"id": str(uuid.uuid4()), **record, "created_at": isoformat(utc_now())})
                self._write_json_file(self.local_subscriptions_path, data)
        elif records:
            self._supabase_request(
                "POST",
                self.subscriptions_table,
                params={"on_conflict": "subscriber_id,race_id", "select": "id"},
                payload=records,
                prefer="resolution=merge-duplicates,return=representation",
            )

        return {"subscriber": subscriber, "subscriptions": len(records)}

    def unsubscribe(self, email: str) -> int:
        """Mark the subscriber unsubscribed and deactivate (never delete) their subscriptions."""

        address = normalise_email(email)

        if not self.remote:
            with _io_lock(self.data_dir):
                subscribers = self._read_json_file(self.local_subscribers_path, [])
                subscriber = next(
                    (row for row in subscribers if isinstance(row, dict) and row.get("email") == address),
                    None,
                )
                if subscriber is None:
                    raise ValueError("Subscriber not found")
                subscriber["status"] = SubscriberStatus.UNSUBSCRIBED.value
                subscriber["updated_at"] = isoformat(utc_now())
                self._write_json_file(self.local_subscribers_path, subscribers)

                subscriptions = self._read_json_file(self.local_subscriptions_path, [])
                deactivated = 0
                for row in subscriptions:
                    if isinstance(row, dict) and row.get("subscriber_id") == subscriber["id"] and row.get("is_active"):
                        row["is_active"] = False
                        deactivated += 1
                self._write_json_file(self.local_subscriptions_path, subscriptions)
            return deactivated

        rows = self._supabase_request(
            "PATCH",
            self.subscribers_table,
            params={"email": f"eq.{address}", "select": "id"},
            payload={"status": SubscriberStatus.UNSUBSCRIBED.value},
            prefer="return=representation",
        )
        if not isinstance(rows, list) or not rows:
            raise ValueError("Subscriber not found")

        deactivated = self._supabase_request(
            "PATCH",
            self.subscriptions_table,
            params={"subscriber_id": f"eq.{rows[0]['id']}", "is_active": "is.true", "select": "id"},
            payload={"is_active": False},
            prefer="return=representation",
        )
        return len(deactivated) if isinstance(deactivated, list) else 0

    # ------------------------------------------------------------------
    # Local JSON store helpers

    def _load_local_races(self) -> List[Race]:
        with _io_lock(self.data_dir):
            data = self._read_json_file(self.local_races_path, [])
        return [Race.from_row(row) for row in data if isinstance(row, dict)]

    def _filter_races(self, races: List[Race], race_id: str | None) -> List[Race]:
        if not race_id:
            return races
        return [race for race in races if race.id == race_id]

    def _create_race_local(self, record: Dict[str, Any]) -> Race:
        entry = {
            "id": record.get("id") or str(uuid.uuid4()),
            "last_scraped_at": None,
            "last_notified_at": None,
            **record,
        }
        with _io_lock(self.data_dir):
            data = self._read_json_file(self.local_races_path, [])
            if any(isinstance(row, dict) and row.get("id") == entry["id"] for row in data):
                raise ValueError(f"Race {entry['id']} already exists")
            data.append(entry)
            self._write_json_file(self.local_races_path, data)
        return Race.from_row(entry)

    def _update_local_race(self, race_id: str, apply) -> None:
        with _io_lock(self.data_dir):
            data = self._read_json_file(self.local_races_path, [])
            for row in data:
                if isinstance(row, dict) and row.get("id") == race_id:
                    apply(row)
                    break
            else:
                raise ValueError("Race not found")
            self._write_json_file(self.local_races_path, data)

    def _discard_batch_local(self, batch_id: str) -> None:
        # The race row was not updated, so its records must not survive either.
        with _io_lock(self.data_dir):
            data = self._read_json_file(self.local_notifications_path, [])
            kept = [row for row in data if not (isinstance(row, dict) and row.get("batch_id") == batch_id)]
            try:
                self._write_json_file(self.local_notifications_path, kept)
            except StoreError as exc:
                logger.error("Could not roll back notification batch %s: %s", batch_id, exc)

    def _active_recipients_local(self, race_id: str) -> List[str]:
        with _io_lock(self.data_dir):
            subscribers = self._read_json_file(self.local_subscribers_path, [])
            subscriptions = self._read_json_file(self.local_subscriptions_path, [])

        active = {
            row["id"]: row["email"]
            for row in subscribers
            if isinstance(row, dict) and row.get("status") == SubscriberStatus.ACTIVE.value
        }
        recipients = {
            active[row["subscriber_id"]]
            for row in subscriptions
            if isinstance(row, dict)
            and row.get("race_id") == race_id
            and row.get("is_active")
            and row.get("subscriber_id") in active
        }
        return sorted(recipients)

    def _read_json_file(self, path: Path, default: Any) -> Any:
        try:
            if not path.exists():
                return default
            with path.open("r", encoding="utf-8") as handle:
                return json.load(handle)
        except (OSError, json.JSONDecodeError) as exc:
            logger.warning("Falling back to default for %s due to read error: %s", path, exc)
            return default

    def _write_json_file(self, path: Path, data: Any) -> None:
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            tmp_path = path.with_suffix(path.suffix + ".tmp")
            with tmp_path.open("w", encoding="utf-8") as handle:
                json.dump(data, handle, indent=2, sort_keys=True)
            tmp_path.replace(path)
        except OSError as exc:
            raise StoreError(f"Failed to write local data store {path}") from exc

    # ---- internal Supabase helpers -------------------------------------------------

    def _supabase_endpoint(self, path: str) -> str:
        return f"{self.settings.supabase_url.rstrip('/')}/rest/v1/{path}"

    def _supabase_headers(self, prefer: str | None = None) -> Dict[str, str]:
        key = self.settings.supabase_key
        schema = self.settings.supabase_schema
        headers = {
            "apikey": key,
            "Authorization": f"Bearer {key}",
            "Accept": "application/json",
            "Content-Type": "application/json",
        }
        if schema and schema != "public":
            headers["Accept-Profile"] = schema
            headers["Content-Profile"] = schema
        if prefer:
            headers["Prefer"] = prefer
        return headers

    def _supabase_request(
        self,
        method: str,
        path: str,
        params: Dict[str, Any] | None = None,
        payload: Any = None,
        prefer: str | None = None,
    ) -> Any:
        """Perform one PostgREST call.

        Transport failures, auth failures and 5xx responses become
        ``StoreError``; other 4xx responses become ``ValueError`` carrying
        Supabase's message.
        """

        endpoint = self._supabase_endpoint(path)
        headers = self._supabase_headers(prefer)
        try:
            with httpx.Client(timeout=self.timeout) as client:
                if method == "GET":
                    response = client.get(endpoint, params=params, headers=headers)
                elif method == "POST":
                    response = client.post(endpoint, params=params, json=payload, headers=headers)
                elif method == "PATCH":
                    response = client.patch(endpoint, params=params, json=payload, headers=headers)
                else:
                    raise ValueError(f"Unsupported method {method}")
                response.raise_for_status()
        except httpx.HTTPStatusError as exc:
            status_code = exc.response.status_code if exc.response is not None else 502
            detail = self._extract_supabase_detail(exc.response)
            if status_code >= 500 or status_code in (401, 403):
                raise StoreError(f"Supabase {method} {path} failed ({status_code}): {detail or exc}") from exc
            raise ValueError(detail or f"Supabase rejected {method} {path} ({status_code})") from exc
        except httpx.HTTPError as exc:
            raise StoreError(f"Supabase {method} {path} unavailable: {exc}") from exc

        if not response.content:
            return None
        try:
            return response.json()
        except ValueError as exc:
            raise StoreError(f"Supabase {method} {path} returned invalid JSON") from exc

    def _extract_supabase_detail(self, response: httpx.Response | None) -> str | None:
        if response is None:
            return None
        try:
            payload = response.json()
        except ValueError:
            text = (response.text or "").strip()
            return text or None

        if isinstance(payload, dict):
            for key in ("message", "detail", "error", "hint", "code"):
                value = payload.get(key)
                if isinstance(value, str) and value.strip():
                    return value.strip()
        if isinstance(payload, list) and payload:
            first = payload[0]
            if isinstance(first, dict):
                for key in ("message", "detail", "error", "hint", "code"):
                    value = first.get(key)
                    if isinstance(value, str) and value.strip():
                        return value.strip()
        return None
