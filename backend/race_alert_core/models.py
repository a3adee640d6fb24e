from __future__ import annotations

import datetime as dt
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional

SNIPPET_LENGTH = 500


class RaceStatus(str, Enum):
    UNKNOWN = "unknown"
    OPEN = "open"
    CLOSED = "closed"
    FULL = "full"

    @classmethod
    def parse(cls, value: Any) -> "RaceStatus":
        if isinstance(value, cls):
            return value
        try:
            return cls(str(value or "").strip().lower())
        except ValueError as exc:
            raise ValueError(f"Unknown race status '{value}'") from exc


class SubscriberStatus(str, Enum):
    PENDING = "pending"
    ACTIVE = "active"
    BOUNCED = "bounced"
    UNSUBSCRIBED = "unsubscribed"
    COMPLAINED = "complained"


class DeliveryStatus(str, Enum):
    PENDING = "pending"
    SENT = "sent"
    FAILED = "failed"


def utc_now() -> dt.datetime:
    return dt.datetime.now(dt.timezone.utc).replace(microsecond=0)


def isoformat(value: dt.datetime | None) -> str | None:
    if value is None:
        return None
    if value.tzinfo is None:
        value = value.replace(tzinfo=dt.timezone.utc)
    return value.astimezone(dt.timezone.utc).isoformat().replace("+00:00", "Z")


def parse_timestamp(value: Any) -> dt.datetime | None:
    if value in (None, ""):
        return None
    if isinstance(value, dt.datetime):
        parsed = value
    else:
        text = str(value).strip()
        if text.endswith("Z"):
            text = text[:-1] + "+00:00"
        try:
            parsed = dt.datetime.fromisoformat(text)
        except ValueError:
            return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=dt.timezone.utc)
    return parsed


def normalise_email(email: str) -> str:
    return (email or "").strip().lower()


@dataclass
class Race:
    """A monitored race registration page and its last accepted status."""

    id: str
    name: str
    url: str
    open_keywords: List[str] = field(default_factory=list)
    closed_keywords: List[str] = field(default_factory=list)
    current_status: RaceStatus = RaceStatus.UNKNOWN
    last_scraped_at: Optional[dt.datetime] = None
    last_notified_at: Optional[dt.datetime] = None

    @classmethod
    def from_row(cls, row: Dict[str, Any]) -> "Race":
        try:
            status = RaceStatus.parse(row.get("current_status") or "unknown")
        except ValueError:
            status = RaceStatus.UNKNOWN
        return cls(
            id=str(row.get("id") or "").strip(),
            name=str(row.get("name") or "").strip(),
            url=str(row.get("url") or "").strip(),
            open_keywords=_keyword_list(row.get("open_keywords")),
            closed_keywords=_keyword_list(row.get("closed_keywords")),
            current_status=status,
            last_scraped_at=parse_timestamp(row.get("last_scraped_at")),
            last_notified_at=parse_timestamp(row.get("last_notified_at")),
        )

    def to_row(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "url": self.url,
            "open_keywords": list(self.open_keywords),
            "closed_keywords": list(self.closed_keywords),
            "current_status": self.current_status.value,
            "last_scraped_at": isoformat(self.last_scraped_at),
            "last_notified_at": isoformat(self.last_notified_at),
        }


def _keyword_list(raw: Any) -> List[str]:
    if not isinstance(raw, (list, tuple, set)):
        return []
    return [str(item).strip() for item in raw if str(item or "").strip()]


@dataclass
class ScrapeResult:
    race_id: str
    status: RaceStatus
    scraped_at: dt.datetime = field(default_factory=utc_now)
    content_snippet: Optional[str] = None
    error: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.error is None

    def to_payload(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {
            "race_id": self.race_id,
            "status": self.status.value,
            "scraped_at": isoformat(self.scraped_at),
        }
        if self.content_snippet is not None:
            payload["content_snippet"] = self.content_snippet
        if self.error is not None:
            payload["error"] = self.error
        return payload


@dataclass
class NotificationBatch:
    """Outcome of one ingestion call.

    ``batch_id`` identifies the NotificationRecords created by this transition
    and is ``None`` when nothing was created.
    """

    race_id: str
    notifications_created: int = 0
    batch_id: Optional[str] = None
    previous_status: RaceStatus = RaceStatus.UNKNOWN
    current_status: RaceStatus = RaceStatus.UNKNOWN

    @property
    def created(self) -> bool:
        return bool(self.batch_id) and self.notifications_created > 0
