from __future__ import annotations

import logging
import time
from collections import Counter
from dataclasses import dataclass, field
from typing import Callable, Dict, List, Optional, Sequence

from .classifier import classify, match_keywords
from .errors import FetchError, RaceAlertError
from .fetcher import Fetcher
from .models import SNIPPET_LENGTH, Race, RaceStatus, ScrapeResult, utc_now

logger = logging.getLogger(__name__)

Submitter = Callable[[ScrapeResult], int]

FALLBACK_RACES: List[Dict[str, object]] = [
    {
        "id": "1",
        "name": "Boston Marathon",
        "url": "https://www.baa.org/races/boston-marathon/enter/registration",
        "open_keywords": ["registration is open", "register now", "apply now"],
        "closed_keywords": ["registration closed", "registration has closed"],
    },
    {
        "id": "2",
        "name": "TCS London Marathon",
        "url": "https://www.londonmarathonevents.co.uk/london-marathon/enter-ballot",
        "open_keywords": ["ballot is open", "enter ballot"],
        "closed_keywords": ["ballot closed", "ballot has closed"],
    },
]


def fallback_races() -> List[Race]:
    return [Race.from_row(dict(row)) for row in FALLBACK_RACES]


@dataclass
class ScrapeRun:
    results: List[ScrapeResult] = field(default_factory=list)
    submitted: int = 0
    submit_failures: int = 0
    notifications_sent: int = 0

    @property
    def status_counts(self) -> Dict[str, int]:
        counts = Counter(result.status.value for result in self.results)
        return dict(sorted(counts.items()))

    @property
    def errors(self) -> List[ScrapeResult]:
        return [result for result in self.results if not result.ok]


class ScrapeOrchestrator:
    """Visits each race in turn, classifies it and forwards openings for ingestion.

    Races are processed strictly one after another with a fixed pause between
    them; a failure on one race is recorded as an ``unknown`` result and never
    stops the run.
    """

    def __init__(
        self,
        fetcher: Fetcher,
        submit: Optional[Submitter] = None,
        pacing_delay_seconds: float = 1.0,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.fetcher = fetcher
        self.submit = submit
        self.pacing_delay_seconds = pacing_delay_seconds
        self._sleep = sleep

    def run(self, races: Sequence[Race]) -> ScrapeRun:
        run = ScrapeRun()
        for index, race in enumerate(races):
            result = self.scrape_race(race)
            run.results.append(result)

            if result.status is RaceStatus.OPEN:
                self._submit(result, run)

            if self.pacing_delay_seconds and index < len(races) - 1:
                self._sleep(self.pacing_delay_seconds)

        logger.info("Scraping completed. Processed %d races", len(run.results))
        logger.info("Status summary: %s", run.status_counts)
        return run

    def scrape_race(self, race: Race) -> ScrapeResult:
        logger.info("Scraping %s: %s", race.name, race.url)
        try:
            page_text = self.fetcher.fetch(race.url)
        except FetchError as exc:
            logger.error("Error scraping %s: %s", race.name, exc.message)
            return ScrapeResult(race_id=race.id, status=RaceStatus.UNKNOWN, error=exc.message)
        except Exception as exc:
            logger.exception("Unexpected error scraping %s", race.name)
            return ScrapeResult(race_id=race.id, status=RaceStatus.UNKNOWN, error=str(exc) or type(exc).__name__)

        text = (page_text or "").lower()
        status = classify(text, race.open_keywords, race.closed_keywords)
        logger.info(
            "%s status: %s (open keywords: %s, closed keywords: %s)",
            race.name,
            status.value,
            match_keywords(text, race.open_keywords) or "none",
            match_keywords(text, race.closed_keywords) or "none",
        )
        return ScrapeResult(
            race_id=race.id,
            status=status,
            scraped_at=utc_now(),
            content_snippet=text[:SNIPPET_LENGTH],
        )

    def _submit(self, result: ScrapeResult, run: ScrapeRun) -> None:
        if self.submit is None:
            logger.warning("No ingestion target configured; open result for race %s not submitted", result.race_id)
            return
        try:
            sent = self.submit(result)
        except RaceAlertError as exc:
            run.submit_failures += 1
            logger.error("Ingestion failed for race %s: %s", result.race_id, exc)
            return
        run.submitted += 1
        run.notifications_sent += sent
        logger.info("Ingestion accepted race %s. Notifications: %d", result.race_id, sent)
