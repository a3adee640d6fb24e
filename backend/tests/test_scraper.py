from __future__ import annotations

from typing import Dict, List

import pytest

from race_alert_core import FetchError, Race, RaceStatus, ScrapeOrchestrator, ScrapeResult, StoreError
from race_alert_core.scraper import fallback_races


class _FakeFetcher:
    def __init__(self, pages: Dict[str, object]) -> None:
        self.pages = pages
        self.calls: List[str] = []

    def fetch(self, url: str) -> str:
        self.calls.append(url)
        page = self.pages[url]
        if isinstance(page, Exception):
            raise page
        return str(page)


def _race(index: int, **kwargs) -> Race:
    return Race(
        id=f"race-{index}",
        name=f"Race {index}",
        url=f"https://races.example/{index}",
        open_keywords=kwargs.get("open_keywords", ["register now"]),
        closed_keywords=kwargs.get("closed_keywords", ["registration closed"]),
    )


def _orchestrator(fetcher, submit=None, sleeps: List[float] | None = None) -> ScrapeOrchestrator:
    recorded = sleeps if sleeps is not None else []
    return ScrapeOrchestrator(fetcher, submit=submit, pacing_delay_seconds=1.0, sleep=recorded.append)


def test_fetch_failure_does_not_abort_batch() -> None:
    races = [_race(i) for i in range(1, 6)]
    fetcher = _FakeFetcher(
        {
            races[0].url: "Register now for 2027",
            races[1].url: "Registration closed. Register now for updates",
            races[2].url: FetchError(races[2].url, "Timeout 30000ms exceeded"),
            races[3].url: "Nothing to see here",
            races[4].url: "REGISTER NOW",
        }
    )

    run = _orchestrator(fetcher).run(races)

    assert [result.race_id for result in run.results] == [race.id for race in races]
    assert [result.status for result in run.results] == [
        RaceStatus.OPEN,
        RaceStatus.CLOSED,
        RaceStatus.UNKNOWN,
        RaceStatus.UNKNOWN,
        RaceStatus.OPEN,
    ]
    failed = run.results[2]
    assert failed.error == "Timeout 30000ms exceeded"
    assert failed.content_snippet is None
    assert [result.race_id for result in run.errors] == ["race-3"]
    assert run.status_counts == {"closed": 1, "open": 2, "unknown": 2}


def test_unexpected_exception_is_isolated() -> None:
    races = [_race(1), _race(2)]
    fetcher = _FakeFetcher({races[0].url: RuntimeError("boom"), races[1].url: "register now"})

    run = _orchestrator(fetcher).run(races)

    assert run.results[0].status is RaceStatus.UNKNOWN
    assert run.results[0].error == "boom"
    assert run.results[1].status is RaceStatus.OPEN


def test_snippet_is_first_500_lowercased_chars() -> None:
    race = _race(1)
    text = "REGISTER NOW " + "x" * 1000
    run = _orchestrator(_FakeFetcher({race.url: text})).run([race])

    snippet = run.results[0].content_snippet
    assert snippet is not None
    assert len(snippet) == 500
    assert snippet.startswith("register now")


def test_pacing_delay_between_races_only() -> None:
    races = [_race(i) for i in range(1, 4)]
    fetcher = _FakeFetcher(
        {races[0].url: "x", races[1].url: FetchError(races[1].url, "net::ERR_NAME_NOT_RESOLVED"), races[2].url: "y"}
    )
    sleeps: List[float] = []

    _orchestrator(fetcher, sleeps=sleeps).run(races)

    assert sleeps == [1.0, 1.0]


def test_only_open_results_are_submitted_immediately() -> None:
    races = [_race(1), _race(2), _race(3)]
    fetcher = _FakeFetcher(
        {races[0].url: "registration closed", races[1].url: "register now", races[2].url: "register now"}
    )
    submitted: List[ScrapeResult] = []
    order: List[str] = []

    def submit(result: ScrapeResult) -> int:
        submitted.append(result)
        order.append(f"submit:{result.race_id}")
        return 2

    orchestrator = ScrapeOrchestrator(
        fetcher, submit=submit, pacing_delay_seconds=1.0, sleep=lambda _: order.append("sleep")
    )
    run = orchestrator.run(races)

    assert [result.race_id for result in submitted] == ["race-2", "race-3"]
    assert order == ["sleep", "submit:race-2", "sleep", "submit:race-3"]
    assert run.submitted == 2
    assert run.notifications_sent == 4


def test_submission_failure_is_logged_and_run_continues(caplog: pytest.LogCaptureFixture) -> None:
    races = [_race(1), _race(2)]
    fetcher = _FakeFetcher({races[0].url: "register now", races[1].url: "register now"})
    calls: List[str] = []

    def submit(result: ScrapeResult) -> int:
        calls.append(result.race_id)
        if result.race_id == "race-1":
            raise StoreError("Webhook failed with status 503")
        return 1

    run = _orchestrator(fetcher, submit=submit).run(races)

    assert calls == ["race-1", "race-2"]
    assert run.submit_failures == 1
    assert run.submitted == 1
    assert "Ingestion failed for race race-1" in caplog.text


def test_scrape_result_payload_shape() -> None:
    race = _race(1)
    run = _orchestrator(_FakeFetcher({race.url: "register now"})).run([race])

    payload = run.results[0].to_payload()
    assert payload["race_id"] == "race-1"
    assert payload["status"] == "open"
    assert payload["scraped_at"].endswith("Z")
    assert "error" not in payload


def test_fallback_races_have_keywords() -> None:
    races = fallback_races()
    assert {race.name for race in races} == {"Boston Marathon", "TCS London Marathon"}
    assert all(race.open_keywords and race.closed_keywords for race in races)
