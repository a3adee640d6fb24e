"""Scrape every configured race once and submit openings to the ingestion webhook."""

from __future__ import annotations

import argparse
import logging
from dataclasses import replace
from typing import List, Optional

from race_alert_core import RaceAlertError, RaceStore, ScrapeOrchestrator, Settings
from race_alert_core.fetcher import PageFetcher
from race_alert_core.ingest_client import IngestClient
from race_alert_core.logging_setup import configure_logging

logger = logging.getLogger("race_alert.scraper")


def _parse_args(argv: Optional[List[str]]) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description=__doc__)
    parser.add_argument("--race-id", help="Only scrape this race (overrides SPECIFIC_RACE_ID)")
    parser.add_argument("--verbose", action="store_true", help="Enable debug logging")
    return parser.parse_args(argv)


def main(argv: Optional[List[str]] = None) -> int:
    args = _parse_args(argv)

    try:
        settings = Settings.from_env()
    except RaceAlertError as exc:
        configure_logging(None)
        logger.error("Invalid configuration: %s", exc)
        return 1

    if args.race_id:
        settings = replace(settings, specific_race_id=args.race_id)

    configure_logging(settings.log_dir, logging.DEBUG if args.verbose else logging.INFO)
    logger.info("Starting race registration scraper")

    races = RaceStore(settings).fetch_races(settings.specific_race_id)
    if not races:
        logger.warning("No races to scrape")
        return 0

    submitter = IngestClient.from_settings(settings)
    try:
        with PageFetcher.from_settings(settings) as fetcher:
            orchestrator = ScrapeOrchestrator(
                fetcher,
                submit=submitter.submit,
                pacing_delay_seconds=settings.pacing_delay_seconds,
            )
            run = orchestrator.run(races)
    except RaceAlertError as exc:
        logger.error("Fatal error: %s", exc)
        return 1

    if run.submit_failures:
        logger.warning("%d open results could not be ingested", run.submit_failures)
    logger.info("Scraper finished")
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
