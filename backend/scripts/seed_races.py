"""CLI helper for loading monitored races from a JSON file into the race store."""

from __future__ import annotations

import argparse
import json
import sys
from pathlib import Path
from typing import List, Optional

from race_alert_core import RaceAlertError, RaceStore, Settings

DEFAULT_SEED = Path(__file__).resolve().parent.parent / "data" / "races_seed.json"


def main(argv: Optional[List[str]] = None) -> int:
    parser = argparse.ArgumentParser(description=__doc__)
    parser.add_argument("path", nargs="?", type=Path, default=DEFAULT_SEED)
    args = parser.parse_args(argv)

    try:
        rows = json.loads(args.path.read_text(encoding="utf-8"))
    except (OSError, json.JSONDecodeError) as exc:
        print(f"ERROR: could not read {args.path}: {exc}", file=sys.stderr)
        return 1

    store = RaceStore(Settings.from_env())
    try:
        existing = {race.url for race in store.fetch_races(fallback=False)}
    except (ValueError, RaceAlertError) as exc:
        print(f"ERROR: could not list existing races: {exc}", file=sys.stderr)
        return 1

    created = skipped = 0
    errors: List[str] = []
    for row in rows if isinstance(rows, list) else []:
        if not isinstance(row, dict):
            continue
        if row.get("url") in existing:
            skipped += 1
            continue
        try:
            race = store.create_race(row)
        except (ValueError, RaceAlertError) as exc:
            errors.append(f"{row.get('name')}: {exc}")
            continue
        created += 1
        print(f"Created {race.name} ({race.id})")

    print(f"Races: {created} created, {skipped} already present")
    for item in errors:
        print(f"  - {item}", file=sys.stderr)
    return 1 if errors else 0


if __name__ == "__main__":
    raise SystemExit(main())
