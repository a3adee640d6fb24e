from __future__ import annotations

import datetime as dt
import logging
import sys
from pathlib import Path

LOG_FORMAT = "[%(asctime)s] %(levelname)s: %(message)s"


def configure_logging(log_dir: Path | None = None, level: int = logging.INFO) -> logging.Logger:
    """Log to stdout and, when possible, to ``<log_dir>/scraper-YYYY-MM-DD.log``."""

    root = logging.getLogger()
    root.setLevel(level)
    for handler in list(root.handlers):
        root.removeHandler(handler)

    formatter = logging.Formatter(LOG_FORMAT)
    stream = logging.StreamHandler(sys.stdout)
    stream.setFormatter(formatter)
    root.addHandler(stream)

    if log_dir is not None:
        try:
            log_dir.mkdir(parents=True, exist_ok=True)
            log_file = log_dir / f"scraper-{dt.date.today().isoformat()}.log"
            file_handler = logging.FileHandler(log_file, encoding="utf-8")
        except OSError as exc:
            root.warning("Could not create log file in %s: %s", log_dir, exc)
        else:
            file_handler.setFormatter(formatter)
            root.addHandler(file_handler)

    return root
