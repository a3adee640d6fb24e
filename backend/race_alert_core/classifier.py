from __future__ import annotations

from typing import Iterable, List

from .models import RaceStatus


def match_keywords(page_text: str, keywords: Iterable[str]) -> List[str]:
    """Return the keywords contained in ``page_text`` (case-insensitive)."""

    haystack = (page_text or "").lower()
    matches: List[str] = []
    for keyword in keywords or ():
        needle = (keyword or "").strip().lower()
        if needle and needle in haystack:
            matches.append(keyword)
    return matches


def classify(page_text: str, open_keywords: Iterable[str], closed_keywords: Iterable[str]) -> RaceStatus:
    """Guess the registration status of a page from its text.

    Closed keywords take precedence: leftover "register now" copy frequently
    survives on pages whose registration has already closed.
    """

    if match_keywords(page_text, closed_keywords):
        return RaceStatus.CLOSED
    if match_keywords(page_text, open_keywords):
        return RaceStatus.OPEN
    return RaceStatus.UNKNOWN
