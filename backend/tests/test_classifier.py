from race_alert_core import RaceStatus, classify, match_keywords


def test_empty_keyword_lists_are_always_unknown() -> None:
    assert classify("registration is open, register now", [], []) is RaceStatus.UNKNOWN
    assert classify("", [], []) is RaceStatus.UNKNOWN


def test_closed_keyword_wins_over_open_keyword() -> None:
    text = "registration open but now registration closed"
    assert classify(text, ["open"], ["closed"]) is RaceStatus.CLOSED


def test_open_keyword_detected() -> None:
    text = "the 2027 ballot is open until friday"
    assert classify(text, ["ballot is open", "enter ballot"], ["ballot closed"]) is RaceStatus.OPEN


def test_matching_is_case_insensitive() -> None:
    assert classify("REGISTER NOW for Boston", ["register now"], []) is RaceStatus.OPEN
    assert classify("registration has closed", [], ["Registration Has Closed"]) is RaceStatus.CLOSED


def test_no_match_is_unknown() -> None:
    assert classify("results from last year", ["register now"], ["sold out"]) is RaceStatus.UNKNOWN


def test_blank_keywords_are_ignored() -> None:
    assert classify("anything at all", ["", "   "], [""]) is RaceStatus.UNKNOWN


def test_match_keywords_returns_matches_in_order() -> None:
    matches = match_keywords("Apply now - registration is open", ["registration is open", "sold out", "apply now"])
    assert matches == ["registration is open", "apply now"]
