from __future__ import annotations

from typing import Any, List

import pytest
from playwright.sync_api import Error as PlaywrightError, TimeoutError as PlaywrightTimeoutError

from race_alert_core import BrowserLaunchError, FetchError
from race_alert_core import fetcher as fetcher_module
from race_alert_core.fetcher import PageFetcher


class _FakeClock:
    def __init__(self) -> None:
        self.now = 100.0

    def __call__(self) -> float:
        return self.now


class _FakePage:
    def __init__(
        self,
        failure: Exception | None = None,
        text: str = "Register now",
        clock: _FakeClock | None = None,
        load_seconds: float = 0.0,
    ) -> None:
        self.failure = failure
        self.clock = clock
        self.load_seconds = load_seconds
        self.text_timeout: float | None = None
        self.text = text
        self.closed = False
        self.visited: List[str] = []
        self.waits: List[int] = []

    def set_default_timeout(self, timeout: float) -> None:
        self.default_timeout = timeout

    def goto(self, url: str, wait_until: str, timeout: float) -> None:
        self.visited.append(url)
        self.goto_timeout = timeout
        if self.clock is not None:
            self.clock.now += self.load_seconds
        if self.failure is not None:
            raise self.failure

    def wait_for_timeout(self, timeout: float) -> None:
        self.waits.append(timeout)

    def inner_text(self, selector: str, timeout: float) -> str:
        assert selector == "body"
        self.text_timeout = timeout
        return self.text

    def close(self) -> None:
        self.closed = True


class _FakeBrowser:
    def __init__(self, pages: List[_FakePage]) -> None:
        self.pages = pages
        self.closed = False
        self.user_agents: List[str] = []

    def new_page(self, user_agent: str) -> _FakePage:
        self.user_agents.append(user_agent)
        return self.pages.pop(0)

    def close(self) -> None:
        self.closed = True


class _FakePlaywright:
    def __init__(self, browser: _FakeBrowser | None, launch_error: Exception | None = None) -> None:
        self.browser = browser
        self.launch_error = launch_error
        self.stopped = False
        self.launch_args: dict[str, Any] = {}
        self.chromium = self

    def launch(self, **kwargs: Any) -> _FakeBrowser:
        self.launch_args = kwargs
        if self.launch_error is not None:
            raise self.launch_error
        return self.browser

    def stop(self) -> None:
        self.stopped = True


def _install(monkeypatch: pytest.MonkeyPatch, playwright: _FakePlaywright) -> None:
    class _Starter:
        def start(self) -> _FakePlaywright:
            return playwright

    monkeypatch.setattr(fetcher_module, "sync_playwright", lambda: _Starter())


def test_fetch_returns_body_text_and_closes_page(monkeypatch: pytest.MonkeyPatch) -> None:
    page = _FakePage(text="Registration is OPEN")
    playwright = _FakePlaywright(_FakeBrowser([page]))
    _install(monkeypatch, playwright)

    with PageFetcher(timeout_seconds=30, settle_delay_seconds=2, clock=_FakeClock()) as fetcher:
        text = fetcher.fetch("https://races.example/boston")

    assert text == "Registration is OPEN"
    assert page.closed
    assert page.goto_timeout == 30000
    assert page.waits == [2000]
    assert playwright.launch_args["headless"] is True
    assert playwright.browser.closed
    assert playwright.stopped


@pytest.mark.parametrize(
    "failure",
    [
        PlaywrightTimeoutError("Timeout 30000ms exceeded.\n=== logs ==="),
        PlaywrightError("net::ERR_NAME_NOT_RESOLVED at https://races.example/x"),
    ],
)
def test_navigation_errors_become_fetch_errors(monkeypatch: pytest.MonkeyPatch, failure: Exception) -> None:
    page = _FakePage(failure=failure)
    _install(monkeypatch, _FakePlaywright(_FakeBrowser([page])))

    with PageFetcher(settle_delay_seconds=0) as fetcher:
        with pytest.raises(FetchError) as excinfo:
            fetcher.fetch("https://races.example/x")

    assert excinfo.value.url == "https://races.example/x"
    assert "\n" not in excinfo.value.message
    assert page.closed


def test_launch_failure_is_fatal(monkeypatch: pytest.MonkeyPatch) -> None:
    playwright = _FakePlaywright(None, launch_error=PlaywrightError("Executable doesn't exist"))
    _install(monkeypatch, playwright)

    with pytest.raises(BrowserLaunchError, match="Executable doesn't exist"):
        PageFetcher().start()
    assert playwright.stopped


def test_fetch_before_start_is_rejected() -> None:
    with pytest.raises(BrowserLaunchError):
        PageFetcher().fetch("https://races.example/x")


def test_steps_share_one_deadline(monkeypatch: pytest.MonkeyPatch) -> None:
    clock = _FakeClock()
    page = _FakePage(clock=clock, load_seconds=27.0)
    _install(monkeypatch, _FakePlaywright(_FakeBrowser([page])))

    with PageFetcher(timeout_seconds=30, settle_delay_seconds=5, clock=clock) as fetcher:
        fetcher.fetch("https://races.example/slow")

    assert page.goto_timeout == 30000
    assert page.waits == [3000]
    assert page.text_timeout == 3000
