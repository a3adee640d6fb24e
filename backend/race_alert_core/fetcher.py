from __future__ import annotations

import logging
import time
from typing import Callable, Optional, Protocol

from playwright.sync_api import Browser, Error as PlaywrightError, Playwright, sync_playwright

from .config import Settings
from .errors import BrowserLaunchError, FetchError

logger = logging.getLogger(__name__)

USER_AGENT = (
    "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 "
    "(KHTML, like Gecko) Chrome/124.0 Safari/537.36"
)


class Fetcher(Protocol):
    def fetch(self, url: str) -> str:
        ...


class PageFetcher:
    """Loads race pages in headless Chromium and returns their visible text.

    Use as a context manager so the browser is always shut down::

        with PageFetcher.from_settings(settings) as fetcher:
            text = fetcher.fetch(url)
    """

    def __init__(
        self,
        timeout_seconds: float = 30.0,
        settle_delay_seconds: float = 2.0,
        user_agent: str = USER_AGENT,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.timeout_ms = int(timeout_seconds * 1000)
        self.settle_delay_ms = int(settle_delay_seconds * 1000)
        self.user_agent = user_agent
        self.clock = clock
        self._playwright: Optional[Playwright] = None
        self._browser: Optional[Browser] = None

    @classmethod
    def from_settings(cls, settings: Settings) -> "PageFetcher":
        return cls(
            timeout_seconds=settings.page_timeout_seconds,
            settle_delay_seconds=settings.settle_delay_seconds,
        )

    def start(self) -> None:
        if self._browser is not None:
            return
        try:
            self._playwright = sync_playwright().start()
            self._browser = self._playwright.chromium.launch(
                headless=True,
                args=["--no-sandbox", "--disable-setuid-sandbox"],
            )
        except PlaywrightError as exc:
            self.close()
            raise BrowserLaunchError(f"Failed to launch Chromium: {exc}") from exc
        logger.debug("Chromium launched")

    def close(self) -> None:
        if self._browser is not None:
            try:
                self._browser.close()
            except PlaywrightError as exc:
                logger.warning("Failed to close browser cleanly: %s", exc)
            self._browser = None
        if self._playwright is not None:
            self._playwright.stop()
            self._playwright = None

    def __enter__(self) -> "PageFetcher":
        self.start()
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()

    def fetch(self, url: str) -> str:
        """Visible text of ``url``; the whole load shares one ``timeout_seconds`` budget."""

        if self._browser is None:
            raise BrowserLaunchError("PageFetcher.fetch called before start()")

        deadline = self.clock() + self.timeout_ms / 1000
        try:
            page = self._browser.new_page(user_agent=self.user_agent)
        except PlaywrightError as exc:
            raise FetchError(url, f"Could not open a browser page: {exc}") from exc

        try:
            page.set_default_timeout(self._remaining_ms(deadline))
            page.goto(url, wait_until="domcontentloaded", timeout=self._remaining_ms(deadline))
            settle = min(self.settle_delay_ms, self._remaining_ms(deadline))
            if settle > 1:
                page.wait_for_timeout(settle)
            return page.inner_text("body", timeout=self._remaining_ms(deadline)) or ""
        except PlaywrightError as exc:
            # playwright's TimeoutError subclasses Error
            raise FetchError(url, str(exc).splitlines()[0] if str(exc) else type(exc).__name__) from exc
        finally:
            try:
                page.close()
            except PlaywrightError:
                logger.debug("Page already closed for %s", url)

    def _remaining_ms(self, deadline: float) -> int:
        # Playwright treats 0 as "no timeout", so never go below 1ms.
        return max(int((deadline - self.clock()) * 1000), 1)
