from __future__ import annotations

import logging
import time
from abc import ABC, abstractmethod
from typing import Any, Callable, Optional, Tuple

from playwright.sync_api import ElementHandle as PlaywrightElementHandle
from playwright.sync_api import Locator, Page
from playwright.sync_api import TimeoutError as PlaywrightTimeoutError

logger = logging.getLogger(__name__)


class ElementHandle(ABC):
    @abstractmethod
    def text(self) -> str:
        ...

    @abstractmethod
    def get_attribute(self, name: str) -> Optional[str]:
        ...


class PageDriver(ABC):
    """The browser page as seen by the executor.

    All timeouts are in seconds. Implementations raise their native
    errors; the executor classifies them."""

    @property
    @abstractmethod
    def url(self) -> str:
        ...

    @abstractmethod
    def navigate(self, url: str, timeout: float) -> None:
        ...

    @abstractmethod
    def content(self) -> str:
        ...

    @abstractmethod
    def locate(self, selector: str) -> Optional[ElementHandle]:
        ...

    @abstractmethod
    def click(self, selector: str, timeout: float) -> None:
        ...

    @abstractmethod
    def fill(self, selector: str, value: str, timeout: float) -> None:
        ...

    @abstractmethod
    def select_option(self, selector: str, value: str, timeout: float) -> None:
        ...

    @abstractmethod
    def wait_for_selector(self, selector: str, timeout: float) -> None:
        ...

    @abstractmethod
    def wait_for_timeout(self, ms: float) -> None:
        ...

    @abstractmethod
    def evaluate(self, script: str) -> Any:
        ...


def _ms(seconds: float) -> float:
    """Playwright milliseconds; never 0, which Playwright reads as "no timeout"."""
    return max(seconds * 1000, 1.0)


class PlaywrightElement(ElementHandle):
    def __init__(self, handle: PlaywrightElementHandle) -> None:
        self._handle = handle

    def text(self) -> str:
        return (self._handle.inner_text() or self._handle.text_content() or "").strip()

    def get_attribute(self, name: str) -> Optional[str]:
        return self._handle.get_attribute(name)


class PlaywrightPage(PageDriver):
    """Adapter over playwright.sync_api.Page.

    Each call spends at most `timeout` seconds in total: when one call
    makes two Playwright requests, the second gets what the first left."""

    def __init__(self, page: Page, network_idle: bool = True, clock: Callable[[], float] = time.monotonic) -> None:
        self._page = page
        self._network_idle = network_idle
        self._clock = clock

    @property
    def url(self) -> str:
        return self._page.url

    def _remaining(self, deadline: float) -> float:
        return deadline - self._clock()

    def navigate(self, url: str, timeout: float) -> None:
        deadline = self._clock() + timeout
        self._page.goto(url, timeout=_ms(timeout), wait_until="domcontentloaded")
        left = self._remaining(deadline)
        if not self._network_idle or left <= 0:
            return
        try:
            self._page.wait_for_load_state("networkidle", timeout=_ms(left))
        except PlaywrightTimeoutError:
            # The DOM is loaded; pages with long-polling never go idle.
            logger.debug("No network idle on %s within %.1fs", url, left)

    def content(self) -> str:
        return self._page.content()

    def locate(self, selector: str) -> Optional[ElementHandle]:
        handle = self._page.query_selector(selector)
        return PlaywrightElement(handle) if handle is not None else None

    def _visible(self, selector: str, timeout: float) -> Tuple[Locator, float]:
        deadline = self._clock() + timeout
        locator = self._page.locator(selector).first
        locator.wait_for(state="visible", timeout=_ms(timeout))
        return locator, self._remaining(deadline)

    def click(self, selector: str, timeout: float) -> None:
        locator, left = self._visible(selector, timeout)
        locator.click(timeout=_ms(left))

    def fill(self, selector: str, value: str, timeout: float) -> None:
        locator, left = self._visible(selector, timeout)
        locator.fill(value, timeout=_ms(left))

    def select_option(self, selector: str, value: str, timeout: float) -> None:
        locator, left = self._visible(selector, timeout)
        locator.select_option(value, timeout=_ms(left))

    def wait_for_selector(self, selector: str, timeout: float) -> None:
        self._page.wait_for_selector(selector, timeout=_ms(timeout), state="visible")

    def wait_for_timeout(self, ms: float) -> None:
        self._page.wait_for_timeout(ms)

    def evaluate(self, script: str) -> Any:
        return self._page.evaluate(script)
