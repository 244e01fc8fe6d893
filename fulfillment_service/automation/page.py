"""
Capability interface the checkout script is written against, plus the
Playwright adapter used in production.
"""

import functools
from typing import Optional, Protocol

from playwright.async_api import Error as PlaywrightError
from playwright.async_api import Page
from playwright.async_api import TimeoutError as PlaywrightTimeout

from fulfillment_service.core.exceptions import AutomationTimeoutError, ExternalAutomationError


class AutomationPage(Protocol):
    async def navigate(self, url: str) -> None: ...

    async def fill(self, selector: str, value: str) -> None: ...

    async def click(self, selector: str) -> None: ...

    async def exists(self, selector: str) -> bool: ...

    async def wait_for(self, selector: str, timeout_ms: int) -> None: ...

    async def wait_for_settled(self, timeout_ms: int) -> None: ...

    async def read_attribute(self, selector: str, name: str) -> Optional[str]: ...

    async def read_text(self, selector: str) -> Optional[str]: ...


def _translate_errors(func):
    @functools.wraps(func)
    async def wrapper(self, *args, **kwargs):
        try:
            return await func(self, *args, **kwargs)
        except PlaywrightTimeout as e:
            raise AutomationTimeoutError(f"{func.__name__}{args!r} timed out: {e.message}") from e
        except PlaywrightError as e:
            raise ExternalAutomationError(f"{func.__name__}{args!r} failed: {e.message}") from e
    return wrapper


class PlaywrightPage:
    """Adapts a Playwright page to :class:`AutomationPage`.

    Steps without an explicit timeout fall back to the defaults set on the
    owning browser context.
    """

    def __init__(self, page: Page) -> None:
        self._page = page

    @_translate_errors
    async def navigate(self, url: str) -> None:
        await self._page.goto(url, wait_until="domcontentloaded")

    @_translate_errors
    async def fill(self, selector: str, value: str) -> None:
        await self._page.fill(selector, value)

    @_translate_errors
    async def click(self, selector: str) -> None:
        await self._page.click(selector)

    @_translate_errors
    async def exists(self, selector: str) -> bool:
        return await self._page.query_selector(selector) is not None

    @_translate_errors
    async def wait_for(self, selector: str, timeout_ms: int) -> None:
        await self._page.wait_for_selector(selector, timeout=timeout_ms)

    @_translate_errors
    async def wait_for_settled(self, timeout_ms: int) -> None:
        await self._page.wait_for_load_state("networkidle", timeout=timeout_ms)

    @_translate_errors
    async def read_attribute(self, selector: str, name: str) -> Optional[str]:
        element = await self._page.query_selector(selector)
        if element is None:
            return None
        return await element.get_attribute(name)

    @_translate_errors
    async def read_text(self, selector: str) -> Optional[str]:
        element = await self._page.query_selector(selector)
        if element is None:
            return None
        text = await element.text_content()
        return text.strip() if text else None
