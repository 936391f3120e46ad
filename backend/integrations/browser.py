"""Playwright integration: browser sessions and locator construction.

Requires: playwright (pip install playwright && playwright install chromium)
Playwright is imported lazily so the engine, its tests and the API can run
on machines without browser binaries.
"""

import asyncio
from typing import Any, Optional

import structlog

from app.config import get_settings
from core.exceptions import ConfigurationError, OperationError

logger = structlog.get_logger(__name__)

SELECTOR_TYPES = (
    "css",
    "xpath",
    "text",
    "getByRole",
    "getByText",
    "getByLabel",
    "getByPlaceholder",
    "getByTestId",
    "getByTitle",
    "getByAltText",
)

_GET_BY_METHODS = {
    "getByText": "get_by_text",
    "getByLabel": "get_by_label",
    "getByPlaceholder": "get_by_placeholder",
    "getByTestId": "get_by_test_id",
    "getByTitle": "get_by_title",
    "getByAltText": "get_by_alt_text",
}


def _parse_scalar(value: str) -> Any:
    if value == "true":
        return True
    if value == "false":
        return False
    try:
        return float(value) if "." in value else int(value)
    except ValueError:
        return value


def _parse_role_selector(selector: str) -> tuple[str, dict[str, Any]]:
    """Parse ``role:button,name:Submit,exact:true`` into ``("button", {...})``."""
    role: Optional[str] = None
    options: dict[str, Any] = {}
    for part in selector.split(","):
        part = part.strip()
        key, sep, value = part.partition(":")
        if not sep:
            raise ConfigurationError(
                f'Invalid getByRole selector "{part}": expected "role:value" or "role:value,name:value"'
            )
        key, value = key.strip(), value.strip()
        if key == "role":
            role = value
        elif key == "name":
            options["name"] = value
        else:
            options[key] = _parse_scalar(value)
    if not role:
        raise ConfigurationError(f'getByRole selector "{selector}" is missing a role')
    return role, options


def create_locator(page: Any, selector: str, selector_type: str = "css") -> Any:
    """Build a Playwright locator from a selector string and selector type."""
    if not selector or not str(selector).strip():
        raise ConfigurationError("Selector cannot be empty")
    selector_type = selector_type or "css"

    if selector_type == "css":
        return page.locator(selector)
    if selector_type == "xpath":
        return page.locator(f"xpath={selector}")
    if selector_type == "text":
        return page.locator(f"text={selector}")
    if selector_type == "getByRole":
        role, options = _parse_role_selector(selector)
        return page.get_by_role(role, **options)
    if selector_type in _GET_BY_METHODS:
        return getattr(page, _GET_BY_METHODS[selector_type])(selector)

    raise ConfigurationError(
        f'Unknown selector type "{selector_type}". Supported: {", ".join(SELECTOR_TYPES)}'
    )


def selector_expression(selector: str, selector_type: str = "css") -> str:
    """Selector string for APIs that take a raw selector (page.wait_for_selector)."""
    if selector_type == "xpath":
        return f"xpath={selector}"
    if selector_type == "text":
        return f"text={selector}"
    return selector


# ─── Browser session ──────────────────────────────────────────

class BrowserSession:
    """One Playwright browser per run.

    The session owns the playwright driver and the browser; the run context
    holds the page and any named sub-contexts created from it.
    """

    def __init__(self):
        self._pw = None
        self.browser = None
        self.context = None
        self.page = None
        self._lock = asyncio.Lock()

    async def open(
        self,
        browser_type: Optional[str] = None,
        headless: Optional[bool] = None,
        viewport: Optional[dict[str, int]] = None,
        user_agent: Optional[str] = None,
    ) -> Any:
        """Launch the browser and return the first page."""
        settings = get_settings()
        async with self._lock:
            if self.page is not None:
                return self.page
            try:
                from playwright.async_api import async_playwright
            except ImportError as e:
                raise OperationError(
                    "Playwright not installed. Run: pip install playwright && playwright install chromium"
                ) from e

            browser_type = browser_type or settings.BROWSER_DEFAULT
            headless = settings.BROWSER_HEADLESS if headless is None else headless

            self._pw = await async_playwright().start()
            launcher = getattr(self._pw, browser_type, None)
            if launcher is None:
                await self._pw.stop()
                self._pw = None
                raise ConfigurationError(f'Unknown browser type "{browser_type}"')

            self.browser = await launcher.launch(headless=headless)
            context_options: dict[str, Any] = {}
            if viewport:
                context_options["viewport"] = viewport
            if user_agent:
                context_options["user_agent"] = user_agent
            self.context = await self.browser.new_context(**context_options)
            self.page = await self.context.new_page()
            logger.info("Browser session created", browser_type=browser_type, headless=headless)
            return self.page

    async def close(self) -> None:
        """Close the browser and stop the driver."""
        try:
            if self.browser:
                await self.browser.close()
            if self._pw:
                await self._pw.stop()
        except Exception as e:
            logger.warning("Error closing browser session", error=str(e))
        finally:
            self._pw = None
            self.browser = None
            self.context = None
            self.page = None
