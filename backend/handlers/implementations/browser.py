"""Browser handlers (Playwright).

The browser session is stored in the run context's connection table under
``BROWSER_CONNECTION_KEY`` so run cleanup closes it even when the workflow
has no closeBrowser step.
"""

import asyncio
from typing import Any, Dict, Optional

import structlog

from core.exceptions import ConfigurationError, NotFoundError
from handlers.base import BaseHandler
from integrations.browser import BrowserSession, create_locator
from verification.base import require_page
from workflow.context import RunContext
from workflow.graph import Step
from workflow.interpolation import VariableInterpolator
from workflow.waits import WaitSpec, WaitStrategy, execute_waits

logger = structlog.get_logger(__name__)

BROWSER_CONNECTION_KEY = "browser"

NAVIGATION_ACTIONS = ("navigate", "goBack", "goForward", "reload")
WAIT_UNTIL_STATES = ("load", "domcontentloaded", "networkidle", "commit")
CLICK_ACTIONS = ("click", "doubleClick", "hover", "rightClick")
INPUT_METHODS = ("fill", "type", "append")
WAIT_TYPES = ("timeout", "selector", "url", "condition")


def _timeout(step: Step, context: RunContext) -> int:
    return int(VariableInterpolator.interpolate_number(step.config.get("timeout"), context, 30000))


def _locator(step: Step, context: RunContext) -> Any:
    page = require_page(context)
    selector = VariableInterpolator.interpolate_string(step.config.get("selector"), context)
    if not selector:
        raise ConfigurationError(f"selector is required for {step.type} step")
    return create_locator(page, selector, step.config.get("selectorType") or "css").first, selector


class OpenBrowserHandler(BaseHandler):
    step_type = "openBrowser"
    display_name = "Open Browser"
    description = "Launch a browser and open the first page"
    category = "browser"

    async def execute(self, step: Step, context: RunContext) -> Any:
        config = step.config
        existing = context.get_connection(BROWSER_CONNECTION_KEY)
        if existing is not None:
            logger.warning("Browser already open, reusing session", step_id=step.id)
            return {"reused": True}

        viewport = config.get("viewport")
        if viewport is not None and not isinstance(viewport, dict):
            raise ConfigurationError("viewport must be an object with width and height")

        session = BrowserSession()
        page = await session.open(
            browser_type=config.get("browser"),
            headless=None if config.get("headless") is None else bool(config.get("headless")),
            viewport=viewport,
            user_agent=VariableInterpolator.interpolate_string(config.get("userAgent"), context),
        )
        context.set_connection(BROWSER_CONNECTION_KEY, session)
        context.set_browser(session.browser)
        context.set_page(page)
        return {"browser": config.get("browser") or "default"}


class CloseBrowserHandler(BaseHandler):
    step_type = "closeBrowser"
    display_name = "Close Browser"
    description = "Close the browser opened by openBrowser"
    category = "browser"

    async def execute(self, step: Step, context: RunContext) -> Any:
        session = context.remove_connection(BROWSER_CONNECTION_KEY)
        if session is None:
            logger.warning("No browser session to close", step_id=step.id)
        else:
            await session.close()
        context.set_page(None)
        context.set_browser(None)
        context.sub_contexts.clear()
        context.current_sub_context_key = None
        return None


class NavigateHandler(BaseHandler):
    step_type = "navigate"
    display_name = "Navigate"
    description = "Go to a URL, back, forward or reload"
    category = "browser"

    async def execute(self, step: Step, context: RunContext) -> Any:
        page = require_page(context)
        action = step.config.get("action") or "navigate"
        if action not in NAVIGATION_ACTIONS:
            raise ConfigurationError(
                f'Unknown navigation action "{action}". Supported: {", ".join(NAVIGATION_ACTIONS)}'
            )
        wait_until = step.config.get("waitUntil") or "load"
        if wait_until not in WAIT_UNTIL_STATES:
            raise ConfigurationError(
                f'Unknown waitUntil "{wait_until}". Supported: {", ".join(WAIT_UNTIL_STATES)}'
            )
        timeout = _timeout(step, context)

        if action == "navigate":
            url = VariableInterpolator.interpolate_string(step.config.get("url"), context)
            if not url:
                raise ConfigurationError("url is required for navigate step")
            if "://" not in url and not url.startswith(("about:", "data:")):
                url = f"https://{url}"
            await page.goto(url, wait_until=wait_until, timeout=timeout)
        elif action == "goBack":
            await page.go_back(wait_until=wait_until, timeout=timeout)
        elif action == "goForward":
            await page.go_forward(wait_until=wait_until, timeout=timeout)
        else:
            await page.reload(wait_until=wait_until, timeout=timeout)

        return {"action": action, "url": page.url}

    @classmethod
    def get_config_schema(cls) -> Dict[str, Any]:
        return {
            "type": "object",
            "properties": {
                "action": {"type": "string", "enum": list(NAVIGATION_ACTIONS)},
                "url": {"type": "string"},
                "waitUntil": {"type": "string", "enum": list(WAIT_UNTIL_STATES)},
                "timeout": {"type": "integer", "default": 30000},
            },
        }


class ActionHandler(BaseHandler):
    step_type = "action"
    display_name = "Click / Hover"
    description = "Click, double-click, right-click or hover an element"
    category = "browser"

    async def execute(self, step: Step, context: RunContext) -> Any:
        action = step.config.get("action") or "click"
        if action not in CLICK_ACTIONS:
            raise ConfigurationError(f'Unknown action "{action}". Supported: {", ".join(CLICK_ACTIONS)}')
        locator, selector = _locator(step, context)
        timeout = _timeout(step, context)

        if action == "click":
            await locator.click(button=step.config.get("button") or "left", timeout=timeout)
        elif action == "doubleClick":
            await locator.dblclick(button=step.config.get("button") or "left", timeout=timeout)
        elif action == "rightClick":
            await locator.click(button="right", timeout=timeout)
        else:
            await locator.hover(timeout=timeout)

        delay = VariableInterpolator.interpolate_number(step.config.get("delay"), context)
        if delay:
            await asyncio.sleep(delay / 1000)
        return {"action": action, "selector": selector}


class TypeHandler(BaseHandler):
    """Fill (default), type key by key, or append text to an input."""

    step_type = "type"
    display_name = "Type Text"
    description = "Enter text into an input element"
    category = "browser"

    async def execute(self, step: Step, context: RunContext) -> Any:
        if step.config.get("text") is None:
            raise ConfigurationError("text is required for type step")
        method = step.config.get("inputMethod") or "fill"
        if method not in INPUT_METHODS:
            raise ConfigurationError(f'Unknown inputMethod "{method}". Supported: {", ".join(INPUT_METHODS)}')

        text = str(VariableInterpolator.interpolate_string(step.config.get("text"), context))
        locator, selector = _locator(step, context)
        timeout = _timeout(step, context)
        delay = VariableInterpolator.interpolate_number(step.config.get("delay"), context, 0)

        if method == "fill":
            await locator.fill(text, timeout=timeout)
        else:
            if method == "type" and step.config.get("clearFirst", True):
                await locator.clear(timeout=timeout)
            await locator.press_sequentially(text, delay=delay, timeout=timeout)
        return {"selector": selector, "length": len(text)}


class WaitHandler(BaseHandler):
    """Explicit wait step: a fixed pause or one selector/url/condition wait."""

    step_type = "wait"
    display_name = "Wait"
    description = "Pause or wait for a selector, URL or page condition"
    category = "browser"

    def attempt_timeout_ms(self, step: Step, context: RunContext) -> Optional[float]:
        # Each wait carries its own bound
        return None

    async def execute(self, step: Step, context: RunContext) -> Any:
        wait_type = step.config.get("waitType") or "timeout"
        if wait_type not in WAIT_TYPES:
            raise ConfigurationError(f'Unknown waitType "{wait_type}". Supported: {", ".join(WAIT_TYPES)}')
        value = step.config.get("value")
        if value is None or value == "":
            raise ConfigurationError(f"value is required for {wait_type} wait")

        if wait_type == "timeout":
            duration = VariableInterpolator.interpolate_number(value, context)
            if duration is None or duration < 0:
                raise ConfigurationError("value must be a non-negative number of milliseconds")
            await asyncio.sleep(duration / 1000)
            return {"waitType": wait_type, "duration": duration}

        field = {"selector": "waitForSelector", "url": "waitForUrl", "condition": "waitForCondition"}[wait_type]
        spec = WaitSpec.from_config(
            {
                field: value,
                "waitForSelectorType": step.config.get("selectorType") or "css",
                "timeout": step.config.get("timeout"),
                "waitStrategy": WaitStrategy.SEQUENTIAL.value,
            },
            context,
        )
        await execute_waits(context.get_page(), spec)
        return {"waitType": wait_type}


class NewContextHandler(BaseHandler):
    """Open an isolated browser context (own cookies/storage) under ``contextKey``."""

    step_type = "newContext"
    display_name = "New Browser Context"
    description = "Create an isolated browser context and switch to it"
    category = "browser"

    async def execute(self, step: Step, context: RunContext) -> Any:
        key = VariableInterpolator.interpolate_string(step.config.get("contextKey"), context)
        if not key:
            raise ConfigurationError("contextKey is required for newContext step")
        if context.get_browser() is None:
            raise NotFoundError("No browser available. Ensure an openBrowser step runs first")
        if context.get_sub_context(key) is not None:
            raise ConfigurationError(f'Browser context "{key}" already exists')

        options: dict[str, Any] = {}
        if step.config.get("viewport"):
            options["viewport"] = step.config["viewport"]
        if step.config.get("userAgent"):
            options["user_agent"] = VariableInterpolator.interpolate_string(step.config["userAgent"], context)
        await context.create_sub_context(key, **options)
        return {"contextKey": key}


class SwitchContextHandler(BaseHandler):
    step_type = "switchContext"
    display_name = "Switch Browser Context"
    description = "Make a named browser context current"
    category = "browser"

    async def execute(self, step: Step, context: RunContext) -> Any:
        key = VariableInterpolator.interpolate_string(step.config.get("contextKey"), context)
        if not key:
            raise ConfigurationError("contextKey is required for switchContext step")
        sub_context = context.get_sub_context(key)
        if sub_context is None:
            raise NotFoundError(f'Browser context "{key}" not found', available=context.sub_contexts.keys())

        pages = list(getattr(sub_context, "pages", []) or [])
        page = pages[0] if pages else await sub_context.new_page()
        context.set_sub_context(key, sub_context)
        context.set_page(page)
        return {"contextKey": key}


BROWSER_HANDLER_TYPES = {
    "openBrowser": OpenBrowserHandler,
    "closeBrowser": CloseBrowserHandler,
    "navigate": NavigateHandler,
    "action": ActionHandler,
    "type": TypeHandler,
    "wait": WaitHandler,
    "newContext": NewContextHandler,
    "switchContext": SwitchContextHandler,
}
