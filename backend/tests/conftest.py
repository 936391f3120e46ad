"""Shared pytest fixtures for the execution engine test suite.

Provides:
- Test settings (fast condition polling, no plugin directory)
- A fresh RunContext per test
- FakePage / FakeLocator standing in for a Playwright page
- A HandlerRegistry with an empty plugin table plus test-only step types
"""

import asyncio
import os
import re
from typing import Any, Optional

import pytest

# Override settings BEFORE any app imports
os.environ.setdefault("ENVIRONMENT", "testing")
os.environ.setdefault("LOG_FORMAT", "text")
os.environ.setdefault("PLUGINS_DIR", "/nonexistent-automflows-plugins")

from app.config import get_settings  # noqa: E402
from core.exceptions import OperationError  # noqa: E402
from core.plugin_system import PluginManager, clear_hooks  # noqa: E402
from handlers.base import BaseHandler  # noqa: E402
from handlers.registry import HandlerRegistry  # noqa: E402
from workflow.context import RunContext  # noqa: E402


async def _hang() -> None:
    await asyncio.Event().wait()


# ---------------------------------------------------------------------------
# Playwright fakes
# ---------------------------------------------------------------------------

class FakeLocator:
    """Minimal async locator over FakePage state."""

    def __init__(self, page: "FakePage", selector: str):
        self.page = page
        self.selector = selector

    @property
    def first(self) -> "FakeLocator":
        return self

    async def wait_for(self, state: str = "visible", timeout: Optional[float] = None) -> None:
        if self.selector not in self.page.visible:
            await _hang()

    async def is_visible(self, timeout: Optional[float] = None) -> bool:
        return self.selector in self.page.visible

    async def is_hidden(self, timeout: Optional[float] = None) -> bool:
        return self.selector not in self.page.visible

    async def count(self) -> int:
        return self.page.counts.get(self.selector, 1 if self.selector in self.page.visible else 0)

    async def text_content(self, timeout: Optional[float] = None) -> Optional[str]:
        return self.page.texts.get(self.selector)

    async def get_attribute(self, name: str, timeout: Optional[float] = None) -> Optional[str]:
        return self.page.attributes.get((self.selector, name))

    async def input_value(self, timeout: Optional[float] = None) -> str:
        return self.page.values.get(self.selector, "")

    async def click(self, **kwargs: Any) -> None:
        self.page.actions.append(("click", self.selector, kwargs.get("button", "left")))

    async def dblclick(self, **kwargs: Any) -> None:
        self.page.actions.append(("dblclick", self.selector, kwargs.get("button", "left")))

    async def hover(self, **kwargs: Any) -> None:
        self.page.actions.append(("hover", self.selector, None))

    async def fill(self, text: str, **kwargs: Any) -> None:
        self.page.values[self.selector] = text
        self.page.actions.append(("fill", self.selector, text))

    async def clear(self, **kwargs: Any) -> None:
        self.page.values[self.selector] = ""

    async def press_sequentially(self, text: str, **kwargs: Any) -> None:
        self.page.values[self.selector] = self.page.values.get(self.selector, "") + text
        self.page.actions.append(("press_sequentially", self.selector, text))


class FakePage:
    """Async page double: visibility, texts and evaluate results are plain dicts."""

    def __init__(self, url: str = "about:blank"):
        self.url = url
        self.visible: set[str] = set()
        self.counts: dict[str, int] = {}
        self.texts: dict[str, str] = {}
        self.attributes: dict[tuple[str, str], str] = {}
        self.values: dict[str, str] = {}
        self.expressions: dict[str, Any] = {}
        self.actions: list[tuple] = []
        self.evaluated: list[tuple[str, Any]] = []
        self.evaluate_result: Any = None

    def locator(self, selector: str) -> FakeLocator:
        return FakeLocator(self, selector)

    def get_by_text(self, text: str) -> FakeLocator:
        return FakeLocator(self, f"text={text}")

    def get_by_test_id(self, test_id: str) -> FakeLocator:
        return FakeLocator(self, f"testid={test_id}")

    def get_by_role(self, role: str, **options: Any) -> FakeLocator:
        return FakeLocator(self, f"role={role}:{options.get('name', '')}")

    async def wait_for_selector(self, selector: str, state: str = "visible", timeout: Optional[float] = None):
        if selector not in self.visible:
            await _hang()

    async def wait_for_url(self, pattern: re.Pattern, timeout: Optional[float] = None) -> None:
        if not pattern.search(self.url):
            await _hang()

    async def wait_for_function(self, expression: str, timeout: Optional[float] = None) -> None:
        if not self.expressions.get(expression):
            await _hang()

    async def text_content(self, selector: str, timeout: Optional[float] = None) -> Optional[str]:
        return self.texts.get(selector)

    async def evaluate(self, script: str, arg: Any = None) -> Any:
        self.evaluated.append((script, arg))
        for expression, value in self.expressions.items():
            if script == f"() => ({expression})":
                return value
        if callable(self.evaluate_result):
            return self.evaluate_result(script, arg)
        return self.evaluate_result

    async def goto(self, url: str, **kwargs: Any) -> None:
        self.actions.append(("goto", url, kwargs.get("wait_until")))
        self.url = url

    async def reload(self, **kwargs: Any) -> None:
        self.actions.append(("reload", self.url, kwargs.get("wait_until")))


class FakeBrowserContext:
    def __init__(self):
        self.pages: list[FakePage] = []
        self.closed = False

    async def new_page(self) -> FakePage:
        page = FakePage()
        self.pages.append(page)
        return page

    async def close(self) -> None:
        self.closed = True


class FakeBrowser:
    def __init__(self):
        self.contexts: list[FakeBrowserContext] = []

    async def new_context(self, **options: Any) -> FakeBrowserContext:
        sub_context = FakeBrowserContext()
        self.contexts.append(sub_context)
        return sub_context


# ---------------------------------------------------------------------------
# Test-only step types
# ---------------------------------------------------------------------------

class RecordHandler(BaseHandler):
    """Appends ``(step id, variables.index, variables.item)`` to ``data["trace"]``."""

    step_type = "record"
    display_name = "Record"

    async def execute(self, step, context):
        entry = (step.id, context.get_variable("index"), context.get_variable("item"))
        context.data.setdefault("trace", []).append(entry)
        return step.config.get("output", step.id)


class FailHandler(BaseHandler):
    step_type = "fail"
    display_name = "Fail"

    async def execute(self, step, context):
        context.data.setdefault("trace", []).append((step.id, None, None))
        raise OperationError(step.config.get("message") or f"{step.id} failed")


class SlowHandler(BaseHandler):
    """Sleeps ``sleep`` ms, recording start and end markers."""

    step_type = "slow"
    display_name = "Slow"

    async def execute(self, step, context):
        context.data.setdefault("trace", []).append((f"{step.id}:start", None, None))
        await asyncio.sleep(step.config.get("sleep", 50) / 1000)
        context.data["trace"].append((f"{step.id}:end", None, None))
        return step.id


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------

@pytest.fixture
def settings(monkeypatch):
    """Live settings object with fast condition polling."""
    current = get_settings()
    monkeypatch.setattr(current, "CONDITION_POLL_INTERVAL_MS", 10)
    return current


@pytest.fixture
def context() -> RunContext:
    return RunContext()


@pytest.fixture
def page() -> FakePage:
    return FakePage(url="https://example.com/login")


@pytest.fixture
def page_context(page) -> RunContext:
    ctx = RunContext()
    ctx.set_page(page)
    return ctx


@pytest.fixture
def plugin_manager(tmp_path) -> PluginManager:
    return PluginManager(entry_point_group="automflows.tests.none", plugin_dir=str(tmp_path / "plugins"))


@pytest.fixture
def registry(plugin_manager) -> HandlerRegistry:
    reg = HandlerRegistry(plugin_manager=plugin_manager)
    reg.register("record", RecordHandler)
    reg.register("fail", FailHandler)
    reg.register("slow", SlowHandler)
    return reg


@pytest.fixture(autouse=True)
def _reset_hooks():
    clear_hooks()
    yield
    clear_hooks()


@pytest.fixture
def browser() -> FakeBrowser:
    return FakeBrowser()
