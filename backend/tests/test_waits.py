"""Tests for the wait orchestrator."""

import asyncio
import time

import pytest

from core.exceptions import ConfigurationError, NotFoundError, WaitTimeoutError
from workflow.waits import WaitSpec, WaitStrategy, WaitTiming, execute_waits, url_pattern


class _DelayedPage:
    """Every wait resolves after a fixed delay."""

    def __init__(self, delay_s: float):
        self.delay_s = delay_s

    async def wait_for_selector(self, selector, state="visible", timeout=None):
        await asyncio.sleep(self.delay_s)

    async def wait_for_url(self, pattern, timeout=None):
        await asyncio.sleep(self.delay_s)

    async def wait_for_function(self, expression, timeout=None):
        await asyncio.sleep(self.delay_s)


# ─── config parsing ───

@pytest.mark.unit
class TestWaitSpec:
    def test_flat_keys(self, context):
        context.set_variable("sel", "#ready")
        spec = WaitSpec.from_config(
            {
                "waitForSelector": "${variables.sel}",
                "waitForSelectorTimeout": "2000",
                "waitForUrl": "/dashboard",
                "waitStrategy": "sequential",
                "waitAfterOperation": True,
                "failSilently": True,
            },
            context,
        )
        assert spec.selector == "#ready"
        assert spec.selector_timeout == 2000
        assert spec.url == "/dashboard"
        assert spec.strategy == WaitStrategy.SEQUENTIAL
        assert spec.timing == WaitTiming.AFTER
        assert spec.fail_silently is True
        assert spec.has_waits

    def test_nested_wait_object(self):
        spec = WaitSpec.from_config({"wait": {"waitForCondition": "window.ok", "timeout": 500}})
        assert spec.expression == "window.ok"
        assert spec.default_timeout == 500
        assert spec.timing == WaitTiming.BEFORE

    def test_no_waits(self):
        assert not WaitSpec.from_config({}).has_waits

    def test_unknown_strategy(self):
        with pytest.raises(ConfigurationError):
            WaitSpec.from_config({"waitForSelector": "#a", "waitStrategy": "random"})

    def test_url_pattern(self):
        assert url_pattern("/\\/users\\/\\d+/").search("https://x/users/42")
        assert url_pattern("a.b").search("a.b")
        assert not url_pattern("a.b").search("axb")


# ─── execution ───

@pytest.mark.unit
class TestExecuteWaits:
    @pytest.mark.asyncio
    async def test_satisfied_waits_return(self, page):
        page.visible.add("#ready")
        page.expressions["window.ok"] = True
        spec = WaitSpec(selector="#ready", url="/login", expression="window.ok", default_timeout=500)
        await execute_waits(page, spec)

    @pytest.mark.asyncio
    async def test_selector_timeout(self, page):
        spec = WaitSpec(selector="#never", selector_timeout=500)
        with pytest.raises(WaitTimeoutError) as exc_info:
            await execute_waits(page, spec)
        assert "#never" in exc_info.value.message
        assert "500" in exc_info.value.message
        assert exc_info.value.status_code == 504

    @pytest.mark.asyncio
    async def test_non_css_selector_uses_locator(self, page):
        page.visible.add("text=Welcome")
        await execute_waits(page, WaitSpec(selector="Welcome", selector_type="text", default_timeout=200))

    @pytest.mark.asyncio
    async def test_fail_silently_swallows_timeout(self, page):
        spec = WaitSpec(url="/never", url_timeout=50, fail_silently=True)
        await execute_waits(page, spec)

    @pytest.mark.asyncio
    @pytest.mark.parametrize("strategy", ["parallel", "sequential"])
    async def test_fail_silently_keeps_configuration_errors(self, page, strategy):
        spec = WaitSpec.from_config({"waitForUrl": "/[unclosed/", "failSilently": True, "waitStrategy": strategy})
        with pytest.raises(ConfigurationError, match="Invalid regex"):
            await execute_waits(page, spec)

    @pytest.mark.asyncio
    async def test_missing_page(self):
        with pytest.raises(NotFoundError):
            await execute_waits(None, WaitSpec(selector="#a"))

    @pytest.mark.asyncio
    async def test_parallel_takes_the_longest_wait(self):
        spec = WaitSpec(selector="#a", url="/b", expression="c", strategy=WaitStrategy.PARALLEL)
        started = time.monotonic()
        await execute_waits(_DelayedPage(0.1), spec)
        elapsed = time.monotonic() - started
        assert elapsed < 0.25

    @pytest.mark.asyncio
    async def test_sequential_takes_the_sum(self):
        spec = WaitSpec(selector="#a", url="/b", expression="c", strategy=WaitStrategy.SEQUENTIAL)
        started = time.monotonic()
        await execute_waits(_DelayedPage(0.1), spec)
        elapsed = time.monotonic() - started
        assert elapsed >= 0.29

    @pytest.mark.asyncio
    async def test_parallel_first_failure_wins(self, page):
        page.visible.add("#ok")
        spec = WaitSpec(selector="#ok", expression="never()", expression_timeout=100, default_timeout=5000)
        started = time.monotonic()
        with pytest.raises(WaitTimeoutError):
            await execute_waits(page, spec)
        assert time.monotonic() - started < 1
