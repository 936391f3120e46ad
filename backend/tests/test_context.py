"""Tests for the run context."""

import pytest
from structlog.testing import capture_logs

from workflow.context import RunContext


class _Closable:
    def __init__(self, method: str):
        self.method = method
        self.closed = False

    def __getattr__(self, name):
        if name == self.method:
            def _close():
                self.closed = True
            return _close
        raise AttributeError(name)


class _AsyncClosable:
    def __init__(self):
        self.closed = False

    async def aclose(self):
        self.closed = True


class _BrokenClosable:
    async def disconnect(self):
        raise RuntimeError("socket already gone")


class _FlagOnly:
    """Has a ``close`` attribute that is a plain value, not a method."""

    close = "on-exit"


# ─── data / variables ───

@pytest.mark.unit
class TestDataAndVariables:
    def test_missing_keys_read_as_none(self):
        ctx = RunContext()
        assert ctx.get_data("nope") is None
        assert ctx.get_variable("nope") is None
        assert ctx.get_data("nope", "fallback") == "fallback"

    def test_get_all_data_returns_fresh_shallow_copies(self):
        ctx = RunContext()
        ctx.set_data("user", {"name": "Ada"})
        first = ctx.get_all_data()
        second = ctx.get_all_data()
        assert first == second
        assert first is not second
        # nested objects stay shared
        assert first["user"] is second["user"]

    def test_copy_does_not_write_through(self):
        ctx = RunContext()
        ctx.set_variable("count", 1)
        snapshot = ctx.get_all_variables()
        snapshot["count"] = 99
        assert ctx.get_variable("count") == 1

    def test_reset_clears_data_and_variables_only(self):
        ctx = RunContext()
        ctx.set_data("a", 1)
        ctx.set_variable("b", 2)
        ctx.set_page("page")
        ctx.reset()
        assert ctx.data == {}
        assert ctx.variables == {}
        assert ctx.get_page() == "page"


# ─── sub-contexts ───

@pytest.mark.unit
class TestSubContexts:
    def test_current_sub_context_follows_last_set(self):
        ctx = RunContext()
        ctx.set_sub_context("admin", "ctx-a")
        ctx.set_sub_context("guest", "ctx-b", make_current=False)
        assert ctx.get_sub_context() == "ctx-a"
        assert ctx.get_sub_context("guest") == "ctx-b"
        assert ctx.get_sub_context("missing") is None

    @pytest.mark.asyncio
    async def test_create_sub_context_switches_page(self, browser):
        ctx = RunContext()
        ctx.set_browser(browser)
        sub_context = await ctx.create_sub_context("second")
        assert ctx.current_sub_context_key == "second"
        assert ctx.get_page() is sub_context.pages[0]

    @pytest.mark.asyncio
    async def test_create_sub_context_without_browser(self):
        ctx = RunContext()
        assert await ctx.create_sub_context("second") is None
        assert ctx.sub_contexts == {}


# ─── connections ───

@pytest.mark.unit
class TestConnections:
    def test_set_get_remove(self):
        ctx = RunContext()
        ctx.set_connection("db", "handle")
        assert ctx.get_connection("db") == "handle"
        assert ctx.remove_connection("db") == "handle"
        assert ctx.get_connection("db") is None
        assert ctx.remove_connection("db") is None

    @pytest.mark.asyncio
    async def test_close_all_connections(self):
        ctx = RunContext()
        sync_handle = _Closable("close")
        dispose_handle = _Closable("dispose")
        async_handle = _AsyncClosable()
        ctx.set_connection("a", sync_handle)
        ctx.set_connection("b", dispose_handle)
        ctx.set_connection("c", async_handle)
        ctx.set_connection("d", object())

        await ctx.close_all_connections()

        assert sync_handle.closed and dispose_handle.closed and async_handle.closed
        assert ctx.connections == {}

    @pytest.mark.asyncio
    async def test_close_errors_do_not_stop_cleanup(self):
        ctx = RunContext()
        healthy = _AsyncClosable()
        ctx.set_connection("broken", _BrokenClosable())
        ctx.set_connection("healthy", healthy)

        await ctx.close_all_connections()

        assert healthy.closed
        assert ctx.connections == {}

    @pytest.mark.asyncio
    async def test_handles_without_callable_closer_are_left_alone(self):
        ctx = RunContext()
        ctx.set_connection("flag", _FlagOnly())
        ctx.set_connection("plain", object())

        with capture_logs() as logs:
            await ctx.close_all_connections()

        assert [entry for entry in logs if entry["event"] == "Error closing connection"] == []
        assert ctx.connections == {}


@pytest.mark.unit
def test_snapshot_lists_keys_only():
    ctx = RunContext()
    ctx.set_data("x", 1)
    ctx.set_connection("db", object())
    snap = ctx.snapshot()
    assert snap["data"] == {"x": 1}
    assert snap["connections"] == ["db"]
    assert snap["has_page"] is False
