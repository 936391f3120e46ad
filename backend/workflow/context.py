"""Run context: the shared mutable state of one workflow execution.

One RunContext is created per run and passed by reference to every step.
Steps on independent branches share it; the event loop serializes mutation,
so there is no locking here.
"""

import inspect
from dataclasses import dataclass, field
from typing import Any, Optional

import structlog

logger = structlog.get_logger(__name__)


@dataclass
class RunContext:
    """State shared by all steps of a run.

    ``data`` carries step outputs keyed by context key (``apiResponse``,
    ``dbResult``...), ``variables`` carries typed scalars such as loop
    counters. Reads of missing keys return ``None``; callers decide whether
    that is an error.
    """

    data: dict[str, Any] = field(default_factory=dict)
    variables: dict[str, Any] = field(default_factory=dict)
    page: Any = None
    browser: Any = None
    sub_contexts: dict[str, Any] = field(default_factory=dict)
    current_sub_context_key: Optional[str] = None
    connections: dict[str, Any] = field(default_factory=dict)

    # ─── data / variables ───

    def set_data(self, key: str, value: Any) -> None:
        self.data[key] = value

    def get_data(self, key: str, default: Any = None) -> Any:
        return self.data.get(key, default)

    def get_all_data(self) -> dict[str, Any]:
        """Shallow copy of ``data``. Nested values are still the live objects."""
        return dict(self.data)

    def set_variable(self, key: str, value: Any) -> None:
        self.variables[key] = value

    def get_variable(self, key: str, default: Any = None) -> Any:
        return self.variables.get(key, default)

    def get_all_variables(self) -> dict[str, Any]:
        """Shallow copy of ``variables``."""
        return dict(self.variables)

    # ─── target handle ───

    def set_page(self, page: Any) -> None:
        self.page = page

    def get_page(self) -> Any:
        return self.page

    def set_browser(self, browser: Any) -> None:
        self.browser = browser

    def get_browser(self) -> Any:
        return self.browser

    # ─── named sub-contexts ───

    def set_sub_context(self, key: str, sub_context: Any, make_current: bool = True) -> None:
        self.sub_contexts[key] = sub_context
        if make_current:
            self.current_sub_context_key = key

    def get_sub_context(self, key: Optional[str] = None) -> Any:
        """Return the named sub-context, or the current one when no key is given."""
        lookup = key if key is not None else self.current_sub_context_key
        if lookup is None:
            return None
        return self.sub_contexts.get(lookup)

    async def create_sub_context(self, key: str, **options: Any) -> Any:
        """Create a new isolated browser context under ``key`` and make it current.

        Requires an open browser; the new context's first page becomes the
        current target handle.
        """
        if self.browser is None:
            return None
        sub_context = await self.browser.new_context(**options)
        page = await sub_context.new_page()
        self.set_sub_context(key, sub_context)
        self.page = page
        return sub_context

    # ─── external connections ───

    def set_connection(self, key: str, connection: Any) -> None:
        self.connections[key] = connection

    def get_connection(self, key: str) -> Any:
        return self.connections.get(key)

    def remove_connection(self, key: str) -> Any:
        return self.connections.pop(key, None)

    def get_all_connections(self) -> dict[str, Any]:
        return dict(self.connections)

    async def close_all_connections(self) -> None:
        """Close every stored connection handle that knows how to close itself."""
        for key, connection in list(self.connections.items()):
            closer = None
            for name in ("aclose", "disconnect", "dispose", "close"):
                candidate = getattr(connection, name, None)
                if callable(candidate):
                    closer = candidate
                    break
            if closer is None:
                continue
            try:
                outcome = closer()
                if inspect.isawaitable(outcome):
                    await outcome
            except Exception as e:
                logger.warning("Error closing connection", connection_key=key, error=str(e))
        self.connections.clear()

    # ─── lifecycle ───

    def reset(self) -> None:
        """Clear data and variables between independent runs."""
        self.data = {}
        self.variables = {}

    def snapshot(self) -> dict[str, Any]:
        """Diagnostic view of the run state, safe to keep after the run."""
        return {
            "data": self.get_all_data(),
            "variables": self.get_all_variables(),
            "sub_contexts": sorted(self.sub_contexts),
            "current_sub_context": self.current_sub_context_key,
            "connections": sorted(self.connections),
            "has_page": self.page is not None,
        }
