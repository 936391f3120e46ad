"""
Verification Strategy Registry: (domain, type) -> strategy instance.

Built-in domains are ``browser``, ``api`` and ``database``. Plugins may
register additional domains or override built-in types.
"""

from typing import Optional

from verification.api import (
    ApiBodyPathStrategy,
    ApiBodyValueStrategy,
    ApiHeaderStrategy,
    ApiStatusStrategy,
)
from verification.base import VerificationStrategy
from verification.browser import (
    BrowserAttributeStrategy,
    BrowserCookieStrategy,
    BrowserCssStrategy,
    BrowserElementStrategy,
    BrowserFormFieldStrategy,
    BrowserStorageStrategy,
    BrowserTextStrategy,
    BrowserUrlStrategy,
)
from verification.database import (
    DbColumnValueStrategy,
    DbQueryResultStrategy,
    DbRowCountStrategy,
    DbRowExistsStrategy,
)

BUILTIN_STRATEGIES: dict[str, dict[str, type[VerificationStrategy]]] = {
    "browser": {
        "url": BrowserUrlStrategy,
        "text": BrowserTextStrategy,
        "element": BrowserElementStrategy,
        "attribute": BrowserAttributeStrategy,
        "formField": BrowserFormFieldStrategy,
        "cookie": BrowserCookieStrategy,
        "storage": BrowserStorageStrategy,
        "css": BrowserCssStrategy,
    },
    "api": {
        "status": ApiStatusStrategy,
        "header": ApiHeaderStrategy,
        "bodyPath": ApiBodyPathStrategy,
        "bodyValue": ApiBodyValueStrategy,
    },
    "database": {
        "rowCount": DbRowCountStrategy,
        "columnValue": DbColumnValueStrategy,
        "rowExists": DbRowExistsStrategy,
        "queryResult": DbQueryResultStrategy,
    },
}


class VerificationStrategyRegistry:
    """Two-level table of verification strategies."""

    def __init__(self, register_builtins: bool = False):
        self._strategies: dict[str, dict[str, VerificationStrategy]] = {}
        if register_builtins:
            self._register_builtin_strategies()

    def _register_builtin_strategies(self):
        for domain, strategies in BUILTIN_STRATEGIES.items():
            for type_name, strategy_class in strategies.items():
                self.register(domain, type_name, strategy_class())

    def register(self, domain: str, type_name: str, strategy: VerificationStrategy) -> None:
        """Register (or replace) the strategy for ``domain``/``type_name``."""
        self._strategies.setdefault(domain, {})[type_name] = strategy

    def get(self, domain: str, type_name: str) -> Optional[VerificationStrategy]:
        return self._strategies.get(domain, {}).get(type_name)

    def has(self, domain: str, type_name: str) -> bool:
        return self.get(domain, type_name) is not None

    def get_all(self, domain: Optional[str] = None) -> dict[str, VerificationStrategy]:
        """Strategies for one domain keyed by type, or all keyed by ``domain.type``."""
        if domain is not None:
            return dict(self._strategies.get(domain, {}))
        return {
            f"{domain_name}.{type_name}": strategy
            for domain_name, strategies in self._strategies.items()
            for type_name, strategy in strategies.items()
        }

    @property
    def domains(self) -> list[str]:
        return list(self._strategies)


# Singleton
_registry: Optional[VerificationStrategyRegistry] = None


def get_verification_registry() -> VerificationStrategyRegistry:
    """Get or create the singleton registry with built-in strategies."""
    global _registry
    if _registry is None:
        _registry = VerificationStrategyRegistry(register_builtins=True)
    return _registry
