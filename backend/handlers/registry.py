"""
Handler Registry: central dispatch from step type to handler.

Built-in types are checked first; anything else is looked up in the
plugin manager's table (namespaced ``vendor.type`` names).
"""

from typing import Dict, Optional, Type

from core.exceptions import NotFoundError
from core.plugin_system import PluginManager, get_plugin_manager
from handlers.base import BaseHandler
from handlers.implementations.api import API_HANDLER_TYPES
from handlers.implementations.browser import BROWSER_HANDLER_TYPES
from handlers.implementations.config import CONFIG_HANDLER_TYPES
from handlers.implementations.database import DATABASE_HANDLER_TYPES
from handlers.implementations.flow import FLOW_HANDLER_TYPES
from handlers.implementations.logic import LOGIC_HANDLER_TYPES
from handlers.implementations.verify import VERIFY_HANDLER_TYPES


class HandlerRegistry:
    """Central registry for all step handler implementations."""

    def __init__(self, plugin_manager: Optional[PluginManager] = None):
        self._handlers: Dict[str, Type[BaseHandler]] = {}
        self._plugin_manager = plugin_manager
        self._register_builtin_handlers()

    def _register_builtin_handlers(self):
        """Register all built-in step types."""
        for handler_types in (
            FLOW_HANDLER_TYPES,
            LOGIC_HANDLER_TYPES,
            BROWSER_HANDLER_TYPES,
            API_HANDLER_TYPES,
            DATABASE_HANDLER_TYPES,
            CONFIG_HANDLER_TYPES,
            VERIFY_HANDLER_TYPES,
        ):
            for step_type, handler_class in handler_types.items():
                self.register(step_type, handler_class)

    @property
    def plugin_manager(self) -> PluginManager:
        if self._plugin_manager is None:
            self._plugin_manager = get_plugin_manager()
        return self._plugin_manager

    def register(self, step_type: str, handler_class: Type[BaseHandler]):
        """Register (or replace) a built-in step type."""
        self._handlers[step_type] = handler_class

    def get(self, step_type: str) -> Optional[Type[BaseHandler]]:
        """Get a handler class by type string: built-ins first, then plugins."""
        handler_class = self._handlers.get(step_type)
        if handler_class is None and "." in step_type:
            handler_class = self.plugin_manager.get_handler_types().get(step_type)
        return handler_class

    def create_instance(self, step_type: str) -> BaseHandler:
        """Create a handler for ``step_type`` or raise NotFoundError listing known types."""
        handler_class = self.get(step_type)
        if handler_class is None:
            raise NotFoundError(f'No handler registered for step type "{step_type}"', available=self.available_types)
        return handler_class()

    def list_all(self) -> list:
        """List all registered step types with metadata."""
        entries = [(step_type, cls, "builtin") for step_type, cls in self._handlers.items()]
        entries += [
            (step_type, cls, "plugin") for step_type, cls in self.plugin_manager.get_handler_types().items()
        ]
        return [
            {
                "step_type": step_type,
                "display_name": cls.display_name,
                "description": cls.description,
                "category": cls.category,
                "routing": cls.routing,
                "source": source,
                "config_schema": cls.get_config_schema(),
            }
            for step_type, cls, source in entries
        ]

    @property
    def available_types(self) -> list:
        return list(self._handlers.keys()) + list(self.plugin_manager.get_handler_types().keys())


# Singleton
_registry: Optional[HandlerRegistry] = None


def get_handler_registry() -> HandlerRegistry:
    """Get or create the singleton handler registry."""
    global _registry
    if _registry is None:
        _registry = HandlerRegistry()
    return _registry
