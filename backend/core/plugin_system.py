"""Plugin system for extensible step handlers.

Allows loading custom step types from:
1. Built-in handlers (handlers/implementations/), registered by HandlerRegistry
2. Python packages with entry points (automflows.handlers)
3. Local plugin directories (PLUGINS_DIR)

Plugins must subclass BaseHandler. Plugin step types are namespaced as
``<namespace>.<type>`` so they can never shadow a built-in type.

Example plugin (as a package):
    # pyproject.toml
    [project.entry-points."automflows.handlers"]
    "acme.slackNotify" = "acme_steps.slack:SlackNotifyHandler"

Example plugin (local):
    # plugins/acme/handlers.py
    from handlers.base import BaseHandler
    class SlackNotifyHandler(BaseHandler):
        step_type = "slackNotify"
        ...
    HANDLER_TYPES = {"slackNotify": SlackNotifyHandler}
    PLUGIN_META = {"name": "acme", "version": "1.0.0"}
"""

import asyncio
import importlib.metadata
import importlib.util
import logging
import sys
from pathlib import Path
from typing import Any, Callable, Optional

from app.config import get_settings

logger = logging.getLogger(__name__)

_hooks: dict[str, list[Callable]] = {}


def namespaced(namespace: str, type_name: str) -> str:
    """``vendor.type`` names pass through; bare names get the plugin's namespace."""
    return type_name if "." in type_name else f"{namespace}.{type_name}"


class PluginInfo:
    """Metadata for a loaded plugin."""

    def __init__(
        self,
        name: str,
        version: str = "0.0.0",
        description: str = "",
        author: str = "",
        source: str = "unknown",
        handler_types: Optional[dict] = None,
        errors: Optional[list[str]] = None,
    ):
        self.name = name
        self.version = version
        self.description = description
        self.author = author
        self.source = source  # "entrypoint", "local"
        self.handler_types = handler_types or {}
        self.enabled = True
        self.errors: list[str] = errors or []


class PluginManager:
    """Manages plugin lifecycle: discovery, loading, enable/disable."""

    def __init__(self, entry_point_group: Optional[str] = None, plugin_dir: Optional[str] = None):
        settings = get_settings()
        self.entry_point_group = entry_point_group or settings.PLUGIN_ENTRY_POINT_GROUP
        self.plugin_dir = plugin_dir or settings.PLUGINS_DIR
        self.plugins: dict[str, PluginInfo] = {}
        self._handler_types: dict[str, Any] = {}

    def discover_and_load(self) -> dict[str, PluginInfo]:
        """Discover and load all plugins from all sources."""
        logger.info("Discovering plugins...")

        # 1. Load from entry points (installed packages)
        self._load_entrypoint_plugins()

        # 2. Load from local plugins directory
        self._load_local_plugins()

        logger.info(
            "Plugin discovery complete: %d plugins loaded, %d handler types registered",
            len(self.plugins),
            len(self._handler_types),
        )
        return self.plugins

    def _validate_types(self, namespace: str, handler_types: dict[str, Any]) -> dict[str, Any]:
        from handlers.base import BaseHandler

        validated = {}
        for type_name, handler_class in handler_types.items():
            if not (isinstance(handler_class, type) and issubclass(handler_class, BaseHandler)):
                raise TypeError(f"{type_name!r} is not a BaseHandler subclass")
            validated[namespaced(namespace, type_name)] = handler_class
        return validated

    def _load_entrypoint_plugins(self):
        """Load plugins registered via Python entry points."""
        try:
            eps = importlib.metadata.entry_points(group=self.entry_point_group)
        except Exception as e:
            logger.warning("Entry point discovery failed: %s", e)
            return

        for ep in eps:
            plugin_name = f"ep:{ep.name}"
            try:
                handler_class = ep.load()
                namespace = ep.module.split(".")[0]
                plugin_info = PluginInfo(
                    name=ep.name,
                    source="entrypoint",
                    handler_types=self._validate_types(namespace, {ep.name: handler_class}),
                )

                # Try to get version from package
                if ep.dist:
                    plugin_info.version = ep.dist.version

                self.plugins[plugin_name] = plugin_info
                self._handler_types.update(plugin_info.handler_types)
                logger.info("Loaded entry point plugin: %s", ep.name)

            except Exception as e:
                logger.warning("Failed to load entry point %s: %s", ep.name, e)
                self.plugins[plugin_name] = PluginInfo(
                    name=ep.name,
                    source="entrypoint",
                    errors=[str(e)],
                )

    def _import_local(self, subdir: Path):
        """Import the plugin package (``__init__.py``) and/or its ``handlers.py``."""
        package_name = f"automflows_plugins.{subdir.name}"
        init_file = subdir / "__init__.py"
        handlers_file = subdir / "handlers.py"

        package = None
        if init_file.exists():
            package = self._exec_file(package_name, init_file, search_locations=[str(subdir)])
            if hasattr(package, "HANDLER_TYPES"):
                return package
        if handlers_file.exists():
            return self._exec_file(f"{package_name}.handlers", handlers_file)
        return package

    @staticmethod
    def _exec_file(module_name: str, path: Path, search_locations: Optional[list[str]] = None):
        spec = importlib.util.spec_from_file_location(
            module_name, path, submodule_search_locations=search_locations
        )
        module = importlib.util.module_from_spec(spec)
        sys.modules[module_name] = module
        try:
            spec.loader.exec_module(module)
        except Exception:
            sys.modules.pop(module_name, None)
            raise
        return module

    def _load_local_plugins(self):
        """Load plugins from the local plugins directory."""
        plugin_dir = Path(self.plugin_dir)
        if not plugin_dir.is_dir():
            return

        for subdir in sorted(plugin_dir.iterdir()):
            if not subdir.is_dir() or subdir.name.startswith(("_", ".")):
                continue

            plugin_name = f"local:{subdir.name}"
            try:
                module = self._import_local(subdir)
                if module is None:
                    continue

                plugin_meta = getattr(module, "PLUGIN_META", {})
                namespace = plugin_meta.get("namespace", subdir.name)
                info = PluginInfo(
                    name=plugin_meta.get("name", subdir.name),
                    version=plugin_meta.get("version", "0.0.0"),
                    description=plugin_meta.get("description", ""),
                    author=plugin_meta.get("author", ""),
                    source="local",
                    handler_types=self._validate_types(namespace, getattr(module, "HANDLER_TYPES", {})),
                )

                self.plugins[plugin_name] = info
                self._handler_types.update(info.handler_types)
                logger.info(
                    "Loaded local plugin: %s (%d handler types)",
                    subdir.name,
                    len(info.handler_types),
                )

            except Exception as e:
                logger.warning("Failed to load local plugin %s: %s", subdir.name, e)
                self.plugins[plugin_name] = PluginInfo(
                    name=subdir.name,
                    source="local",
                    errors=[str(e)],
                )

    def get_handler_types(self) -> dict[str, Any]:
        """Get all handler types from enabled plugins."""
        return dict(self._handler_types)

    def get_plugin(self, name: str) -> Optional[PluginInfo]:
        """Get plugin info by name."""
        return self.plugins.get(name)

    def list_plugins(self) -> list[dict]:
        """List all discovered plugins with status."""
        return [
            {
                "name": info.name,
                "version": info.version,
                "description": info.description,
                "author": info.author,
                "source": info.source,
                "enabled": info.enabled,
                "handler_types": list(info.handler_types.keys()),
                "errors": info.errors,
            }
            for info in self.plugins.values()
        ]

    def enable_plugin(self, name: str) -> bool:
        """Enable a plugin."""
        plugin = self.plugins.get(name)
        if plugin:
            plugin.enabled = True
            self._handler_types.update(plugin.handler_types)
            return True
        return False

    def disable_plugin(self, name: str) -> bool:
        """Disable a plugin (removes its handler types from dispatch)."""
        plugin = self.plugins.get(name)
        if plugin:
            plugin.enabled = False
            for type_name in plugin.handler_types:
                self._handler_types.pop(type_name, None)
            return True
        return False


# ─── Hook system ───

def register_hook(event: str, handler: Callable):
    """Register a hook handler for an event."""
    _hooks.setdefault(event, []).append(handler)


def clear_hooks():
    _hooks.clear()


async def emit_hook(event: str, **kwargs):
    """Emit a hook event, calling all registered handlers.

    Hook failures are logged and never affect the run.
    """
    for handler in _hooks.get(event, []):
        try:
            if asyncio.iscoroutinefunction(handler):
                await handler(**kwargs)
            else:
                handler(**kwargs)
        except Exception as e:
            logger.error("Hook handler error for %s: %s", event, e)


# Hook event constants
HOOK_WORKFLOW_STARTED = "workflow.started"
HOOK_WORKFLOW_COMPLETED = "workflow.completed"
HOOK_WORKFLOW_FAILED = "workflow.failed"
HOOK_STEP_STARTED = "step.started"
HOOK_STEP_COMPLETED = "step.completed"
HOOK_STEP_FAILED = "step.failed"


# Singleton
_plugin_manager: Optional[PluginManager] = None


def get_plugin_manager() -> PluginManager:
    """Get or create the singleton plugin manager (discovery runs on first use)."""
    global _plugin_manager
    if _plugin_manager is None:
        _plugin_manager = PluginManager()
        _plugin_manager.discover_and_load()
    return _plugin_manager
