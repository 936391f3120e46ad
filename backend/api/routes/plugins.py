"""Plugin management API endpoints."""

from fastapi import APIRouter
from pydantic import BaseModel

from core.exceptions import NotFoundError
from core.plugin_system import get_plugin_manager

router = APIRouter()


class PluginToggleRequest(BaseModel):
    enabled: bool


@router.get("")
async def list_plugins():
    """List all discovered plugins with their status."""
    return {"plugins": get_plugin_manager().list_plugins()}


@router.put("/{name}")
async def toggle_plugin(name: str, body: PluginToggleRequest):
    """Enable or disable a plugin."""
    manager = get_plugin_manager()
    if body.enabled:
        ok = manager.enable_plugin(name)
    else:
        ok = manager.disable_plugin(name)

    if not ok:
        raise NotFoundError(f'Plugin "{name}" not found', available=manager.plugins.keys())

    return {"name": name, "enabled": body.enabled}


@router.post("/reload")
async def reload_plugins():
    """Re-discover and reload all plugins."""
    manager = get_plugin_manager()
    plugins = manager.discover_and_load()
    return {
        "plugins_loaded": len(plugins),
        "handler_types": len(manager.get_handler_types()),
    }
