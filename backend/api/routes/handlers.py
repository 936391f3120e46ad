"""Step type API routes.

Exposes the available step types (built-in and plugin) to the workflow editor.
"""

from fastapi import APIRouter

from core.exceptions import NotFoundError
from handlers.registry import get_handler_registry

router = APIRouter()


@router.get("", summary="List all available step types")
async def list_handlers():
    """Get all registered step types with their schemas.

    Used by the visual workflow editor to populate the step palette.
    """
    registry = get_handler_registry()
    return {
        "handlers": registry.list_all(),
        "count": len(registry.available_types),
    }


@router.get("/{step_type}", summary="Get step type details")
async def get_handler(step_type: str):
    """Get details and config schema for a specific step type."""
    registry = get_handler_registry()
    handler_class = registry.get(step_type)
    if not handler_class:
        raise NotFoundError(f"Unknown step type: {step_type}", available=registry.available_types)
    return {
        "step_type": step_type,
        "display_name": handler_class.display_name,
        "description": handler_class.description,
        "category": handler_class.category,
        "routing": handler_class.routing,
        "config_schema": handler_class.get_config_schema(),
    }
