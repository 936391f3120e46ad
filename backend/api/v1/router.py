"""API v1 aggregated router.

All v1 endpoints are registered here and mounted under /api/v1 in main.py.
This makes it trivial to add /api/v2 later without touching existing routes.
"""

from fastapi import APIRouter

from api.routes import executions, handlers, health, plugins, workflows

api_v1_router = APIRouter()

# Health
api_v1_router.include_router(
    health.router,
    tags=["Health"],
)

# Workflows
api_v1_router.include_router(
    workflows.router,
    prefix="/workflows",
    tags=["Workflows"],
)

# Executions
api_v1_router.include_router(
    executions.router,
    prefix="/executions",
    tags=["Executions"],
)

# Step types
api_v1_router.include_router(
    handlers.router,
    prefix="/handlers",
    tags=["Handlers"],
)

# Plugins
api_v1_router.include_router(
    plugins.router,
    prefix="/plugins",
    tags=["Plugins"],
)
