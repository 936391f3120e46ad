"""Database handlers: dbConnect, dbQuery, dbDisconnect.

Open clients live in the run context's connection table under
``connectionKey`` (default ``dbConnection``); query results are stored in
context data under ``contextKey`` (default ``dbResult``).
"""

from typing import Any, Dict

import structlog

from core.exceptions import ConfigurationError, NotFoundError
from handlers.base import BaseHandler
from integrations.db_client import DB_TYPES, DbClient
from verification.database import DEFAULT_DB_CONTEXT_KEY
from workflow.context import RunContext
from workflow.graph import Step
from workflow.interpolation import VariableInterpolator

logger = structlog.get_logger(__name__)

DEFAULT_CONNECTION_KEY = "dbConnection"

_CONNECTION_FIELDS = ("host", "port", "user", "password", "database", "filePath", "connectionString")


def _connection_key(step: Step, context: RunContext) -> str:
    return VariableInterpolator.interpolate_string(
        step.config.get("connectionKey") or DEFAULT_CONNECTION_KEY, context
    )


class DbConnectHandler(BaseHandler):
    """Open a connection. Fields in ``configKey``'s data object are defaults; step fields win."""

    step_type = "dbConnect"
    display_name = "DB Connect"
    description = "Connect to a database and keep the connection for later steps"
    category = "database"

    async def execute(self, step: Step, context: RunContext) -> Any:
        config = step.config
        if not config.get("dbType") and not config.get("connectionString"):
            raise ConfigurationError(f'dbType is required for dbConnect step. Supported: {", ".join(DB_TYPES)}')

        settings: dict[str, Any] = {}
        if config.get("configKey"):
            base = context.get_data(config["configKey"])
            if not isinstance(base, dict):
                raise NotFoundError(
                    f'Database config object "{config["configKey"]}" not found in context data',
                    available=context.data.keys(),
                )
            settings.update(base)
        for name in _CONNECTION_FIELDS:
            if config.get(name) is not None:
                settings[name] = config[name]
        settings = VariableInterpolator.interpolate_object(settings, context)
        settings["dbType"] = config.get("dbType")
        if config.get("options"):
            settings["options"] = VariableInterpolator.interpolate_object(config["options"], context)

        key = _connection_key(step, context)
        previous = context.remove_connection(key)
        if previous is not None:
            logger.warning("Replacing open database connection", connection_key=key)
            await previous.disconnect()

        client = DbClient.from_config(settings)
        await client.connect()
        context.set_connection(key, client)
        return {"connectionKey": key, "backend": client.url.get_backend_name()}


class DbQueryHandler(BaseHandler):
    step_type = "dbQuery"
    display_name = "DB Query"
    description = "Run a query on an open connection and store the result"
    category = "database"

    async def execute(self, step: Step, context: RunContext) -> Any:
        query = step.config.get("query")
        if not query:
            raise ConfigurationError("query is required for dbQuery step")
        key = _connection_key(step, context)
        client = context.get_connection(key)
        if client is None:
            raise NotFoundError(
                f'Database connection "{key}" not found. Ensure a dbConnect step runs first',
                available=context.connections.keys(),
            )

        params = step.config.get("params")
        if params is not None:
            if not isinstance(params, (dict, list)):
                raise ConfigurationError("params must be an object (named) or a list (positional)")
            params = VariableInterpolator.interpolate_object(params, context)

        timeout = VariableInterpolator.interpolate_number(step.config.get("timeout"), context, 30000)
        result = await client.execute(VariableInterpolator.interpolate_string(query, context), params, timeout)
        context.set_data(step.config.get("contextKey") or DEFAULT_DB_CONTEXT_KEY, result)
        return {"rowCount": result["rowCount"], "duration": result["duration"]}

    @classmethod
    def get_config_schema(cls) -> Dict[str, Any]:
        return {
            "type": "object",
            "required": ["query"],
            "properties": {
                "connectionKey": {"type": "string", "default": DEFAULT_CONNECTION_KEY},
                "query": {"type": "string"},
                "params": {"type": ["object", "array"]},
                "contextKey": {"type": "string", "default": DEFAULT_DB_CONTEXT_KEY},
                "timeout": {"type": "integer", "default": 30000},
            },
        }


class DbDisconnectHandler(BaseHandler):
    step_type = "dbDisconnect"
    display_name = "DB Disconnect"
    description = "Close a database connection"
    category = "database"

    async def execute(self, step: Step, context: RunContext) -> Any:
        key = _connection_key(step, context)
        client = context.remove_connection(key)
        if client is None:
            logger.warning("No database connection to close", connection_key=key)
            return {"connectionKey": key, "closed": False}
        await client.disconnect()
        return {"connectionKey": key, "closed": True}


DATABASE_HANDLER_TYPES = {
    "dbConnect": DbConnectHandler,
    "dbQuery": DbQueryHandler,
    "dbDisconnect": DbDisconnectHandler,
}
