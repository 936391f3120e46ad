"""Config handlers: loadConfigFile and setConfig.

Both merge a JSON object into context data: under ``contextKey`` when
given, otherwise key by key at the top level (existing keys overwritten).
"""

import json
from pathlib import Path
from typing import Any, Dict, Optional

from app.config import get_settings
from core.exceptions import ConfigurationError, NotFoundError, OperationError
from handlers.base import BaseHandler
from workflow.context import RunContext
from workflow.graph import Step
from workflow.interpolation import VariableInterpolator


def merge_into_context(context: RunContext, values: dict[str, Any], context_key: Optional[str] = None) -> None:
    if context_key:
        context.set_data(context_key, values)
        return
    for key, value in values.items():
        context.set_data(key, value)


def _parse_object(text: str, source: str) -> dict[str, Any]:
    try:
        parsed = json.loads(text.strip())
    except ValueError as e:
        raise ConfigurationError(f"Invalid JSON in {source}: {e}") from e
    if not isinstance(parsed, dict):
        raise ConfigurationError(f"{source} must contain a JSON object")
    return parsed


def resolve_config_path(file_path: str) -> Path:
    """Absolute paths are used as-is; relative ones resolve from CONFIG_FILES_DIR."""
    path = Path(file_path)
    if not path.is_absolute():
        path = Path(get_settings().CONFIG_FILES_DIR) / path
    return path.resolve()


class LoadConfigFileHandler(BaseHandler):
    """Load a JSON object from ``filePath`` (or inline ``fileContent``)."""

    step_type = "loadConfigFile"
    display_name = "Load Config File"
    description = "Merge a JSON config file into the run data"
    category = "config"

    async def execute(self, step: Step, context: RunContext) -> Any:
        content = step.config.get("fileContent")
        file_path = step.config.get("filePath")

        if content:
            values = _parse_object(str(content), "config content")
            source = "inline"
        elif file_path:
            path = resolve_config_path(VariableInterpolator.interpolate_string(file_path, context))
            if not path.is_file():
                raise NotFoundError(f"Config file not found: {path}")
            try:
                text = path.read_text(encoding="utf-8")
            except OSError as e:
                raise OperationError(f"Failed to read config file {path}: {e}") from e
            values = _parse_object(text, f"config file {path.name}")
            source = str(path)
        else:
            raise ConfigurationError("filePath or fileContent is required for loadConfigFile step")

        merge_into_context(context, values, step.config.get("contextKey"))
        return {"source": source, "keys": sorted(values)}

    @classmethod
    def get_config_schema(cls) -> Dict[str, Any]:
        return {
            "type": "object",
            "properties": {
                "filePath": {"type": "string"},
                "fileContent": {"type": "string"},
                "contextKey": {"type": "string"},
            },
        }


class SetConfigHandler(BaseHandler):
    step_type = "setConfig"
    display_name = "Set Config"
    description = "Merge an inline config object into the run data"
    category = "config"

    async def execute(self, step: Step, context: RunContext) -> Any:
        values = step.config.get("config")
        if not values:
            return {"keys": []}
        if not isinstance(values, dict):
            raise ConfigurationError("config must be a JSON object")
        values = VariableInterpolator.interpolate_object(values, context)
        merge_into_context(context, values, step.config.get("contextKey"))
        return {"keys": sorted(values)}


CONFIG_HANDLER_TYPES = {
    "loadConfigFile": LoadConfigFileHandler,
    "setConfig": SetConfigHandler,
}
