"""API handlers: apiRequest and apiCurl.

Both store the response record ``{status, statusText, headers, body,
duration, timestamp}`` in context data under ``contextKey`` (default
``apiResponse``), where api verifications and conditions read it.
"""

import json
from typing import Any, Dict, Optional

from core.exceptions import ConfigurationError
from handlers.base import BaseHandler
from integrations.http_client import BODY_TYPES, HTTP_METHODS, ApiRequest, HttpClient, parse_curl
from verification.api import DEFAULT_API_CONTEXT_KEY
from workflow.context import RunContext
from workflow.graph import Step
from workflow.interpolation import VariableInterpolator


class _ApiHandler(BaseHandler):
    category = "api"

    def __init__(self, client: Optional[HttpClient] = None):
        self.client = client or HttpClient()

    def _request_timeout(self, step: Step, context: RunContext) -> float:
        return VariableInterpolator.interpolate_number(step.config.get("timeout"), context, 30000)

    async def _send(self, step: Step, context: RunContext, request: ApiRequest) -> Dict[str, Any]:
        response = await self.client.execute(request)
        context.set_data(step.config.get("contextKey") or DEFAULT_API_CONTEXT_KEY, response)
        return {"status": response["status"], "duration": response["duration"]}


class ApiRequestHandler(_ApiHandler):
    step_type = "apiRequest"
    display_name = "API Request"
    description = "Send an HTTP request and store the response"

    async def execute(self, step: Step, context: RunContext) -> Any:
        config = step.config
        if not config.get("url"):
            raise ConfigurationError("url is required for apiRequest step")

        headers = VariableInterpolator.interpolate_object(config.get("headers") or {}, context)
        if not isinstance(headers, dict):
            raise ConfigurationError("headers must be an object")
        body = config.get("body")
        if isinstance(body, (dict, list)):
            body = json.dumps(VariableInterpolator.interpolate_object(body, context))
        elif body is not None:
            body = VariableInterpolator.interpolate_string(str(body), context)

        request = ApiRequest(
            url=VariableInterpolator.interpolate_string(config["url"], context),
            method=config.get("method") or "GET",
            headers={str(k): str(v) for k, v in headers.items()},
            body=body,
            body_type=config.get("bodyType") or "json",
            timeout_ms=self._request_timeout(step, context),
        )
        return await self._send(step, context, request)

    @classmethod
    def get_config_schema(cls) -> Dict[str, Any]:
        return {
            "type": "object",
            "required": ["url"],
            "properties": {
                "url": {"type": "string"},
                "method": {"type": "string", "enum": list(HTTP_METHODS)},
                "headers": {"type": "object"},
                "body": {},
                "bodyType": {"type": "string", "enum": list(BODY_TYPES)},
                "contextKey": {"type": "string", "default": DEFAULT_API_CONTEXT_KEY},
                "timeout": {"type": "integer", "default": 30000},
            },
        }


class ApiCurlHandler(_ApiHandler):
    step_type = "apiCurl"
    display_name = "API cURL"
    description = "Send the request described by a cURL command"

    async def execute(self, step: Step, context: RunContext) -> Any:
        command = step.config.get("curlCommand")
        if not command:
            raise ConfigurationError("curlCommand is required for apiCurl step")
        request = parse_curl(VariableInterpolator.interpolate_string(command, context))
        if step.config.get("timeout") is not None:
            request.timeout_ms = self._request_timeout(step, context)
        return await self._send(step, context, request)


API_HANDLER_TYPES = {
    "apiRequest": ApiRequestHandler,
    "apiCurl": ApiCurlHandler,
}
