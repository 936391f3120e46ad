"""
HTTP client used by the apiRequest / apiCurl handlers.

Wraps httpx.AsyncClient. Non-2xx responses are returned, not raised: the
workflow decides what a status code means (verify step, api-status condition).
Only transport failures (timeout, connection refused) raise OperationError.
"""

import json
import shlex
import time
from dataclasses import dataclass, field
from typing import Any, Optional
from urllib.parse import urlencode

import httpx
import structlog

from core.exceptions import ConfigurationError, OperationError

logger = structlog.get_logger(__name__)

HTTP_METHODS = ("GET", "POST", "PUT", "DELETE", "PATCH", "HEAD", "OPTIONS")
BODY_TYPES = ("json", "form-data", "raw", "url-encoded")
_BODY_METHODS = ("POST", "PUT", "PATCH")

DEFAULT_REQUEST_TIMEOUT_MS = 30000


@dataclass
class ApiRequest:
    """A single outgoing request, already interpolated."""

    url: str
    method: str = "GET"
    headers: dict[str, str] = field(default_factory=dict)
    body: Optional[str] = None
    body_type: str = "json"
    timeout_ms: float = DEFAULT_REQUEST_TIMEOUT_MS
    form_fields: list[dict[str, str]] = field(default_factory=list)

    def __post_init__(self):
        self.method = (self.method or "GET").upper()
        if self.method not in HTTP_METHODS:
            raise ConfigurationError(f'Unsupported HTTP method "{self.method}". Supported: {", ".join(HTTP_METHODS)}')
        if self.body_type not in BODY_TYPES:
            raise ConfigurationError(f'Unsupported body type "{self.body_type}". Supported: {", ".join(BODY_TYPES)}')


def _has_header(headers: dict[str, str], name: str) -> bool:
    return any(key.lower() == name.lower() for key in headers)


def _build_body(request: ApiRequest) -> dict[str, Any]:
    """httpx keyword arguments for the request body."""
    headers = dict(request.headers)
    kwargs: dict[str, Any] = {"headers": headers}

    if request.method not in _BODY_METHODS:
        return kwargs

    if request.form_fields:
        kwargs["data"] = {f["key"]: f.get("value", "") for f in request.form_fields}
        return kwargs
    if request.body is None or request.body == "":
        return kwargs

    if request.body_type == "json":
        try:
            kwargs["json"] = json.loads(request.body)
        except ValueError:
            kwargs["content"] = request.body
            headers.setdefault("Content-Type", "application/json")
    elif request.body_type == "form-data":
        try:
            parsed = json.loads(request.body)
        except ValueError:
            parsed = None
        kwargs["content"] = urlencode({k: str(v) for k, v in parsed.items()}) if isinstance(parsed, dict) else request.body
        headers["Content-Type"] = "application/x-www-form-urlencoded"
    elif request.body_type == "url-encoded":
        kwargs["content"] = request.body
        headers["Content-Type"] = "application/x-www-form-urlencoded"
    else:
        kwargs["content"] = request.body
        if not _has_header(headers, "Content-Type"):
            headers["Content-Type"] = "text/plain"
    return kwargs


def _parse_response(response: httpx.Response) -> Any:
    content_type = response.headers.get("content-type", "")
    if "json" in content_type:
        try:
            return response.json()
        except ValueError:
            return response.text
    return response.text


class HttpClient:
    """Thin async HTTP client returning plain response records.

    ``transport`` is forwarded to httpx so tests can pass an ``httpx.MockTransport``.
    """

    def __init__(self, transport: Optional[httpx.AsyncBaseTransport] = None):
        self._transport = transport

    async def execute(self, request: ApiRequest) -> dict[str, Any]:
        """Send the request and return ``{status, statusText, headers, body, duration, timestamp}``."""
        started = time.monotonic()
        timestamp = int(time.time() * 1000)
        timeout = httpx.Timeout(request.timeout_ms / 1000)

        try:
            async with httpx.AsyncClient(
                transport=self._transport,
                timeout=timeout,
                follow_redirects=True,
            ) as client:
                response = await client.request(request.method, request.url, **_build_body(request))
        except httpx.TimeoutException as e:
            raise OperationError(
                f"Request timeout after {int(request.timeout_ms)}ms: {request.url}", 504
            ) from e
        except httpx.ConnectError as e:
            raise OperationError(f"Failed to connect to {request.url}: {e}", 502) from e
        except httpx.HTTPError as e:
            raise OperationError(f"HTTP request failed: {e}", 502) from e

        duration = round((time.monotonic() - started) * 1000, 2)
        logger.info(
            "API request completed",
            method=request.method,
            url=request.url,
            status=response.status_code,
            duration_ms=duration,
        )
        return {
            "status": response.status_code,
            "statusText": response.reason_phrase,
            "headers": {key: value for key, value in response.headers.items()},
            "body": _parse_response(response),
            "duration": duration,
            "timestamp": timestamp,
        }


# ─── cURL parsing ───

_DATA_FLAGS = ("-d", "--data", "--data-raw", "--data-binary", "--data-urlencode")
_HEADER_FLAGS = ("-H", "--header")
_METHOD_FLAGS = ("-X", "--request")
_FORM_FLAGS = ("-F", "--form")
_TIMEOUT_FLAGS = ("-m", "--max-time", "--connect-timeout")
_IGNORED_VALUE_FLAGS = ("-u", "--user", "-A", "--user-agent", "-e", "--referer", "-b", "--cookie", "-o", "--output")


def _strip_quotes(value: str) -> str:
    if len(value) >= 2 and value[0] == value[-1] and value[0] in ("'", '"'):
        return value[1:-1]
    return value


def parse_curl(command: str) -> ApiRequest:
    """Parse a ``curl ...`` command line into an ApiRequest.

    Supports -X, -H, -d/--data*, -F, --max-time and a positional URL.
    Raises ConfigurationError when the command cannot be parsed or has no URL.
    """
    if not command or not isinstance(command, str):
        raise ConfigurationError("Invalid cURL command: command is empty or not a string")

    try:
        tokens = shlex.split(command.replace("\\\n", " "))
    except ValueError as e:
        raise ConfigurationError(f"Failed to parse cURL command: {e}") from e
    if tokens and tokens[0].lower() == "curl":
        tokens = tokens[1:]

    url = None
    method = None
    headers: dict[str, str] = {}
    body = None
    form_fields: list[dict[str, str]] = []
    timeout_ms = DEFAULT_REQUEST_TIMEOUT_MS

    it = iter(tokens)
    for token in it:
        if token in _METHOD_FLAGS:
            method = next(it, "GET").upper()
        elif token in _HEADER_FLAGS:
            header = next(it, "")
            name, sep, value = header.partition(":")
            if sep and name.strip():
                headers[name.strip()] = value.strip()
        elif token in _DATA_FLAGS:
            body = next(it, "")
        elif token in _FORM_FLAGS:
            name, sep, value = next(it, "").partition("=")
            if sep and name.strip():
                if value.startswith("@"):
                    raise ConfigurationError("File uploads in cURL --form fields are not supported")
                form_fields.append({"key": name.strip(), "value": _strip_quotes(value.strip())})
        elif token in _TIMEOUT_FLAGS:
            raw = next(it, "")
            try:
                timeout_ms = float(raw) * 1000
            except ValueError:
                raise ConfigurationError(f'Invalid cURL timeout "{raw}"')
        elif token in _IGNORED_VALUE_FLAGS:
            next(it, None)
        elif token.startswith("-"):
            continue
        elif url is None:
            url = token

    if not url:
        raise ConfigurationError("Could not find URL in cURL command")

    body_type = "raw"
    if form_fields:
        body_type = "form-data"
        headers = {k: v for k, v in headers.items() if not (k.lower() == "content-type" and "multipart" in v)}
    elif body is not None:
        content_type = next((v for k, v in headers.items() if k.lower() == "content-type"), "")
        if "application/json" in content_type:
            body_type = "json"
        elif "x-www-form-urlencoded" in content_type:
            body_type = "url-encoded"
        elif not content_type:
            try:
                json.loads(body)
                body_type = "json"
            except ValueError:
                body_type = "raw"

    if method is None:
        method = "POST" if body is not None or form_fields else "GET"

    return ApiRequest(
        url=url,
        method=method,
        headers=headers,
        body=body,
        body_type=body_type,
        timeout_ms=timeout_ms,
        form_fields=form_fields,
    )
