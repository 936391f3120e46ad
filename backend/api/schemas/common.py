"""Common schemas used across the API."""

from pydantic import BaseModel, Field
from typing import List, Optional


class ErrorResponse(BaseModel):
    """Standard error response."""

    detail: str = Field(description="Human-readable error message")
    error_code: str = Field(description="Machine-readable error code")
    available: Optional[List[str]] = Field(default=None, description="Valid keys, for not-found errors")
    request_id: Optional[str] = Field(default=None, description="X-Request-ID of the failed request")
