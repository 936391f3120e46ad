"""Execution run schemas."""

from pydantic import BaseModel, Field
from typing import Any, Dict, List, Optional


class StepResultResponse(BaseModel):
    """Latest result of one step."""

    step_id: str = Field(description="Step ID")
    step_type: str = Field(description="Step type")
    status: str = Field(description="pending, running, completed, failed, suppressed, skipped, cancelled")
    output: Any = Field(default=None, description="Handler output")
    error: Optional[str] = Field(default=None, description="Error message if the step failed")
    error_type: Optional[str] = Field(default=None, description="Exception class of the failure")
    started_at: Optional[str] = Field(default=None, description="Start timestamp (last run)")
    completed_at: Optional[str] = Field(default=None, description="Completion timestamp (last run)")
    duration_ms: float = Field(default=0, description="Duration of the last run in milliseconds")
    attempts: int = Field(default=0, description="Attempts used by the retry policy")
    runs: int = Field(default=0, description="Times the step ran (loop bodies run repeatedly)")


class ExecutionResponse(BaseModel):
    """Execution run information response."""

    execution_id: str = Field(description="Execution ID")
    workflow_id: Optional[str] = Field(default=None, description="Workflow ID")
    status: str = Field(description="pending, running, completed, failed, cancelled")
    steps: Dict[str, StepResultResponse] = Field(default={}, description="Per-step results")
    warnings: List[str] = Field(default=[], description="Steps that failed silently")
    error: Optional[str] = Field(default=None, description="Error message if execution failed")
    started_at: Optional[str] = Field(default=None, description="Execution start timestamp")
    completed_at: Optional[str] = Field(default=None, description="Execution completion timestamp")
    duration_ms: float = Field(default=0, description="Execution duration in milliseconds")
    data: Optional[Dict[str, Any]] = Field(default=None, description="Context data snapshot at the end")
    variables: Optional[Dict[str, Any]] = Field(default=None, description="Context variables snapshot at the end")


class ExecutionListResponse(BaseModel):
    """Executions held in memory, most recent first."""

    executions: List[ExecutionResponse] = Field(description="List of executions")
    total: int = Field(description="Total number of executions")
    running: int = Field(description="Executions currently in flight")


class ExecutionCancelResponse(BaseModel):
    execution_id: str
    cancelled: bool
