"""Execution status and management endpoints."""

from typing import Optional

from fastapi import APIRouter, Depends, Query

from api.schemas.common import ErrorResponse
from api.schemas.execution import ExecutionCancelResponse, ExecutionListResponse, ExecutionResponse
from core.exceptions import ConfigurationError
from workflow.engine import ExecutionStatus
from workflow.execution_manager import ExecutionManager, get_execution_manager

router = APIRouter()


@router.get("", response_model=ExecutionListResponse)
async def list_executions(
    exec_status: Optional[str] = Query(None, alias="status", description="Filter by execution status"),
    manager: ExecutionManager = Depends(get_execution_manager),
) -> ExecutionListResponse:
    """
    List running and recently finished executions, most recent first.
    """
    status_filter = None
    if exec_status:
        try:
            status_filter = ExecutionStatus(exec_status)
        except ValueError:
            raise ConfigurationError(
                f'Unknown status "{exec_status}". Must be one of: {", ".join(s.value for s in ExecutionStatus)}'
            )

    reports = manager.list_executions(status_filter)
    return ExecutionListResponse(
        executions=[ExecutionResponse(**r.to_dict(include_state=False)) for r in reports],
        total=len(reports),
        running=manager.running_count,
    )


@router.get("/{execution_id}", response_model=ExecutionResponse, responses={404: {"model": ErrorResponse}})
async def get_execution(
    execution_id: str,
    manager: ExecutionManager = Depends(get_execution_manager),
) -> ExecutionResponse:
    """
    Get an execution with per-step results and, once finished, its data snapshot.
    """
    report = manager.get(execution_id)
    return ExecutionResponse(**report.to_dict(include_state=report.finished))


@router.post(
    "/{execution_id}/cancel",
    response_model=ExecutionCancelResponse,
    responses={404: {"model": ErrorResponse}},
)
async def cancel_execution(
    execution_id: str,
    manager: ExecutionManager = Depends(get_execution_manager),
) -> ExecutionCancelResponse:
    """
    Stop scheduling further steps. Steps already running finish first.
    """
    cancelled = await manager.cancel(execution_id)
    return ExecutionCancelResponse(execution_id=execution_id, cancelled=cancelled)
