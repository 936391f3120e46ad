"""Workflow validation and execution endpoints."""

from fastapi import APIRouter, Depends, status

from api.schemas.common import ErrorResponse
from api.schemas.execution import ExecutionResponse
from api.schemas.workflow import WorkflowDefinition, WorkflowExecuteRequest, WorkflowValidateResponse
from core.exceptions import ConfigurationError
from workflow.execution_manager import ExecutionManager, get_execution_manager
from workflow.graph import WorkflowGraph

router = APIRouter()


@router.post("/validate", response_model=WorkflowValidateResponse)
async def validate_workflow(definition: WorkflowDefinition) -> WorkflowValidateResponse:
    """
    Check a workflow graph's shape without running it.
    """
    try:
        graph = WorkflowGraph.from_dict(definition.to_payload())
    except ConfigurationError as e:
        return WorkflowValidateResponse(valid=False, errors=[e.message])
    return WorkflowValidateResponse(valid=True, entry=graph.entry, step_count=len(graph.steps))


@router.post(
    "/execute",
    response_model=ExecutionResponse,
    status_code=status.HTTP_202_ACCEPTED,
    responses={422: {"model": ErrorResponse}, 429: {"model": ErrorResponse}},
)
async def execute_workflow(
    request: WorkflowExecuteRequest,
    manager: ExecutionManager = Depends(get_execution_manager),
) -> ExecutionResponse:
    """
    Start a run in the background.

    The graph is validated first (422 on a bad shape); the response carries
    the execution ID to poll under /executions/{execution_id}.
    """
    graph = WorkflowGraph.from_dict(request.workflow.to_payload())
    report = manager.start(
        graph,
        workflow_id=request.workflow_id,
        data=request.data,
        variables=request.variables,
    )
    return ExecutionResponse(**report.to_dict(include_state=False))
