"""Workflow schemas."""

from pydantic import BaseModel, Field
from typing import List, Optional, Dict, Any


class WorkflowDefinition(BaseModel):
    """A step graph in wire format. ``nodes`` is accepted for editor exports."""

    steps: Optional[List[Dict[str, Any]]] = Field(default=None, description="Steps: {id, type, config}")
    nodes: Optional[List[Dict[str, Any]]] = Field(default=None, description="Editor alias for steps")
    edges: List[Dict[str, Any]] = Field(default=[], description="Edges: {source, target, sourceHandle}")
    entry: Optional[str] = Field(default=None, description="Entry step ID (defaults to the start step)")

    def to_payload(self) -> Dict[str, Any]:
        return self.model_dump(exclude_none=True)


class WorkflowExecuteRequest(BaseModel):
    """Request to run a workflow in the background."""

    workflow: WorkflowDefinition = Field(description="Workflow graph to run")
    workflow_id: Optional[str] = Field(default=None, description="Caller's workflow ID, echoed in reports")
    data: Dict[str, Any] = Field(default={}, description="Initial context data")
    variables: Dict[str, Any] = Field(default={}, description="Initial context variables")


class WorkflowValidateResponse(BaseModel):
    """Outcome of a graph shape check."""

    valid: bool = Field(description="Whether the workflow can be run")
    entry: Optional[str] = Field(default=None, description="Resolved entry step ID")
    step_count: int = Field(default=0, description="Number of steps")
    errors: List[str] = Field(default=[], description="Problems found")
