"""
Workflow graph model: steps, edges and shape validation.

Wire format::

    {
        "steps": [{"id": "s1", "type": "start", "config": {...}}, ...],
        "edges": [{"source": "s1", "target": "s2", "sourceHandle": "output"}, ...]
    }

Editor exports using ``nodes`` / ``data`` instead of ``steps`` / ``config``
are accepted too. Edges whose ``targetHandle`` names a property input (anything
other than ``input``) carry no control flow and are ignored by the walker.
"""

from collections import deque
from dataclasses import dataclass, field
from typing import Any, Iterable, Optional

from core.exceptions import ConfigurationError

START_STEP_TYPE = "start"

LOOP_BODY_HANDLES = (None, "output", "body")
LOOP_DONE_HANDLE = "done"
SWITCH_DEFAULT_HANDLE = "default"


@dataclass
class Step:
    id: str
    type: str
    config: dict[str, Any] = field(default_factory=dict)
    label: Optional[str] = None

    @classmethod
    def from_dict(cls, raw: dict[str, Any]) -> "Step":
        if not isinstance(raw, dict):
            raise ConfigurationError("Each step must be an object")
        step_id = raw.get("id")
        step_type = raw.get("type")
        if not step_id:
            raise ConfigurationError("Step is missing an id")
        if not step_type:
            raise ConfigurationError(f'Step "{step_id}" is missing a type')
        config = raw.get("config")
        if config is None:
            config = raw.get("data") or {}
        if not isinstance(config, dict):
            raise ConfigurationError(f'Step "{step_id}" config must be an object')
        return cls(id=str(step_id), type=str(step_type), config=dict(config), label=config.get("label"))

    def to_dict(self) -> dict[str, Any]:
        return {"id": self.id, "type": self.type, "config": self.config}


@dataclass
class Edge:
    source: str
    target: str
    source_handle: Optional[str] = None
    target_handle: Optional[str] = None
    id: Optional[str] = None

    @classmethod
    def from_dict(cls, raw: dict[str, Any]) -> "Edge":
        if not isinstance(raw, dict) or not raw.get("source") or not raw.get("target"):
            raise ConfigurationError("Each edge must have a source and a target")
        return cls(
            source=str(raw["source"]),
            target=str(raw["target"]),
            source_handle=raw.get("sourceHandle"),
            target_handle=raw.get("targetHandle"),
            id=raw.get("id"),
        )

    @property
    def is_control(self) -> bool:
        return self.target_handle in (None, "input")

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "source": self.source,
            "target": self.target,
            "sourceHandle": self.source_handle,
            "targetHandle": self.target_handle,
        }


class WorkflowGraph:
    """Validated step graph with successor lookups."""

    def __init__(self, steps: Iterable[Step], edges: Iterable[Edge], entry: Optional[str] = None):
        self.steps: dict[str, Step] = {}
        for step in steps:
            if step.id in self.steps:
                raise ConfigurationError(f'Duplicate step id "{step.id}"')
            self.steps[step.id] = step
        self.edges: list[Edge] = [e for e in edges if e.is_control]
        self._outgoing: dict[str, list[Edge]] = {step_id: [] for step_id in self.steps}
        self._incoming: dict[str, list[Edge]] = {step_id: [] for step_id in self.steps}
        for edge in self.edges:
            for end in (edge.source, edge.target):
                if end not in self.steps:
                    raise ConfigurationError(
                        f'Edge {edge.source} -> {edge.target} references unknown step "{end}"'
                    )
            self._outgoing[edge.source].append(edge)
            self._incoming[edge.target].append(edge)
        self._explicit_entry = entry

    @classmethod
    def from_dict(cls, payload: dict[str, Any]) -> "WorkflowGraph":
        if not isinstance(payload, dict):
            raise ConfigurationError("Workflow definition must be an object")
        raw_steps = payload.get("steps")
        if raw_steps is None:
            raw_steps = payload.get("nodes")
        if not isinstance(raw_steps, list):
            raise ConfigurationError("Workflow definition must contain a list of steps")
        raw_edges = payload.get("edges") or []
        if not isinstance(raw_edges, list):
            raise ConfigurationError("Workflow edges must be a list")
        graph = cls(
            steps=[Step.from_dict(s) for s in raw_steps],
            edges=[Edge.from_dict(e) for e in raw_edges],
            entry=payload.get("entry"),
        )
        graph.validate()
        return graph

    def to_dict(self) -> dict[str, Any]:
        return {
            "steps": [s.to_dict() for s in self.steps.values()],
            "edges": [e.to_dict() for e in self.edges],
            "entry": self.entry,
        }

    # ─── shape ───

    @property
    def entry(self) -> str:
        """Entry step id: explicit, else the start step, else the only root."""
        if self._explicit_entry is not None:
            if self._explicit_entry not in self.steps:
                raise ConfigurationError(f'Entry step "{self._explicit_entry}" does not exist')
            return self._explicit_entry

        starts = [s.id for s in self.steps.values() if s.type == START_STEP_TYPE]
        if len(starts) > 1:
            raise ConfigurationError(f"Workflow has more than one start step: {', '.join(starts)}")
        if starts:
            return starts[0]

        roots = [step_id for step_id, incoming in self._incoming.items() if not incoming]
        if len(roots) != 1:
            raise ConfigurationError(
                "Cannot determine the entry step: add a start step or mark one step as entry "
                f"(steps without incoming edges: {', '.join(roots) or 'none'})"
            )
        return roots[0]

    def validate(self) -> None:
        """Reject graphs the walker cannot run deterministically.

        - at least one step, a resolvable entry with no incoming edges
        - at most one incoming control edge per step
        - no cycles (loop steps are the only repetition)
        """
        if not self.steps:
            raise ConfigurationError("Workflow has no steps")

        entry = self.entry
        if self._incoming[entry]:
            raise ConfigurationError(f'Entry step "{entry}" must not have incoming edges')

        for step_id, incoming in self._incoming.items():
            if len(incoming) > 1:
                sources = ", ".join(e.source for e in incoming)
                raise ConfigurationError(
                    f'Step "{step_id}" has {len(incoming)} incoming edges ({sources}); a step accepts one input'
                )

        self._check_acyclic()

    def _check_acyclic(self) -> None:
        # Kahn's algorithm: anything left over sits on a cycle
        in_degree = {step_id: len(edges) for step_id, edges in self._incoming.items()}
        queue = deque(step_id for step_id, degree in in_degree.items() if degree == 0)
        visited = 0
        while queue:
            step_id = queue.popleft()
            visited += 1
            for edge in self._outgoing[step_id]:
                in_degree[edge.target] -= 1
                if in_degree[edge.target] == 0:
                    queue.append(edge.target)
        if visited != len(self.steps):
            cyclic = sorted(step_id for step_id, degree in in_degree.items() if degree > 0)
            raise ConfigurationError(
                f"Workflow contains a cycle through: {', '.join(cyclic)}. Use a loop step for repetition"
            )

    # ─── navigation ───

    def get_step(self, step_id: str) -> Step:
        return self.steps[step_id]

    def outgoing(self, step_id: str, handles: Optional[Iterable[Optional[str]]] = None) -> list[Edge]:
        edges = self._outgoing.get(step_id, [])
        if handles is None:
            return list(edges)
        wanted = set(handles)
        return [e for e in edges if e.source_handle in wanted]

    def loop_body_edges(self, step_id: str) -> list[Edge]:
        return self.outgoing(step_id, LOOP_BODY_HANDLES)

    def loop_done_edges(self, step_id: str) -> list[Edge]:
        return self.outgoing(step_id, (LOOP_DONE_HANDLE,))

    def switch_edges(self, step_id: str, selected: Optional[str]) -> list[Edge]:
        """Edges for the selected handle, else the default handle's edges."""
        if selected is not None:
            matched = self.outgoing(step_id, (selected,))
            if matched:
                return matched
        return self.outgoing(step_id, (SWITCH_DEFAULT_HANDLE,))

    def descendants(self, step_id: str) -> set[str]:
        """Every step reachable from ``step_id`` (excluding itself)."""
        seen: set[str] = set()
        stack = [e.target for e in self._outgoing.get(step_id, [])]
        while stack:
            current = stack.pop()
            if current in seen:
                continue
            seen.add(current)
            stack.extend(e.target for e in self._outgoing.get(current, []))
        return seen

    def reachable_from(self, edges: Iterable[Edge]) -> set[str]:
        seen: set[str] = set()
        for edge in edges:
            seen.add(edge.target)
            seen |= self.descendants(edge.target)
        return seen
