from __future__ import annotations

from typing import Any, Dict, Iterable, List, Mapping, Sequence, Set, Tuple

from jsonschema import Draft202012Validator

from planexec.service.errors import PlanConfigurationError
from planexec.service.params import find_references
from planexec.storage.models import Plan, PlanStep

DependencyGraph = Dict[int, Tuple[int, ...]]

PLAN_SCHEMA: dict = {
    "$schema": "https://json-schema.org/draft/2020-12/schema",
    "type": "object",
    "required": ["request_id", "steps"],
    "properties": {
        "request_id": {"type": "string", "minLength": 1},
        "query": {"type": ["string", "null"]},
        "steps": {
            "type": "array",
            "items": {
                "type": "object",
                "required": ["tool"],
                "properties": {
                    "tool": {"type": "string", "minLength": 1},
                    "params": {"type": "object"},
                    "depends_on": {
                        "type": "array",
                        "items": {"type": "integer", "minimum": 0},
                        "uniqueItems": True,
                    },
                    "parallel": {"type": "boolean"},
                    "description": {"type": ["string", "null"]},
                },
            },
        },
    },
}

_plan_validator = Draft202012Validator(PLAN_SCHEMA)


def parse_plan(document: Mapping[str, Any]) -> Plan:
    """Validate a raw plan document and build an immutable Plan.

    Raises PlanConfigurationError listing every schema violation, or the
    first dependency that breaks the forward-only rule.
    """
    errors = sorted(_plan_validator.iter_errors(document), key=lambda e: [str(p) for p in e.path])
    if errors:
        raise PlanConfigurationError(
            "plan document failed validation",
            detail={
                "errors": [
                    {"path": "/".join(str(p) for p in err.path), "message": err.message}
                    for err in errors
                ]
            },
        )
    steps = tuple(PlanStep.from_dict(raw) for raw in document["steps"])
    validate_plan_steps(steps)
    return Plan(request_id=document["request_id"], steps=steps, query=document.get("query"))


def validate_plan_steps(steps: Sequence[PlanStep]) -> None:
    """Enforce the engine precondition: dependencies point strictly backwards.

    A forward-only graph is acyclic, so this also rules out cycles. Every
    ``${step_N.result...}`` reference must name a transitive predecessor.
    """
    ancestors: List[Set[int]] = []
    for index, step in enumerate(steps):
        if not step.tool:
            raise PlanConfigurationError(
                f"step {index} has no tool", detail={"step_index": index}
            )
        seen: Set[int] = set()
        for dep in step.depends_on:
            if isinstance(dep, bool) or not isinstance(dep, int):
                raise PlanConfigurationError(
                    f"step {index} has non-integer dependency {dep!r}",
                    detail={"step_index": index, "dependency": dep},
                )
            if dep < 0 or dep >= index:
                raise PlanConfigurationError(
                    f"step {index} depends on step {dep}; dependencies must reference earlier steps",
                    detail={"step_index": index, "dependency": dep},
                )
            if dep in seen:
                raise PlanConfigurationError(
                    f"step {index} lists dependency {dep} twice",
                    detail={"step_index": index, "dependency": dep},
                )
            seen.add(dep)

        reachable = set(seen)
        for dep in seen:
            reachable |= ancestors[dep]
        ancestors.append(reachable)
        for source in find_references(step.params):
            if source not in reachable:
                raise PlanConfigurationError(
                    f"step {index} references step {source} without depending on it",
                    detail={"step_index": index, "reference": source},
                )


def build_dependency_graph(steps: Sequence[PlanStep]) -> DependencyGraph:
    return {index: tuple(step.depends_on or ()) for index, step in enumerate(steps)}


def direct_dependents(step_index: int, graph: Mapping[int, Iterable[int]]) -> List[int]:
    """Steps listing ``step_index`` among their dependencies, ascending."""
    return sorted(idx for idx, deps in graph.items() if step_index in deps)


def transitive_dependents(step_index: int, graph: Mapping[int, Iterable[int]]) -> List[int]:
    """Every step that can only become ready after ``step_index`` completes."""
    reverse: Dict[int, List[int]] = {idx: [] for idx in graph}
    for idx, deps in graph.items():
        for dep in deps:
            reverse.setdefault(dep, []).append(idx)

    found: Set[int] = set()
    frontier = [step_index]
    while frontier:
        current = frontier.pop()
        for child in reverse.get(current, []):
            if child not in found:
                found.add(child)
                frontier.append(child)
    return sorted(found)
