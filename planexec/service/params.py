from __future__ import annotations

import json
import re
from typing import Any, Dict, List, Mapping, Sequence

from planexec.service.errors import PlanConfigurationError
from planexec.storage.models import ExecutionStepResult, StepStatus

# ${step_3.result.items[0].id}
REFERENCE_PATTERN = re.compile(r"\$\{step_(\d+)\.result((?:\.[A-Za-z_][\w\-]*|\[\d+\])*)\}")
UNRESOLVED_PATTERN = re.compile(r"\$\{[^}]*\}")
_PATH_SEGMENT = re.compile(r"\.([A-Za-z_][\w\-]*)|\[(\d+)\]")

_MISSING = object()


def _walk_path(value: Any, path: str) -> Any:
    current = value
    for match in _PATH_SEGMENT.finditer(path):
        key, index = match.group(1), match.group(2)
        if key is not None:
            if not isinstance(current, Mapping) or key not in current:
                return _MISSING
            current = current[key]
        else:
            position = int(index)
            if not isinstance(current, (list, tuple)) or position >= len(current):
                return _MISSING
            current = current[position]
    return current


def _lookup(
    match: re.Match,
    results: Sequence[ExecutionStepResult],
    step_index: int,
) -> Any:
    source = int(match.group(1))
    path = match.group(2) or ""
    if source >= len(results):
        raise PlanConfigurationError(
            f"step {step_index} references unknown step {source}",
            detail={"step_index": step_index, "reference": match.group(0)},
        )
    upstream = results[source]
    if upstream.status is not StepStatus.COMPLETED:
        raise PlanConfigurationError(
            f"step {step_index} references step {source} which has not completed",
            detail={"step_index": step_index, "reference": match.group(0)},
        )
    value = _walk_path(upstream.result, path)
    if value is _MISSING:
        raise PlanConfigurationError(
            f"step {step_index} references missing path {match.group(0)}",
            detail={"step_index": step_index, "reference": match.group(0)},
        )
    return value


def _render(value: Any) -> str:
    if isinstance(value, str):
        return value
    return json.dumps(value, default=str)


def _resolve_string(
    raw: str, results: Sequence[ExecutionStepResult], step_index: int
) -> Any:
    whole = REFERENCE_PATTERN.fullmatch(raw)
    if whole:
        # A lone reference keeps the upstream value's type
        resolved: Any = _lookup(whole, results, step_index)
    else:
        # Checked on the template; substituted values may contain "${" themselves
        leftover = UNRESOLVED_PATTERN.search(REFERENCE_PATTERN.sub("", raw))
        if leftover:
            raise PlanConfigurationError(
                f"step {step_index} has unresolved reference {leftover.group(0)}",
                detail={"step_index": step_index, "reference": leftover.group(0)},
            )
        resolved = REFERENCE_PATTERN.sub(
            lambda m: _render(_lookup(m, results, step_index)), raw
        )
    return resolved


def _resolve_value(
    value: Any, results: Sequence[ExecutionStepResult], step_index: int
) -> Any:
    if isinstance(value, str):
        return _resolve_string(value, results, step_index)
    if isinstance(value, Mapping):
        return {k: _resolve_value(v, results, step_index) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [_resolve_value(v, results, step_index) for v in value]
    return value


def resolve_params(
    params: Mapping[str, Any],
    results: Sequence[ExecutionStepResult],
    step_index: int,
) -> Dict[str, Any]:
    """Substitute ``${step_N.result...}`` references with completed step output.

    Raises PlanConfigurationError for any reference that cannot be resolved;
    no placeholder value is ever passed to a tool.
    """
    return {key: _resolve_value(value, results, step_index) for key, value in params.items()}


def find_references(params: Mapping[str, Any]) -> List[int]:
    """Step indices referenced anywhere in ``params``, ascending."""
    found = set()

    def _scan(value: Any) -> None:
        if isinstance(value, str):
            found.update(int(m.group(1)) for m in REFERENCE_PATTERN.finditer(value))
        elif isinstance(value, Mapping):
            for item in value.values():
                _scan(item)
        elif isinstance(value, (list, tuple)):
            for item in value:
                _scan(item)

    _scan(params)
    return sorted(found)
