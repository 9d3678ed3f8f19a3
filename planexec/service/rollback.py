"""Compensating plans for completed side-effecting steps.

Rollback is best-effort: a step is compensated only when its tool has a
known inverse and its result carries what the inverse needs. Everything
else is surfaced as unsupported instead of being approximated.
"""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Mapping, Optional, Sequence, Set, Tuple

from planexec.logging import get_logger, truncate_error_message
from planexec.service.scheduler import is_read_operation
from planexec.service.tools import ToolExecutor
from planexec.storage.models import ExecutionStepResult, PlanStep, StepStatus, utcnow

logger = get_logger(__name__)

CRUD_TOOL = re.compile(r"^(?P<entity>.+)_(?P<op>create|delete|update)$")
INVERSE_OPERATIONS: Dict[str, str] = {
    "create": "delete",
    "delete": "create",
    "update": "update",
}
IDENTIFIER_KEYS: Tuple[str, ...] = ("uid", "id")
PRE_IMAGE_KEYS: Dict[str, Tuple[str, ...]] = {
    "delete": ("previous", "deleted"),
    "update": ("previous",),
}


@dataclass(frozen=True)
class UnsupportedStep:
    step_index: int
    tool: str
    reason: str

    def to_dict(self) -> dict:
        return {"step_index": self.step_index, "tool": self.tool, "reason": self.reason}


@dataclass
class RollbackPlan:
    """Compensations in execution order; ``source_indices[i]`` is what ``steps[i]`` undoes."""

    steps: List[PlanStep]
    reason: str
    created_at: datetime = field(default_factory=utcnow)
    source_indices: List[int] = field(default_factory=list)
    unsupported: List[UnsupportedStep] = field(default_factory=list)


@dataclass
class RollbackReport:
    success: bool
    results: List[dict] = field(default_factory=list)
    errors: List[str] = field(default_factory=list)
    unsupported: List[UnsupportedStep] = field(default_factory=list)

    @property
    def complete(self) -> bool:
        """True when every side effect of the run was undone."""
        return self.success and not self.unsupported

    def to_dict(self) -> dict:
        return {
            "success": self.success,
            "complete": self.complete,
            "results": list(self.results),
            "errors": list(self.errors),
            "unsupported": [u.to_dict() for u in self.unsupported],
        }


def inverse_tool(tool: str) -> Optional[str]:
    match = CRUD_TOOL.match(tool)
    if not match:
        return None
    return f"{match.group('entity')}_{INVERSE_OPERATIONS[match.group('op')]}"


def supports_rollback(tool: str) -> bool:
    return inverse_tool(tool) is not None


def _operation(tool: str) -> Optional[str]:
    match = CRUD_TOOL.match(tool)
    return match.group("op") if match else None


def _identifier(*sources: Any) -> Optional[Tuple[str, Any]]:
    for source in sources:
        if not isinstance(source, Mapping):
            continue
        for key in IDENTIFIER_KEYS:
            value = source.get(key)
            if value not in (None, ""):
                return key, value
    return None


def _pre_image(result: Any, operation: str) -> Optional[Dict[str, Any]]:
    if not isinstance(result, Mapping):
        return None
    for key in PRE_IMAGE_KEYS.get(operation, ()):
        snapshot = result.get(key)
        if isinstance(snapshot, Mapping) and snapshot:
            return dict(snapshot)
    return None


def _compensation_params(step: ExecutionStepResult) -> Tuple[Optional[Dict[str, Any]], str]:
    """Params for the inverse call, or None with the reason it cannot be built."""
    operation = _operation(step.tool)
    if operation == "create":
        found = _identifier(step.result, step.params)
        if found is None:
            return None, "create result carries no identifier"
        key, value = found
        return {key: value}, ""

    if operation == "delete":
        pre_image = _pre_image(step.result, "delete")
        if pre_image is None:
            return None, "delete result carries no pre-image of the deleted entity"
        return pre_image, ""

    if operation == "update":
        pre_image = _pre_image(step.result, "update")
        if pre_image is None:
            return None, "update result carries no pre-update snapshot"
        found = _identifier(pre_image) or _identifier(step.params)
        if found is not None and found[0] not in pre_image:
            pre_image[found[0]] = found[1]
        return pre_image, ""

    return None, "no inverse operation registered"


def compensated_indices(previous: Optional[Mapping[str, Any]]) -> Set[int]:
    """Source steps whose compensation succeeded in an earlier rollback pass."""
    if not previous:
        return set()
    return {
        entry["source_step_index"]
        for entry in previous.get("results", ())
        if entry.get("success") and entry.get("source_step_index") is not None
    }


def merge_rollback_history(
    previous: Optional[Mapping[str, Any]], report: RollbackReport
) -> dict:
    """Stored form of ``report`` that keeps earlier successful compensations."""
    merged = report.to_dict()
    if previous:
        carried = [entry for entry in previous.get("results", ()) if entry.get("success")]
        merged["results"] = carried + merged["results"]
    return merged


def generate_rollback_plan(
    step_results: Sequence[ExecutionStepResult],
    reason: str = "Execution failed",
    *,
    already_compensated: Optional[Set[int]] = None,
) -> RollbackPlan:
    """Build the LIFO compensating plan for the COMPLETED entries of ``step_results``.

    Read-only tools need no compensation and are left out silently, as are
    steps listed in ``already_compensated``.
    """
    skip = already_compensated or set()
    completed = sorted(
        (
            r
            for r in step_results
            if r.status is StepStatus.COMPLETED and r.step_index not in skip
        ),
        key=lambda r: r.step_index,
        reverse=True,
    )
    plan = RollbackPlan(steps=[], reason=reason)
    for step in completed:
        if is_read_operation(step.tool):
            continue
        target = inverse_tool(step.tool)
        params, why = _compensation_params(step) if target else (None, "no inverse operation registered")
        if target is None or params is None:
            logger.warning(
                "rollback_step_unsupported",
                step_index=step.step_index,
                tool=step.tool,
                reason=why,
            )
            plan.unsupported.append(UnsupportedStep(step.step_index, step.tool, why))
            continue
        plan.steps.append(
            PlanStep(
                tool=target,
                params=params,
                description=f"Rollback of step {step.step_index} ({step.tool})",
            )
        )
        plan.source_indices.append(step.step_index)
    return plan


def create_minimal_rollback_plan(
    step_results: Sequence[ExecutionStepResult],
    reason: str = "Minimal rollback",
) -> RollbackPlan:
    """Like :func:`generate_rollback_plan` but restricted to CRUD steps."""
    mutating = [r for r in step_results if supports_rollback(r.tool)]
    return generate_rollback_plan(mutating, reason=reason)


def validate_rollback_plan(plan: RollbackPlan) -> List[str]:
    errors: List[str] = []
    if not plan.steps:
        errors.append("Rollback plan has no steps")
    if len(plan.source_indices) != len(plan.steps):
        errors.append("Rollback plan steps and source indices differ in length")
    for position, step in enumerate(plan.steps):
        if not step.tool:
            errors.append(f"Rollback step {position} has no tool")
        if step.depends_on:
            errors.append(f"Rollback step {position} must not declare dependencies")
    if plan.source_indices != sorted(plan.source_indices, reverse=True):
        errors.append("Rollback steps must run in reverse execution order")
    return errors


def rollback_stats(plan: RollbackPlan) -> dict:
    by_tool: Dict[str, int] = {}
    for step in plan.steps:
        by_tool[step.tool] = by_tool.get(step.tool, 0) + 1
    return {
        "total_steps": len(plan.steps),
        "unsupported_steps": len(plan.unsupported),
        "by_tool": by_tool,
        "reason": plan.reason,
    }


async def execute_rollback(plan: RollbackPlan, executor: ToolExecutor) -> RollbackReport:
    """Run compensations one at a time, recording every outcome.

    A failed compensation never stops the pass; the report aggregates them.
    """
    report = RollbackReport(success=True, unsupported=list(plan.unsupported))
    logger.info(
        "rollback_started",
        steps=len(plan.steps),
        unsupported=len(plan.unsupported),
        reason=plan.reason,
    )
    for position, step in enumerate(plan.steps):
        source = plan.source_indices[position] if position < len(plan.source_indices) else None
        entry: Dict[str, Any] = {
            "rollback_step": position,
            "source_step_index": source,
            "tool": step.tool,
            "params": step.params,
        }
        try:
            outcome = await executor.execute(step.tool, dict(step.params))
        except Exception as exc:
            error = truncate_error_message(exc)
            entry.update({"success": False, "error": error})
        else:
            if outcome.success:
                entry.update({"success": True, "result": outcome.data})
            else:
                error = outcome.error or "Rollback step failed"
                entry.update({"success": False, "error": error})

        if not entry["success"]:
            message = f"Rollback step {position} ({step.tool}) failed: {entry['error']}"
            report.errors.append(message)
            logger.error(
                "rollback_step_failed",
                rollback_step=position,
                source_step_index=source,
                tool=step.tool,
                error=entry["error"],
            )
        report.results.append(entry)

    report.success = not report.errors
    logger.info(
        "rollback_finished",
        success=report.success,
        errors=len(report.errors),
        unsupported=len(report.unsupported),
    )
    return report
