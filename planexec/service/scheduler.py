"""Scheduling policy: which pending steps may start, and in what order.

Every function here is pure over an ExecutionContext snapshot; the engine
owns dispatch and all state changes.
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from typing import List, Sequence, Tuple

from planexec.service.context import ExecutionContext
from planexec.service.graph import direct_dependents
from planexec.storage.models import PlanStep, StepStatus

# Tool-name patterns for idempotent reads, most specific first.
# Mutating tools never appear here: only an explicit parallel flag lets them overlap.
READ_OPERATION_RULES: Tuple[Tuple[str, re.Pattern], ...] = (
    ("list", re.compile(r"(^|[_.\-])list($|[_.\-])", re.IGNORECASE)),
    ("get", re.compile(r"(^|[_.\-])get($|[_.\-])", re.IGNORECASE)),
    ("search", re.compile(r"(^|[_.\-])search($|[_.\-])", re.IGNORECASE)),
    ("count", re.compile(r"(^|[_.\-])count($|[_.\-])", re.IGNORECASE)),
    ("describe", re.compile(r"(^|[_.\-])describe($|[_.\-])", re.IGNORECASE)),
    ("read", re.compile(r"(^|[_.\-])read($|[_.\-])", re.IGNORECASE)),
)

MUTATING_OPERATION = re.compile(
    r"(^|[_.\-])(create|update|delete|remove|insert|upsert|write|set)($|[_.\-])",
    re.IGNORECASE,
)


def is_read_operation(tool: str) -> bool:
    if MUTATING_OPERATION.search(tool):
        return False
    return any(pattern.search(tool) for _, pattern in READ_OPERATION_RULES)


def get_ready_steps(steps: Sequence[PlanStep], context: ExecutionContext) -> List[int]:
    """Pending steps whose dependencies have all completed, ascending index."""
    completed = context.completed_steps
    ready: List[int] = []
    for index, step in enumerate(steps):
        if context.status_of(index) is not StepStatus.PENDING:
            continue
        if all(dep in completed for dep in step.depends_on):
            ready.append(index)
    return ready


def can_run_in_parallel(
    step_index: int, steps: Sequence[PlanStep], ready_batch: Sequence[int]
) -> bool:
    step = steps[step_index]
    if step.parallel:
        return True
    if not is_read_operation(step.tool):
        return False
    batch = set(ready_batch)
    return not any(dep in batch for dep in step.depends_on)


def sort_steps_by_priority(step_indices: Sequence[int], steps: Sequence[PlanStep]) -> List[int]:
    """Fewer dependencies first, ties broken by ascending index."""
    return sorted(step_indices, key=lambda idx: (len(steps[idx].depends_on), idx))


def get_parallel_steps(
    ready_steps: Sequence[int], steps: Sequence[PlanStep], context: ExecutionContext
) -> List[int]:
    if len(context.running_steps) >= context.config.parallel_execution_limit:
        return []
    return [idx for idx in ready_steps if can_run_in_parallel(idx, steps, ready_steps)]


@dataclass(frozen=True)
class DispatchBatch:
    parallel: List[int]
    sequential: List[int]

    @property
    def all(self) -> List[int]:
        return self.sequential + self.parallel


def plan_dispatch(
    steps: Sequence[PlanStep],
    context: ExecutionContext,
    *,
    sequential_in_flight: bool,
) -> DispatchBatch:
    """Pick the steps to start on this tick.

    At most one sequential step runs at a time; parallel-eligible steps fill
    whatever capacity is left under ``parallel_execution_limit``.
    """
    ready = get_ready_steps(steps, context)
    if not ready:
        return DispatchBatch(parallel=[], sequential=[])

    capacity = context.config.parallel_execution_limit - len(context.running_steps)
    if capacity <= 0:
        return DispatchBatch(parallel=[], sequential=[])

    parallel_ready = sort_steps_by_priority(get_parallel_steps(ready, steps, context), steps)
    sequential_ready = sort_steps_by_priority(
        [idx for idx in ready if idx not in set(parallel_ready)], steps
    )

    sequential: List[int] = []
    if sequential_ready and not sequential_in_flight:
        sequential.append(sequential_ready[0])
        capacity -= 1

    parallel = parallel_ready[: max(capacity, 0)]
    return DispatchBatch(parallel=parallel, sequential=sequential)


def is_execution_complete(total_steps: int, context: ExecutionContext) -> bool:
    return len(context.completed_steps) + len(context.failed_steps) >= total_steps


def calculate_progress(total_steps: int, context: ExecutionContext) -> int:
    if total_steps == 0:
        return 100
    done = len(context.completed_steps) + len(context.failed_steps)
    return round(done / total_steps * 100)


def get_dependents(step_index: int, context: ExecutionContext) -> List[int]:
    return direct_dependents(step_index, context.dependency_graph)


def should_continue_on_error(context: ExecutionContext, failed_step_index: int) -> bool:
    """Whether a failure leaves the run able to finish successfully.

    False under stop-on-error, or when other steps depend on the failed one.
    """
    if not context.config.continue_on_error:
        return False
    return not get_dependents(failed_step_index, context)


def summarize(context: ExecutionContext) -> dict:
    total = context.total_steps
    completed = len(context.completed_steps)
    failed = len(context.failed_steps)
    running = len(context.running_steps)
    skipped = len(context.skipped_steps)
    return {
        "total_steps": total,
        "completed_steps": completed,
        "failed_steps": failed,
        "running_steps": running,
        "skipped_steps": skipped,
        "pending_steps": total - completed - failed - running - skipped,
        "progress": calculate_progress(total, context),
        "is_complete": is_execution_complete(total, context),
    }
