from __future__ import annotations

import threading
from dataclasses import dataclass, field
from typing import FrozenSet, List, Sequence

from planexec.config import ExecutionConfig
from planexec.service.errors import PlanConfigurationError
from planexec.service.graph import DependencyGraph, build_dependency_graph
from planexec.storage.models import PlanStep, StepStatus

# Allowed forward transitions; anything else is a scheduler bug
_TRANSITIONS = {
    StepStatus.PENDING: {StepStatus.RUNNING, StepStatus.SKIPPED},
    StepStatus.RUNNING: {StepStatus.COMPLETED, StepStatus.FAILED},
    StepStatus.COMPLETED: set(),
    StepStatus.FAILED: set(),
    StepStatus.SKIPPED: set(),
}


class InvalidTransitionError(RuntimeError):
    """A step status change that would move a step backwards."""


@dataclass
class ExecutionContext:
    """Mutable run state: one status slot per step, guarded by a single lock.

    The completed/failed/running sets are derived from the status array so
    they are disjoint by construction. Only the coordinator mutates it.
    """

    execution_id: str
    plan_request_id: str
    config: ExecutionConfig
    dependency_graph: DependencyGraph
    statuses: List[StepStatus]
    _lock: threading.RLock = field(default_factory=threading.RLock, repr=False)

    @classmethod
    def create(
        cls,
        execution_id: str,
        plan_request_id: str,
        config: ExecutionConfig,
        steps: Sequence[PlanStep],
    ) -> "ExecutionContext":
        context = cls(
            execution_id=execution_id,
            plan_request_id=plan_request_id,
            config=config,
            dependency_graph=build_dependency_graph(steps),
            statuses=[StepStatus.PENDING] * len(steps),
        )
        problems = context.validate()
        if problems:
            raise PlanConfigurationError(
                "invalid execution context", detail={"errors": problems}
            )
        return context

    @property
    def total_steps(self) -> int:
        return len(self.statuses)

    def _indices(self, status: StepStatus) -> FrozenSet[int]:
        with self._lock:
            return frozenset(i for i, s in enumerate(self.statuses) if s is status)

    @property
    def completed_steps(self) -> FrozenSet[int]:
        return self._indices(StepStatus.COMPLETED)

    @property
    def failed_steps(self) -> FrozenSet[int]:
        return self._indices(StepStatus.FAILED)

    @property
    def running_steps(self) -> FrozenSet[int]:
        return self._indices(StepStatus.RUNNING)

    @property
    def skipped_steps(self) -> FrozenSet[int]:
        return self._indices(StepStatus.SKIPPED)

    @property
    def pending_steps(self) -> FrozenSet[int]:
        return self._indices(StepStatus.PENDING)

    def status_of(self, step_index: int) -> StepStatus:
        with self._lock:
            return self.statuses[step_index]

    def _transition(self, step_index: int, new_status: StepStatus) -> None:
        with self._lock:
            current = self.statuses[step_index]
            if new_status not in _TRANSITIONS[current]:
                raise InvalidTransitionError(
                    f"step {step_index}: {current.value} -> {new_status.value}"
                )
            self.statuses[step_index] = new_status

    def mark_running(self, step_index: int) -> None:
        self._transition(step_index, StepStatus.RUNNING)

    def mark_completed(self, step_index: int) -> None:
        self._transition(step_index, StepStatus.COMPLETED)

    def mark_failed(self, step_index: int) -> None:
        self._transition(step_index, StepStatus.FAILED)

    def mark_skipped(self, step_index: int) -> None:
        self._transition(step_index, StepStatus.SKIPPED)

    def update_after_step(self, step_index: int, status: StepStatus) -> None:
        """Move a running step to its terminal status."""
        if status is StepStatus.COMPLETED:
            self.mark_completed(step_index)
        elif status is StepStatus.FAILED:
            self.mark_failed(step_index)
        else:
            raise InvalidTransitionError(
                f"step {step_index}: {status.value} is not a step outcome"
            )

    def validate(self) -> List[str]:
        errors: List[str] = []
        if not self.execution_id:
            errors.append("Execution ID is required")
        if not self.plan_request_id:
            errors.append("Plan request ID is required")
        if self.config is None:
            errors.append("Execution config is required")
            return errors
        if self.config.max_retries < 0:
            errors.append("Max retries must be non-negative")
        if self.config.retry_delay_ms < 0:
            errors.append("Retry delay must be non-negative")
        if self.config.parallel_execution_limit < 1:
            errors.append("Parallel execution limit must be at least 1")
        return errors
