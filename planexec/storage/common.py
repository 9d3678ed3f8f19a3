"""Store contracts and record-mutation helpers shared by the memory and Redis backends."""

from __future__ import annotations

from datetime import datetime, timedelta
from typing import List, Optional, Protocol

from planexec.storage.errors import ConstraintViolation
from planexec.storage.models import (
    TERMINAL_EXECUTION_STATUSES,
    ExecutionRecord,
    ExecutionStatistics,
    ExecutionStatus,
    ExecutionStepResult,
    Plan,
    utcnow,
)

DEFAULT_LIST_LIMIT = 50
DEFAULT_RETENTION_DAYS = 30


class PlanSource(Protocol):
    async def get_plan(self, plan_request_id: str) -> Optional[Plan]:
        ...


class ExecutionStore(Protocol):
    """Durable home of execution records.

    Writes land before the call returns; the engine persists after every
    state transition so a crash loses at most the in-flight step outcomes.
    """

    async def save_execution(self, record: ExecutionRecord) -> None:
        ...

    async def update_step_result(self, execution_id: str, step_result: ExecutionStepResult) -> None:
        ...

    async def update_progress(self, execution_id: str, completed_steps: int, failed_steps: int) -> None:
        ...

    async def update_status(
        self,
        execution_id: str,
        status: ExecutionStatus,
        *,
        error: Optional[str] = None,
        started_at: Optional[datetime] = None,
        completed_at: Optional[datetime] = None,
        rollback: Optional[dict] = None,
    ) -> None:
        ...

    async def get_by_id(self, execution_id: str) -> Optional[ExecutionRecord]:
        ...

    async def list_by_plan(self, plan_request_id: str, limit: int = DEFAULT_LIST_LIMIT) -> List[ExecutionRecord]:
        ...

    async def list_recent(self, limit: int = DEFAULT_LIST_LIMIT) -> List[ExecutionRecord]:
        ...

    async def list_by_status(self, status: ExecutionStatus, limit: int = DEFAULT_LIST_LIMIT) -> List[ExecutionRecord]:
        ...

    async def delete_execution(self, execution_id: str) -> bool:
        ...

    async def cleanup_old_executions(self, older_than_days: int = DEFAULT_RETENTION_DAYS) -> int:
        ...

    async def get_statistics(self) -> ExecutionStatistics:
        ...


def missing_execution(execution_id: str) -> ConstraintViolation:
    return ConstraintViolation(
        "execution not found", detail={"execution_id": execution_id}
    )


def apply_step_result(record: ExecutionRecord, step_result: ExecutionStepResult) -> None:
    index = step_result.step_index
    if index < 0 or index >= len(record.results):
        raise ConstraintViolation(
            "step index out of range",
            detail={"execution_id": record.execution_id, "step_index": index},
        )
    record.results[index] = step_result
    record.updated_at = utcnow()


def apply_progress(record: ExecutionRecord, completed_steps: int, failed_steps: int) -> None:
    record.completed_steps = completed_steps
    record.failed_steps = failed_steps
    record.updated_at = utcnow()


def apply_status(
    record: ExecutionRecord,
    status: ExecutionStatus,
    *,
    error: Optional[str] = None,
    started_at: Optional[datetime] = None,
    completed_at: Optional[datetime] = None,
    rollback: Optional[dict] = None,
) -> None:
    record.status = status
    if error is not None:
        record.error = error
    if started_at is not None:
        record.started_at = started_at
    if completed_at is not None:
        record.completed_at = completed_at
    if rollback is not None:
        record.rollback = rollback
    record.updated_at = utcnow()


def is_expired(record: ExecutionRecord, older_than_days: int, now: Optional[datetime] = None) -> bool:
    """Terminal records created before the retention window."""
    cutoff = (now or utcnow()) - timedelta(days=older_than_days)
    return record.status in TERMINAL_EXECUTION_STATUSES and record.created_at < cutoff


def newest_first(records: List[ExecutionRecord]) -> List[ExecutionRecord]:
    return sorted(records, key=lambda r: r.created_at, reverse=True)
