from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _dt_to_str(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


def _dt_from_str(raw: Optional[str]) -> Optional[datetime]:
    return datetime.fromisoformat(raw) if raw else None


class ExecutionStatus(str, Enum):
    """Run-level status exposed to callers."""

    PENDING = "PENDING"
    RUNNING = "RUNNING"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"
    ROLLED_BACK = "ROLLED_BACK"


TERMINAL_EXECUTION_STATUSES = frozenset(
    {ExecutionStatus.COMPLETED, ExecutionStatus.FAILED, ExecutionStatus.ROLLED_BACK}
)


class StepStatus(str, Enum):
    """Per-step status; transitions only move forward."""

    PENDING = "PENDING"
    RUNNING = "RUNNING"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"
    SKIPPED = "SKIPPED"


@dataclass(frozen=True)
class PlanStep:
    tool: str
    params: Dict[str, Any] = field(default_factory=dict)
    depends_on: Tuple[int, ...] = ()
    parallel: bool = False
    description: Optional[str] = None

    def to_dict(self) -> dict:
        return {
            "tool": self.tool,
            "params": self.params,
            "depends_on": list(self.depends_on),
            "parallel": self.parallel,
            "description": self.description,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "PlanStep":
        return cls(
            tool=data["tool"],
            params=dict(data.get("params") or {}),
            depends_on=tuple(data.get("depends_on") or data.get("dependsOn") or ()),
            parallel=bool(data.get("parallel", False)),
            description=data.get("description"),
        )


@dataclass(frozen=True)
class Plan:
    request_id: str
    steps: Tuple[PlanStep, ...]
    query: Optional[str] = None

    def to_dict(self) -> dict:
        return {
            "request_id": self.request_id,
            "query": self.query,
            "steps": [step.to_dict() for step in self.steps],
        }


@dataclass
class ExecutionStepResult:
    step_index: int
    tool: str
    params: Dict[str, Any]
    status: StepStatus = StepStatus.PENDING
    result: Any = None
    error: Optional[str] = None
    retry_count: int = 0
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    dependencies: List[int] = field(default_factory=list)

    @classmethod
    def pending(cls, step_index: int, step: PlanStep) -> "ExecutionStepResult":
        return cls(
            step_index=step_index,
            tool=step.tool,
            params=dict(step.params),
            dependencies=list(step.depends_on),
        )

    def to_dict(self) -> dict:
        return {
            "step_index": self.step_index,
            "tool": self.tool,
            "params": self.params,
            "status": self.status.value,
            "result": self.result,
            "error": self.error,
            "retry_count": self.retry_count,
            "started_at": _dt_to_str(self.started_at),
            "completed_at": _dt_to_str(self.completed_at),
            "dependencies": list(self.dependencies),
        }

    @classmethod
    def from_dict(cls, data: dict) -> "ExecutionStepResult":
        return cls(
            step_index=int(data["step_index"]),
            tool=data["tool"],
            params=dict(data.get("params") or {}),
            status=StepStatus(data.get("status", StepStatus.PENDING.value)),
            result=data.get("result"),
            error=data.get("error"),
            retry_count=int(data.get("retry_count", 0)),
            started_at=_dt_from_str(data.get("started_at")),
            completed_at=_dt_from_str(data.get("completed_at")),
            dependencies=list(data.get("dependencies") or []),
        )


@dataclass
class ExecutionRecord:
    """Durable document describing one execution of a plan."""

    execution_id: str
    plan_request_id: str
    total_steps: int
    status: ExecutionStatus = ExecutionStatus.PENDING
    completed_steps: int = 0
    failed_steps: int = 0
    results: List[ExecutionStepResult] = field(default_factory=list)
    error: Optional[str] = None
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)
    rollback: Optional[dict] = None

    @property
    def execution_time_ms(self) -> Optional[float]:
        if not self.started_at or not self.completed_at:
            return None
        return (self.completed_at - self.started_at).total_seconds() * 1000

    def summary(self) -> dict:
        return {
            "execution_id": self.execution_id,
            "plan_request_id": self.plan_request_id,
            "status": self.status.value,
            "started_at": _dt_to_str(self.started_at),
            "completed_at": _dt_to_str(self.completed_at),
            "total_steps": self.total_steps,
            "completed_steps": self.completed_steps,
            "failed_steps": self.failed_steps,
            "error": self.error,
        }

    def to_dict(self) -> dict:
        data = self.summary()
        data.update(
            {
                "results": [r.to_dict() for r in self.results],
                "created_at": _dt_to_str(self.created_at),
                "updated_at": _dt_to_str(self.updated_at),
                "rollback": self.rollback,
            }
        )
        return data

    @classmethod
    def from_dict(cls, data: dict) -> "ExecutionRecord":
        return cls(
            execution_id=data["execution_id"],
            plan_request_id=data["plan_request_id"],
            total_steps=int(data["total_steps"]),
            status=ExecutionStatus(data.get("status", ExecutionStatus.PENDING.value)),
            completed_steps=int(data.get("completed_steps", 0)),
            failed_steps=int(data.get("failed_steps", 0)),
            results=[ExecutionStepResult.from_dict(r) for r in data.get("results") or []],
            error=data.get("error"),
            started_at=_dt_from_str(data.get("started_at")),
            completed_at=_dt_from_str(data.get("completed_at")),
            created_at=_dt_from_str(data.get("created_at")) or utcnow(),
            updated_at=_dt_from_str(data.get("updated_at")) or utcnow(),
            rollback=data.get("rollback"),
        )


@dataclass
class ExecutionStatistics:
    total: int
    by_status: Dict[str, int]
    average_execution_time_ms: float
    success_rate: float
    average_steps_per_execution: float


def compute_statistics(records: List[ExecutionRecord]) -> ExecutionStatistics:
    """Aggregate run counts, timings and success rate over stored executions."""
    by_status = {status.value: 0 for status in ExecutionStatus}
    durations: List[float] = []
    step_counts: List[int] = []
    for record in records:
        by_status[record.status.value] += 1
        step_counts.append(record.total_steps)
        elapsed = record.execution_time_ms
        if elapsed is not None:
            durations.append(elapsed)
    total = len(records)
    successes = by_status[ExecutionStatus.COMPLETED.value]
    return ExecutionStatistics(
        total=total,
        by_status=by_status,
        average_execution_time_ms=sum(durations) / len(durations) if durations else 0.0,
        success_rate=(successes / total) * 100 if total else 0.0,
        average_steps_per_execution=sum(step_counts) / total if total else 0.0,
    )
