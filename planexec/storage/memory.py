from __future__ import annotations

import copy
import json
import threading
from datetime import datetime
from pathlib import Path
from typing import Dict, List, Optional

from planexec.logging import get_logger
from planexec.storage.common import (
    DEFAULT_LIST_LIMIT,
    DEFAULT_RETENTION_DAYS,
    apply_progress,
    apply_status,
    apply_step_result,
    is_expired,
    missing_execution,
    newest_first,
)
from planexec.storage.errors import ConstraintViolation
from planexec.storage.models import (
    ExecutionRecord,
    ExecutionStatistics,
    ExecutionStatus,
    ExecutionStepResult,
    Plan,
    PlanStep,
    compute_statistics,
)


class MemoryStore:
    """In-process execution store and plan registry.

    Records are copied on the way in and out so callers never share mutable
    state with the store. With ``state_dir`` set, every mutation is written
    to a JSON state file and reloaded on construction.
    """

    def __init__(self, state_dir: Optional[str] = None) -> None:
        self.logger = get_logger(__name__)
        self.executions: Dict[str, ExecutionRecord] = {}
        self.plans: Dict[str, Plan] = {}
        # RLock so helpers can re-enter while a public method holds the lock
        self._data_lock = threading.RLock()
        self.state_dir = Path(state_dir) if state_dir else None
        if self.state_dir is not None:
            self._load_state()

    def _state_path(self) -> Path:
        if self.state_dir is None:
            raise RuntimeError("MemoryStore was created without a state_dir")
        self.state_dir.mkdir(parents=True, exist_ok=True)
        return self.state_dir / "executions.json"

    def _persist_state(self) -> None:
        if self.state_dir is None:
            return
        state = {
            "executions": [r.to_dict() for r in self.executions.values()],
            "plans": [p.to_dict() for p in self.plans.values()],
        }
        path = self._state_path()
        tmp_path = path.with_suffix(".json.tmp")
        try:
            tmp_path.write_text(json.dumps(state, indent=2, default=str))
            tmp_path.replace(path)
        except OSError as exc:
            raise RuntimeError(f"failed to persist execution state: {exc}") from exc

    def _load_state(self) -> bool:
        path = self._state_path()
        try:
            data = json.loads(path.read_text())
        except FileNotFoundError:
            return False
        self.executions = {
            raw["execution_id"]: ExecutionRecord.from_dict(raw)
            for raw in data.get("executions", [])
        }
        self.plans = {
            raw["request_id"]: Plan(
                request_id=raw["request_id"],
                steps=tuple(PlanStep.from_dict(s) for s in raw.get("steps", [])),
                query=raw.get("query"),
            )
            for raw in data.get("plans", [])
        }
        self.logger.info(
            "memory_store_state_loaded",
            executions=len(self.executions),
            plans=len(self.plans),
        )
        return True

    def _require(self, execution_id: str) -> ExecutionRecord:
        record = self.executions.get(execution_id)
        if record is None:
            raise missing_execution(execution_id)
        return record

    # plans

    async def save_plan(self, plan: Plan) -> None:
        with self._data_lock:
            self.plans[plan.request_id] = plan
            self._persist_state()

    async def get_plan(self, plan_request_id: str) -> Optional[Plan]:
        with self._data_lock:
            return self.plans.get(plan_request_id)

    # executions

    async def save_execution(self, record: ExecutionRecord) -> None:
        with self._data_lock:
            if record.execution_id in self.executions:
                raise ConstraintViolation(
                    "execution already exists",
                    detail={"execution_id": record.execution_id},
                )
            self.executions[record.execution_id] = copy.deepcopy(record)
            self._persist_state()

    async def update_step_result(self, execution_id: str, step_result: ExecutionStepResult) -> None:
        with self._data_lock:
            apply_step_result(self._require(execution_id), copy.deepcopy(step_result))
            self._persist_state()

    async def update_progress(self, execution_id: str, completed_steps: int, failed_steps: int) -> None:
        with self._data_lock:
            apply_progress(self._require(execution_id), completed_steps, failed_steps)
            self._persist_state()

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
        with self._data_lock:
            apply_status(
                self._require(execution_id),
                status,
                error=error,
                started_at=started_at,
                completed_at=completed_at,
                rollback=copy.deepcopy(rollback),
            )
            self._persist_state()

    async def get_by_id(self, execution_id: str) -> Optional[ExecutionRecord]:
        with self._data_lock:
            record = self.executions.get(execution_id)
            return copy.deepcopy(record) if record else None

    async def list_by_plan(self, plan_request_id: str, limit: int = DEFAULT_LIST_LIMIT) -> List[ExecutionRecord]:
        with self._data_lock:
            matches = [r for r in self.executions.values() if r.plan_request_id == plan_request_id]
            return copy.deepcopy(newest_first(matches)[:limit])

    async def list_recent(self, limit: int = DEFAULT_LIST_LIMIT) -> List[ExecutionRecord]:
        with self._data_lock:
            return copy.deepcopy(newest_first(list(self.executions.values()))[:limit])

    async def list_by_status(self, status: ExecutionStatus, limit: int = DEFAULT_LIST_LIMIT) -> List[ExecutionRecord]:
        with self._data_lock:
            matches = [r for r in self.executions.values() if r.status is status]
            return copy.deepcopy(newest_first(matches)[:limit])

    async def delete_execution(self, execution_id: str) -> bool:
        with self._data_lock:
            removed = self.executions.pop(execution_id, None) is not None
            if removed:
                self._persist_state()
            return removed

    async def cleanup_old_executions(self, older_than_days: int = DEFAULT_RETENTION_DAYS) -> int:
        with self._data_lock:
            expired = [eid for eid, r in self.executions.items() if is_expired(r, older_than_days)]
            for eid in expired:
                del self.executions[eid]
            if expired:
                self._persist_state()
                self.logger.info("executions_cleaned_up", removed=len(expired))
            return len(expired)

    async def get_statistics(self) -> ExecutionStatistics:
        with self._data_lock:
            return compute_statistics(list(self.executions.values()))
