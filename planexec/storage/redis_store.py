from __future__ import annotations

import asyncio
import json
from datetime import datetime
from typing import Any, Callable, List, Optional

import redis.asyncio as aioredis

from planexec.logging import get_logger
from planexec.storage.common import (
    DEFAULT_LIST_LIMIT,
    DEFAULT_RETENTION_DAYS,
    apply_progress,
    apply_status,
    apply_step_result,
    is_expired,
    missing_execution,
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


class RedisExecutionStore:
    """Execution records as JSON documents in Redis.

    Keys:
    - ``execution:{id}``: the record document
    - ``executions:recent``: sorted set of ids scored by creation time
    - ``executions:plan:{plan_request_id}``: sorted set of ids per plan
    - ``plan:{plan_request_id}``: registered plan documents
    """

    DEFAULT_OPERATION_TIMEOUT = 5.0
    RECENT_KEY = "executions:recent"

    def __init__(self, redis_url: Optional[str] = None, *, client: Any = None, socket_timeout: float = DEFAULT_OPERATION_TIMEOUT):
        if client is None:
            if not redis_url:
                raise ValueError("redis_url or client is required")
            client = aioredis.from_url(
                redis_url,
                decode_responses=True,
                socket_timeout=socket_timeout,
                socket_connect_timeout=socket_timeout,
            )
        self.redis_url = redis_url
        self.client = client
        self.logger = get_logger(__name__)
        # Serializes read-modify-write updates issued from this process
        self._write_lock = asyncio.Lock()

    @staticmethod
    def _execution_key(execution_id: str) -> str:
        return f"execution:{execution_id}"

    @staticmethod
    def _plan_index_key(plan_request_id: str) -> str:
        return f"executions:plan:{plan_request_id}"

    @staticmethod
    def _plan_key(plan_request_id: str) -> str:
        return f"plan:{plan_request_id}"

    @staticmethod
    def _dumps(payload: dict) -> str:
        return json.dumps(payload, default=str)

    async def verify_connection(self) -> None:
        await self.client.ping()

    async def close(self) -> None:
        close = getattr(self.client, "aclose", None) or getattr(self.client, "close", None)
        if close is not None:
            await close()

    # plans

    async def save_plan(self, plan: Plan) -> None:
        await self.client.set(self._plan_key(plan.request_id), self._dumps(plan.to_dict()))

    async def get_plan(self, plan_request_id: str) -> Optional[Plan]:
        raw = await self.client.get(self._plan_key(plan_request_id))
        if raw is None:
            return None
        data = json.loads(raw)
        return Plan(
            request_id=data["request_id"],
            steps=tuple(PlanStep.from_dict(s) for s in data.get("steps", [])),
            query=data.get("query"),
        )

    # executions

    async def _load(self, execution_id: str) -> Optional[ExecutionRecord]:
        raw = await self.client.get(self._execution_key(execution_id))
        if raw is None:
            return None
        return ExecutionRecord.from_dict(json.loads(raw))

    async def _mutate(self, execution_id: str, change: Callable[[ExecutionRecord], None]) -> None:
        async with self._write_lock:
            record = await self._load(execution_id)
            if record is None:
                raise missing_execution(execution_id)
            change(record)
            await self.client.set(self._execution_key(execution_id), self._dumps(record.to_dict()))

    async def save_execution(self, record: ExecutionRecord) -> None:
        async with self._write_lock:
            created = await self.client.set(
                self._execution_key(record.execution_id),
                self._dumps(record.to_dict()),
                nx=True,
            )
            if not created:
                raise ConstraintViolation(
                    "execution already exists",
                    detail={"execution_id": record.execution_id},
                )
            score = record.created_at.timestamp()
            await self.client.zadd(self.RECENT_KEY, {record.execution_id: score})
            await self.client.zadd(
                self._plan_index_key(record.plan_request_id), {record.execution_id: score}
            )

    async def update_step_result(self, execution_id: str, step_result: ExecutionStepResult) -> None:
        await self._mutate(execution_id, lambda r: apply_step_result(r, step_result))

    async def update_progress(self, execution_id: str, completed_steps: int, failed_steps: int) -> None:
        await self._mutate(execution_id, lambda r: apply_progress(r, completed_steps, failed_steps))

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
        await self._mutate(
            execution_id,
            lambda r: apply_status(
                r,
                status,
                error=error,
                started_at=started_at,
                completed_at=completed_at,
                rollback=rollback,
            ),
        )

    async def get_by_id(self, execution_id: str) -> Optional[ExecutionRecord]:
        return await self._load(execution_id)

    async def _load_many(self, execution_ids: List[str]) -> List[ExecutionRecord]:
        records: List[ExecutionRecord] = []
        for execution_id in execution_ids:
            record = await self._load(execution_id)
            if record is None:
                # Index entry outlived its document
                self.logger.warning("redis_execution_index_stale", execution_id=execution_id)
                continue
            records.append(record)
        return records

    async def list_by_plan(self, plan_request_id: str, limit: int = DEFAULT_LIST_LIMIT) -> List[ExecutionRecord]:
        ids = await self.client.zrevrange(self._plan_index_key(plan_request_id), 0, limit - 1)
        return await self._load_many(list(ids))

    async def list_recent(self, limit: int = DEFAULT_LIST_LIMIT) -> List[ExecutionRecord]:
        ids = await self.client.zrevrange(self.RECENT_KEY, 0, limit - 1)
        return await self._load_many(list(ids))

    async def _all(self) -> List[ExecutionRecord]:
        ids = await self.client.zrevrange(self.RECENT_KEY, 0, -1)
        return await self._load_many(list(ids))

    async def list_by_status(self, status: ExecutionStatus, limit: int = DEFAULT_LIST_LIMIT) -> List[ExecutionRecord]:
        matches = [r for r in await self._all() if r.status is status]
        return matches[:limit]

    async def _remove(self, record: ExecutionRecord) -> None:
        await self.client.delete(self._execution_key(record.execution_id))
        await self.client.zrem(self.RECENT_KEY, record.execution_id)
        await self.client.zrem(self._plan_index_key(record.plan_request_id), record.execution_id)

    async def delete_execution(self, execution_id: str) -> bool:
        async with self._write_lock:
            record = await self._load(execution_id)
            if record is None:
                return False
            await self._remove(record)
            return True

    async def cleanup_old_executions(self, older_than_days: int = DEFAULT_RETENTION_DAYS) -> int:
        async with self._write_lock:
            expired = [r for r in await self._all() if is_expired(r, older_than_days)]
            for record in expired:
                await self._remove(record)
        if expired:
            self.logger.info("executions_cleaned_up", removed=len(expired))
        return len(expired)

    async def get_statistics(self) -> ExecutionStatistics:
        return compute_statistics(await self._all())
