from __future__ import annotations

import fnmatch
from datetime import timedelta
from typing import Dict, List, Optional

import pytest

from planexec.storage.errors import ConstraintViolation
from planexec.storage.memory import MemoryStore
from planexec.storage.models import (
    ExecutionRecord,
    ExecutionStatus,
    ExecutionStepResult,
    Plan,
    PlanStep,
    StepStatus,
    utcnow,
)
from planexec.storage.redis_store import RedisExecutionStore


class FakeAsyncRedis:
    """Just enough of redis.asyncio.Redis for the execution store."""

    def __init__(self):
        self.values: Dict[str, str] = {}
        self.zsets: Dict[str, Dict[str, float]] = {}

    async def ping(self) -> bool:
        return True

    async def get(self, key: str) -> Optional[str]:
        return self.values.get(key)

    async def set(self, key: str, value: str, nx: bool = False):
        if nx and key in self.values:
            return None
        self.values[key] = value
        return True

    async def delete(self, *keys: str) -> int:
        removed = 0
        for key in keys:
            removed += int(self.values.pop(key, None) is not None)
            removed += int(self.zsets.pop(key, None) is not None)
        return removed

    async def zadd(self, key: str, mapping: Dict[str, float]) -> int:
        zset = self.zsets.setdefault(key, {})
        added = sum(1 for member in mapping if member not in zset)
        zset.update(mapping)
        return added

    async def zrem(self, key: str, *members: str) -> int:
        zset = self.zsets.get(key, {})
        return sum(1 for m in members if zset.pop(m, None) is not None)

    async def zrevrange(self, key: str, start: int, end: int) -> List[str]:
        ordered = [m for m, _ in sorted(self.zsets.get(key, {}).items(), key=lambda kv: kv[1], reverse=True)]
        if end == -1:
            return ordered[start:]
        return ordered[start : end + 1]

    async def aclose(self) -> None:
        return None

    def keys_matching(self, pattern: str) -> List[str]:
        return [k for k in list(self.values) + list(self.zsets) if fnmatch.fnmatch(k, pattern)]


def _record(execution_id: str, plan_id: str = "plan-1", *, age_days: int = 0, status=ExecutionStatus.PENDING) -> ExecutionRecord:
    created = utcnow() - timedelta(days=age_days)
    steps = [PlanStep(tool="a"), PlanStep(tool="b", depends_on=(0,))]
    return ExecutionRecord(
        execution_id=execution_id,
        plan_request_id=plan_id,
        total_steps=len(steps),
        status=status,
        results=[ExecutionStepResult.pending(i, s) for i, s in enumerate(steps)],
        created_at=created,
        updated_at=created,
    )


@pytest.fixture(params=["memory", "redis"])
def store(request):
    if request.param == "memory":
        return MemoryStore()
    return RedisExecutionStore(client=FakeAsyncRedis())


class TestExecutionStoreContract:
    @pytest.mark.asyncio
    async def test_save_and_get(self, store):
        await store.save_execution(_record("e1"))
        loaded = await store.get_by_id("e1")
        assert loaded.execution_id == "e1"
        assert loaded.results[1].dependencies == [0]
        assert await store.get_by_id("missing") is None

    @pytest.mark.asyncio
    async def test_duplicate_id_rejected(self, store):
        await store.save_execution(_record("e1"))
        with pytest.raises(ConstraintViolation):
            await store.save_execution(_record("e1"))

    @pytest.mark.asyncio
    async def test_step_progress_and_status_updates(self, store):
        await store.save_execution(_record("e1"))
        step = ExecutionStepResult(
            step_index=0,
            tool="a",
            params={"x": 1},
            status=StepStatus.COMPLETED,
            result={"id": "r1"},
            started_at=utcnow(),
            completed_at=utcnow(),
        )
        await store.update_step_result("e1", step)
        await store.update_progress("e1", 1, 0)
        started = utcnow()
        await store.update_status("e1", ExecutionStatus.RUNNING, started_at=started)
        await store.update_status("e1", ExecutionStatus.FAILED, error="boom", completed_at=utcnow())

        loaded = await store.get_by_id("e1")
        assert loaded.results[0].status is StepStatus.COMPLETED
        assert loaded.results[0].result == {"id": "r1"}
        assert loaded.completed_steps == 1
        assert loaded.status is ExecutionStatus.FAILED
        assert loaded.error == "boom"
        assert loaded.started_at == started
        assert loaded.execution_time_ms is not None

    @pytest.mark.asyncio
    async def test_updates_to_unknown_execution_rejected(self, store):
        with pytest.raises(ConstraintViolation):
            await store.update_progress("missing", 0, 0)

    @pytest.mark.asyncio
    async def test_step_index_out_of_range(self, store):
        await store.save_execution(_record("e1"))
        with pytest.raises(ConstraintViolation):
            await store.update_step_result(
                "e1", ExecutionStepResult(step_index=5, tool="z", params={})
            )

    @pytest.mark.asyncio
    async def test_listing(self, store):
        await store.save_execution(_record("old", age_days=2))
        await store.save_execution(_record("mid", age_days=1, status=ExecutionStatus.COMPLETED))
        await store.save_execution(_record("new", plan_id="plan-2"))

        assert [r.execution_id for r in await store.list_recent()] == ["new", "mid", "old"]
        assert [r.execution_id for r in await store.list_recent(limit=1)] == ["new"]
        assert [r.execution_id for r in await store.list_by_plan("plan-1")] == ["mid", "old"]
        completed = await store.list_by_status(ExecutionStatus.COMPLETED)
        assert [r.execution_id for r in completed] == ["mid"]

    @pytest.mark.asyncio
    async def test_delete_and_cleanup(self, store):
        await store.save_execution(_record("ancient", age_days=40, status=ExecutionStatus.COMPLETED))
        await store.save_execution(_record("ancient-running", age_days=40, status=ExecutionStatus.RUNNING))
        await store.save_execution(_record("fresh", status=ExecutionStatus.FAILED))

        assert await store.cleanup_old_executions(older_than_days=30) == 1
        assert await store.get_by_id("ancient") is None
        assert await store.get_by_id("ancient-running") is not None

        assert await store.delete_execution("fresh") is True
        assert await store.delete_execution("fresh") is False
        assert [r.execution_id for r in await store.list_recent()] == ["ancient-running"]

    @pytest.mark.asyncio
    async def test_statistics(self, store):
        await store.save_execution(_record("e1", status=ExecutionStatus.COMPLETED))
        await store.save_execution(_record("e2", status=ExecutionStatus.FAILED))
        stats = await store.get_statistics()
        assert stats.total == 2
        assert stats.success_rate == 50.0
        assert stats.by_status["ROLLED_BACK"] == 0

    @pytest.mark.asyncio
    async def test_plan_registry(self, store):
        plan = Plan(request_id="req-1", steps=(PlanStep(tool="a", params={"k": "v"}),), query="q")
        await store.save_plan(plan)
        loaded = await store.get_plan("req-1")
        assert loaded == plan
        assert await store.get_plan("nope") is None


class TestMemoryStorePersistence:
    @pytest.mark.asyncio
    async def test_state_survives_restart(self, state_dir):
        store = MemoryStore(state_dir=state_dir)
        await store.save_execution(_record("e1"))
        await store.update_status("e1", ExecutionStatus.COMPLETED, completed_at=utcnow())
        await store.save_plan(Plan(request_id="req-1", steps=(PlanStep(tool="a"),)))

        reloaded = MemoryStore(state_dir=state_dir)
        record = await reloaded.get_by_id("e1")
        assert record.status is ExecutionStatus.COMPLETED
        assert (await reloaded.get_plan("req-1")).steps[0].tool == "a"

    @pytest.mark.asyncio
    async def test_returned_records_are_copies(self):
        store = MemoryStore()
        record = _record("e1")
        await store.save_execution(record)
        record.status = ExecutionStatus.FAILED
        loaded = await store.get_by_id("e1")
        loaded.results[0].status = StepStatus.COMPLETED
        again = await store.get_by_id("e1")
        assert again.status is ExecutionStatus.PENDING
        assert again.results[0].status is StepStatus.PENDING


class TestRedisKeys:
    @pytest.mark.asyncio
    async def test_index_keys(self):
        client = FakeAsyncRedis()
        store = RedisExecutionStore(client=client)
        await store.save_execution(_record("e1"))
        assert client.keys_matching("execution:*") == ["execution:e1"]
        assert "executions:plan:plan-1" in client.keys_matching("executions:*")
        await store.delete_execution("e1")
        assert client.keys_matching("execution:*") == []

    def test_requires_url_or_client(self):
        with pytest.raises(ValueError):
            RedisExecutionStore()
