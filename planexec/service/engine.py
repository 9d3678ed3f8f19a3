from __future__ import annotations

import asyncio
import uuid
from dataclasses import dataclass
from typing import Any, Dict, List, Mapping, Optional, Tuple

from planexec.config import ExecutionConfig, build_execution_config
from planexec.logging import (
    bind_execution_id,
    get_logger,
    log_execution_summary,
    truncate_error_message,
    unbind_execution_id,
)
from planexec.service.context import ExecutionContext
from planexec.service.errors import (
    ExecutionNotFoundError,
    InvalidExecutionStateError,
    PlanConfigurationError,
    PlanNotFoundError,
    StepCancelledError,
    ToolError,
)
from planexec.service.graph import transitive_dependents, validate_plan_steps
from planexec.service.params import resolve_params
from planexec.service.retry import retry_with_backoff
from planexec.service.rollback import (
    RollbackReport,
    compensated_indices,
    execute_rollback,
    generate_rollback_plan,
    merge_rollback_history,
)
from planexec.service.scheduler import plan_dispatch, should_continue_on_error, summarize
from planexec.service.tools import ToolExecutor, ToolResult
from planexec.storage.common import DEFAULT_LIST_LIMIT, ExecutionStore, PlanSource
from planexec.storage.models import (
    ExecutionRecord,
    ExecutionStatistics,
    ExecutionStatus,
    ExecutionStepResult,
    Plan,
    StepStatus,
    utcnow,
)

CANCELLED_MESSAGE = "Execution cancelled by user"
ROLLBACK_ELIGIBLE_STATUSES = frozenset({ExecutionStatus.COMPLETED, ExecutionStatus.FAILED})


@dataclass
class StepOutcome:
    step_index: int
    success: bool
    data: Any = None
    error: Optional[str] = None
    retry_count: int = 0
    cancelled: bool = False


@dataclass
class _RunState:
    """Coordinator bookkeeping for one run; never shared across tasks."""

    plan: Plan
    context: ExecutionContext
    results: List[ExecutionStepResult]
    cancel_event: asyncio.Event
    cancel_reason: Optional[str] = None
    config_error: Optional[PlanConfigurationError] = None
    stopped_by_step: Optional[int] = None
    sequential_running: Optional[int] = None


class ExecutionEngine:
    """Runs plans against a tool executor and keeps their records in a store.

    Each run is driven by one coordinator coroutine. Steps run as their own
    tasks wrapped in the retry handler; the coordinator owns every status
    change and persists after each one.
    """

    def __init__(
        self,
        store: ExecutionStore,
        tools: ToolExecutor,
        *,
        plans: Optional[PlanSource] = None,
        defaults: Optional[ExecutionConfig] = None,
    ) -> None:
        self.store = store
        self.tools = tools
        self.plans = plans
        self.defaults = defaults or ExecutionConfig()
        self.logger = get_logger(__name__)
        self._cancel_events: Dict[str, asyncio.Event] = {}
        self._tasks: Dict[str, asyncio.Task] = {}

    # public API

    async def execute_plan(
        self,
        plan_request_id: str,
        config_overrides: Optional[Mapping[str, Any]] = None,
    ) -> ExecutionRecord:
        """Load a plan from the plan source and run it to completion."""
        plan = await self._load_plan(plan_request_id)
        config = build_execution_config(self.defaults, config_overrides)
        return await self.execute_steps(plan, config)

    async def execute_steps(
        self,
        plan: Plan,
        config: Optional[ExecutionConfig] = None,
        *,
        execution_id: Optional[str] = None,
    ) -> ExecutionRecord:
        """Run an in-hand plan to completion and return its final record.

        Raises PlanConfigurationError for an invalid plan (nothing is stored)
        and for a configuration error found mid-run (after the run is stored
        as FAILED).
        """
        state = await self._prepare(plan, config or self.defaults, execution_id)
        return await self._drive(state)

    async def start_execution(
        self,
        plan_request_id: str,
        config_overrides: Optional[Mapping[str, Any]] = None,
    ) -> str:
        """Start a run in the background; returns its execution ID once RUNNING."""
        plan = await self._load_plan(plan_request_id)
        config = build_execution_config(self.defaults, config_overrides)
        state = await self._prepare(plan, config, None)
        execution_id = state.context.execution_id
        task = asyncio.create_task(self._drive(state))
        self._tasks[execution_id] = task
        task.add_done_callback(lambda _t: self._tasks.pop(execution_id, None))
        return execution_id

    async def wait_for_execution(self, execution_id: str) -> ExecutionRecord:
        """Wait for a background run started by :meth:`start_execution`."""
        task = self._tasks.get(execution_id)
        if task is not None:
            return await task
        record = await self.store.get_by_id(execution_id)
        if record is None:
            raise ExecutionNotFoundError(
                f"execution {execution_id} not found", detail={"execution_id": execution_id}
            )
        return record

    async def get_execution(self, execution_id: str) -> Optional[ExecutionRecord]:
        return await self.store.get_by_id(execution_id)

    async def cancel_execution(self, execution_id: str) -> bool:
        """Request cancellation of a RUNNING execution driven by this engine.

        Returns False when the execution is not running here.
        """
        record = await self._require_record(execution_id)
        if record.status is not ExecutionStatus.RUNNING:
            self.logger.info(
                "execution_cancel_ignored", execution_id=execution_id, status=record.status.value
            )
            return False
        event = self._cancel_events.get(execution_id)
        if event is None:
            self.logger.warning("execution_cancel_not_local", execution_id=execution_id)
            return False
        event.set()
        self.logger.info("execution_cancel_requested", execution_id=execution_id)
        return True

    async def retry_execution(
        self,
        execution_id: str,
        config_overrides: Optional[Mapping[str, Any]] = None,
    ) -> ExecutionRecord:
        """Re-run the plan of a FAILED execution as a new execution."""
        record = await self._require_record(execution_id)
        if record.status is not ExecutionStatus.FAILED:
            raise InvalidExecutionStateError(
                f"only FAILED executions can be retried, got {record.status.value}",
                detail={"execution_id": execution_id, "status": record.status.value},
            )
        self.logger.info(
            "execution_retry_requested",
            execution_id=execution_id,
            plan_request_id=record.plan_request_id,
        )
        return await self.execute_plan(record.plan_request_id, config_overrides)

    async def rollback_execution(self, execution_id: str) -> RollbackReport:
        """Compensate the completed steps of a finished execution."""
        record = await self._require_record(execution_id)
        if record.status not in ROLLBACK_ELIGIBLE_STATUSES:
            raise InvalidExecutionStateError(
                f"cannot roll back an execution in status {record.status.value}",
                detail={"execution_id": execution_id, "status": record.status.value},
            )
        token = bind_execution_id(execution_id)
        try:
            rollback_plan = generate_rollback_plan(
                record.results,
                reason="Rollback requested by user",
                already_compensated=compensated_indices(record.rollback),
            )
            report = await execute_rollback(rollback_plan, self.tools)
            if report.complete:
                status, error = ExecutionStatus.ROLLED_BACK, record.error
            else:
                status, error = record.status, self._with_rollback_errors(record.error, report)
            await self.store.update_status(
                execution_id,
                status,
                error=error,
                rollback=merge_rollback_history(record.rollback, report),
            )
            return report
        finally:
            unbind_execution_id(token)

    async def list_executions_by_plan(
        self, plan_request_id: str, limit: int = DEFAULT_LIST_LIMIT
    ) -> List[ExecutionRecord]:
        return await self.store.list_by_plan(plan_request_id, limit)

    async def list_recent_executions(self, limit: int = DEFAULT_LIST_LIMIT) -> List[ExecutionRecord]:
        return await self.store.list_recent(limit)

    async def get_statistics(self) -> ExecutionStatistics:
        return await self.store.get_statistics()

    # setup

    async def _load_plan(self, plan_request_id: str) -> Plan:
        plan = await self.plans.get_plan(plan_request_id) if self.plans is not None else None
        if plan is None:
            raise PlanNotFoundError(
                f"plan {plan_request_id} not found",
                detail={"plan_request_id": plan_request_id},
            )
        return plan

    async def _require_record(self, execution_id: str) -> ExecutionRecord:
        record = await self.store.get_by_id(execution_id)
        if record is None:
            raise ExecutionNotFoundError(
                f"execution {execution_id} not found", detail={"execution_id": execution_id}
            )
        return record

    async def _prepare(
        self, plan: Plan, config: ExecutionConfig, execution_id: Optional[str]
    ) -> _RunState:
        validate_plan_steps(plan.steps)
        execution_id = execution_id or str(uuid.uuid4())
        context = ExecutionContext.create(execution_id, plan.request_id, config, plan.steps)
        results = [ExecutionStepResult.pending(i, step) for i, step in enumerate(plan.steps)]
        record = ExecutionRecord(
            execution_id=execution_id,
            plan_request_id=plan.request_id,
            total_steps=len(plan.steps),
            results=results,
        )
        await self.store.save_execution(record)
        await self.store.update_status(
            execution_id, ExecutionStatus.RUNNING, started_at=utcnow()
        )
        cancel_event = asyncio.Event()
        self._cancel_events[execution_id] = cancel_event
        return _RunState(plan=plan, context=context, results=results, cancel_event=cancel_event)

    # coordinator

    async def _drive(self, state: _RunState) -> ExecutionRecord:
        context = state.context
        execution_id = context.execution_id
        token = bind_execution_id(execution_id)
        try:
            self.logger.info(
                "execution_started",
                plan_request_id=context.plan_request_id,
                total_steps=context.total_steps,
                max_retries=context.config.max_retries,
                parallel_execution_limit=context.config.parallel_execution_limit,
                continue_on_error=context.config.continue_on_error,
            )
            try:
                await self._run_loop(state)
                await self._skip_pending(state)
                await self._finish(state)
            except Exception as exc:
                await self._mark_aborted(state, exc)
                raise
            log_execution_summary(summarize(context), logger=self.logger)
            if state.config_error is not None:
                raise state.config_error
            return await self._require_record(execution_id)
        finally:
            self._cancel_events.pop(execution_id, None)
            unbind_execution_id(token)

    async def _mark_aborted(self, state: _RunState, exc: Exception) -> None:
        """Best-effort FAILED status when the run itself broke, e.g. on a store error."""
        error = f"Execution aborted: {truncate_error_message(exc)}"
        self.logger.error("execution_aborted", error_type=type(exc).__name__, error=str(exc))
        try:
            await self.store.update_status(
                state.context.execution_id,
                ExecutionStatus.FAILED,
                error=error,
                completed_at=utcnow(),
            )
        except Exception as store_exc:
            self.logger.error(
                "execution_abort_not_persisted",
                error_type=type(store_exc).__name__,
                error=str(store_exc),
            )

    def _observe_cancel(self, state: _RunState) -> None:
        if state.cancel_reason is None and state.cancel_event.is_set():
            state.cancel_reason = CANCELLED_MESSAGE

    def _stopping(self, state: _RunState) -> bool:
        return (
            state.cancel_reason is not None
            or state.config_error is not None
            or state.stopped_by_step is not None
        )

    async def _run_loop(self, state: _RunState) -> None:
        context = state.context
        config = context.config
        loop = asyncio.get_running_loop()
        deadline = (
            loop.time() + config.execution_timeout_ms / 1000.0
            if config.execution_timeout_ms
            else None
        )
        tasks: Dict[asyncio.Task, int] = {}
        cancel_waiter = asyncio.ensure_future(state.cancel_event.wait())
        try:
            while True:
                self._observe_cancel(state)
                if deadline is not None and loop.time() >= deadline:
                    deadline = None
                    if state.cancel_reason is None:
                        state.cancel_reason = f"Execution timed out after {config.execution_timeout_ms:g} ms"
                        state.cancel_event.set()
                        self.logger.warning("execution_timed_out", timeout_ms=config.execution_timeout_ms)

                if not self._stopping(state):
                    await self._dispatch(state, tasks)

                if not tasks:
                    break

                wait_on = set(tasks)
                if not cancel_waiter.done():
                    wait_on.add(cancel_waiter)
                timeout = max(deadline - loop.time(), 0.0) if deadline is not None else None
                done, _ = await asyncio.wait(
                    wait_on, timeout=timeout, return_when=asyncio.FIRST_COMPLETED
                )
                self._observe_cancel(state)
                for task in done:
                    if task is cancel_waiter:
                        continue
                    index = tasks.pop(task)
                    if state.sequential_running == index:
                        state.sequential_running = None
                    await self._record_outcome(state, task.result())
        finally:
            cancel_waiter.cancel()
            for task in tasks:
                task.cancel()

        if context.pending_steps and not self._stopping(state):
            self.logger.warning("execution_stalled", pending=sorted(context.pending_steps))

    async def _dispatch(self, state: _RunState, tasks: Dict[asyncio.Task, int]) -> None:
        context = state.context
        batch = plan_dispatch(
            state.plan.steps, context, sequential_in_flight=state.sequential_running is not None
        )
        for index in batch.all:
            step = state.plan.steps[index]
            step_result = state.results[index]
            context.mark_running(index)
            step_result.status = StepStatus.RUNNING
            step_result.started_at = utcnow()
            try:
                params = resolve_params(step.params, state.results, index)
            except PlanConfigurationError as exc:
                state.config_error = exc
                context.mark_failed(index)
                step_result.status = StepStatus.FAILED
                step_result.error = truncate_error_message(exc)
                step_result.completed_at = utcnow()
                self.logger.error("step_configuration_error", step_index=index, tool=step.tool, error=exc.message)
                await self._persist_step(state, step_result)
                return
            step_result.params = params
            await self.store.update_step_result(context.execution_id, step_result)
            self.logger.info(
                "step_started",
                step_index=index,
                tool=step.tool,
                sequential=index in batch.sequential,
            )
            task = asyncio.create_task(
                self._run_step(index, step.tool, params, context.config, state.cancel_event)
            )
            tasks[task] = index
            if index in batch.sequential:
                state.sequential_running = index

    async def _run_step(
        self,
        index: int,
        tool: str,
        params: Dict[str, Any],
        config: ExecutionConfig,
        cancel_event: asyncio.Event,
    ) -> StepOutcome:
        attempts = 0

        async def attempt() -> Any:
            nonlocal attempts
            attempts += 1
            result = await self._call_tool(tool, params, cancel_event)
            if not result.success:
                raise ToolError(result.error or f"Tool {tool} reported failure")
            return result.data

        def on_retry(retry_number: int, exc: BaseException, delay_ms: float) -> None:
            self.logger.warning(
                "step_retry",
                step_index=index,
                tool=tool,
                retry=retry_number,
                delay_ms=round(delay_ms, 1),
                error=str(exc),
            )

        try:
            data = await retry_with_backoff(
                attempt,
                config.max_retries,
                config.retry_delay_ms,
                cancel_event=cancel_event,
                on_retry=on_retry,
            )
        except StepCancelledError as exc:
            return StepOutcome(
                index,
                False,
                error=truncate_error_message(exc),
                retry_count=max(attempts - 1, 0),
                cancelled=True,
            )
        except Exception as exc:
            return StepOutcome(
                index, False, error=truncate_error_message(exc), retry_count=max(attempts - 1, 0)
            )
        return StepOutcome(index, True, data=data, retry_count=attempts - 1)

    async def _call_tool(
        self, tool: str, params: Dict[str, Any], cancel_event: asyncio.Event
    ) -> ToolResult:
        """Run one tool call, abandoning it if the run is cancelled first."""
        call = asyncio.ensure_future(self.tools.execute(tool, dict(params)))
        waiter = asyncio.ensure_future(cancel_event.wait())
        try:
            done, _ = await asyncio.wait({call, waiter}, return_when=asyncio.FIRST_COMPLETED)
        finally:
            waiter.cancel()
        if call in done:
            return call.result()
        call.cancel()
        raise StepCancelledError(f"tool {tool} interrupted by cancellation")

    async def _persist_step(self, state: _RunState, step_result: ExecutionStepResult) -> None:
        context = state.context
        await self.store.update_step_result(context.execution_id, step_result)
        await self.store.update_progress(
            context.execution_id, len(context.completed_steps), len(context.failed_steps)
        )

    async def _record_outcome(self, state: _RunState, outcome: StepOutcome) -> None:
        context = state.context
        index = outcome.step_index
        step_result = state.results[index]
        step_result.retry_count = outcome.retry_count
        step_result.completed_at = utcnow()

        if outcome.success:
            context.mark_completed(index)
            step_result.status = StepStatus.COMPLETED
            step_result.result = outcome.data
            self.logger.info(
                "step_completed",
                step_index=index,
                tool=step_result.tool,
                retry_count=outcome.retry_count,
            )
            await self._persist_step(state, step_result)
            return

        context.mark_failed(index)
        step_result.status = StepStatus.FAILED
        if outcome.cancelled:
            step_result.error = state.cancel_reason or outcome.error
        else:
            step_result.error = outcome.error
        self.logger.error(
            "step_failed",
            step_index=index,
            tool=step_result.tool,
            retry_count=outcome.retry_count,
            cancelled=outcome.cancelled,
            error=step_result.error,
        )
        await self._persist_step(state, step_result)

        if outcome.cancelled or self._stopping(state):
            return
        if not context.config.continue_on_error:
            state.stopped_by_step = index
            return
        for dependent in transitive_dependents(index, context.dependency_graph):
            if context.status_of(dependent) is StepStatus.PENDING:
                await self._skip(state, dependent, f"Skipped: dependency step {index} failed")

    async def _skip(self, state: _RunState, index: int, reason: str) -> None:
        state.context.mark_skipped(index)
        step_result = state.results[index]
        step_result.status = StepStatus.SKIPPED
        step_result.error = reason
        await self.store.update_step_result(state.context.execution_id, step_result)
        self.logger.info("step_skipped", step_index=index, reason=reason)

    async def _skip_pending(self, state: _RunState) -> None:
        if state.cancel_reason is not None:
            reason = f"Skipped: {state.cancel_reason}"
        elif state.config_error is not None:
            reason = "Skipped: execution aborted on a configuration error"
        elif state.stopped_by_step is not None:
            reason = f"Skipped: execution stopped after step {state.stopped_by_step} failed"
        else:
            reason = "Skipped: dependencies never completed"
        for index in sorted(state.context.pending_steps):
            await self._skip(state, index, reason)

    # completion

    def _final_status(self, state: _RunState) -> Tuple[ExecutionStatus, Optional[str]]:
        context = state.context
        if state.cancel_reason is not None:
            return ExecutionStatus.FAILED, state.cancel_reason
        if state.config_error is not None:
            return ExecutionStatus.FAILED, truncate_error_message(state.config_error)
        failed = sorted(context.failed_steps)
        if not failed:
            return ExecutionStatus.COMPLETED, None
        if all(should_continue_on_error(context, i) for i in failed):
            return ExecutionStatus.COMPLETED, None
        messages = [
            f"Step {i} ({state.results[i].tool}) failed: {state.results[i].error}" for i in failed
        ]
        return ExecutionStatus.FAILED, truncate_error_message("; ".join(messages), limit=2000)

    async def _finish(self, state: _RunState) -> None:
        context = state.context
        execution_id = context.execution_id
        status, error = self._final_status(state)
        await self.store.update_progress(
            execution_id, len(context.completed_steps), len(context.failed_steps)
        )
        await self.store.update_status(execution_id, status, error=error, completed_at=utcnow())
        self.logger.info("execution_finished", status=status.value, error=error)

        auto_rollback = (
            status is ExecutionStatus.FAILED
            and context.config.enable_rollback
            and state.cancel_reason is None
            and state.config_error is None
        )
        if auto_rollback:
            await self._auto_rollback(state, error)

    async def _auto_rollback(self, state: _RunState, error: Optional[str]) -> None:
        execution_id = state.context.execution_id
        rollback_plan = generate_rollback_plan(state.results, reason=error or "Execution failed")
        if not rollback_plan.steps and not rollback_plan.unsupported:
            self.logger.info("rollback_not_needed")
            return
        report = await execute_rollback(rollback_plan, self.tools)
        if report.complete:
            await self.store.update_status(
                execution_id, ExecutionStatus.ROLLED_BACK, rollback=report.to_dict()
            )
            self.logger.info("execution_rolled_back", steps=len(report.results))
        else:
            await self.store.update_status(
                execution_id,
                ExecutionStatus.FAILED,
                error=self._with_rollback_errors(error, report),
                rollback=report.to_dict(),
            )

    @staticmethod
    def _with_rollback_errors(error: Optional[str], report: RollbackReport) -> str:
        problems = list(report.errors) + [
            f"step {u.step_index} ({u.tool}) not compensated: {u.reason}" for u in report.unsupported
        ]
        message = "Rollback failed: " + "; ".join(problems)
        combined = f"{error}; {message}" if error else message
        return truncate_error_message(combined, limit=2000)
