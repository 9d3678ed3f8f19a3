from __future__ import annotations

import pytest

from planexec.config import ExecutionConfig
from planexec.service.context import ExecutionContext, InvalidTransitionError
from planexec.service.errors import PlanConfigurationError
from planexec.service.scheduler import (
    calculate_progress,
    can_run_in_parallel,
    get_ready_steps,
    is_execution_complete,
    is_read_operation,
    plan_dispatch,
    should_continue_on_error,
    sort_steps_by_priority,
    summarize,
)
from planexec.storage.models import PlanStep, StepStatus


def _context(steps, **config):
    return ExecutionContext.create("exec-1", "plan-1", ExecutionConfig(**config), steps)


class TestExecutionContext:
    def test_sets_are_derived_and_disjoint(self):
        steps = [PlanStep(tool="a"), PlanStep(tool="b"), PlanStep(tool="c")]
        ctx = _context(steps)
        ctx.mark_running(0)
        ctx.mark_running(1)
        ctx.update_after_step(0, StepStatus.COMPLETED)
        ctx.update_after_step(1, StepStatus.FAILED)
        ctx.mark_running(2)
        assert ctx.completed_steps == {0}
        assert ctx.failed_steps == {1}
        assert ctx.running_steps == {2}
        assert not (ctx.completed_steps & ctx.failed_steps)
        assert not (ctx.completed_steps & ctx.running_steps)

    def test_finished_step_never_reenters_running(self):
        ctx = _context([PlanStep(tool="a")])
        ctx.mark_running(0)
        ctx.mark_completed(0)
        with pytest.raises(InvalidTransitionError):
            ctx.mark_running(0)

    def test_pending_cannot_complete_directly(self):
        ctx = _context([PlanStep(tool="a")])
        with pytest.raises(InvalidTransitionError):
            ctx.mark_completed(0)

    def test_create_requires_execution_id(self):
        with pytest.raises(PlanConfigurationError):
            ExecutionContext.create(
                "",
                "plan-1",
                ExecutionConfig(),
                [PlanStep(tool="a")],
            )


class TestReadySteps:
    def test_scenario_ready_set_after_root_completes(self):
        steps = [
            PlanStep(tool="A"),
            PlanStep(tool="B", depends_on=(0,)),
            PlanStep(tool="C", depends_on=(0,)),
        ]
        ctx = _context(steps)
        assert get_ready_steps(steps, ctx) == [0]
        ctx.mark_running(0)
        assert get_ready_steps(steps, ctx) == []
        ctx.mark_completed(0)
        assert get_ready_steps(steps, ctx) == [1, 2]

    def test_failed_dependency_blocks_readiness(self):
        steps = [PlanStep(tool="A"), PlanStep(tool="B", depends_on=(0,))]
        ctx = _context(steps)
        ctx.mark_running(0)
        ctx.mark_failed(0)
        assert get_ready_steps(steps, ctx) == []

    def test_every_ready_step_has_completed_dependencies(self):
        steps = [
            PlanStep(tool="a"),
            PlanStep(tool="b"),
            PlanStep(tool="c", depends_on=(0, 1)),
            PlanStep(tool="d", depends_on=(0,)),
        ]
        ctx = _context(steps)
        ctx.mark_running(0)
        ctx.mark_completed(0)
        ready = get_ready_steps(steps, ctx)
        assert ready == [1, 3]
        for idx in ready:
            assert set(steps[idx].depends_on) <= ctx.completed_steps


class TestParallelHeuristic:
    @pytest.mark.parametrize(
        "tool, expected",
        [
            ("facilities_list", True),
            ("mcp_waste-management_shipments_get", True),
            ("contaminants_search", True),
            ("facilities_create", False),
            ("facilities_update", False),
            ("get_and_delete", False),
            ("send_email", False),
        ],
    )
    def test_read_operation_rules(self, tool, expected):
        assert is_read_operation(tool) is expected

    def test_explicit_flag_wins(self):
        steps = [PlanStep(tool="facilities_create", parallel=True)]
        assert can_run_in_parallel(0, steps, [0])

    def test_read_depending_on_ready_batch_is_sequential(self):
        steps = [PlanStep(tool="a"), PlanStep(tool="facilities_list", depends_on=(0,))]
        assert not can_run_in_parallel(1, steps, [0, 1])
        assert can_run_in_parallel(1, steps, [1])

    def test_priority_orders_by_dependency_count_then_index(self):
        steps = [
            PlanStep(tool="a"),
            PlanStep(tool="b"),
            PlanStep(tool="c", depends_on=(0, 1)),
            PlanStep(tool="d", depends_on=(0,)),
            PlanStep(tool="e"),
        ]
        assert sort_steps_by_priority([2, 3, 4, 1], steps) == [1, 4, 3, 2]


class TestPlanDispatch:
    def test_only_one_sequential_step_at_a_time(self):
        steps = [PlanStep(tool="x_create"), PlanStep(tool="y_create")]
        ctx = _context(steps)
        batch = plan_dispatch(steps, ctx, sequential_in_flight=False)
        assert batch.sequential == [0]
        assert batch.parallel == []
        ctx.mark_running(0)
        batch = plan_dispatch(steps, ctx, sequential_in_flight=True)
        assert batch.all == []

    def test_parallel_steps_bounded_by_limit(self):
        steps = [PlanStep(tool=f"item_{i}_list") for i in range(6)]
        ctx = _context(steps, parallel_execution_limit=2)
        batch = plan_dispatch(steps, ctx, sequential_in_flight=False)
        assert batch.parallel == [0, 1]
        for idx in batch.parallel:
            ctx.mark_running(idx)
        assert plan_dispatch(steps, ctx, sequential_in_flight=False).all == []

    def test_parallel_fills_capacity_beside_sequential(self):
        steps = [
            PlanStep(tool="thing_create"),
            PlanStep(tool="things_list"),
            PlanStep(tool="others_list"),
        ]
        ctx = _context(steps, parallel_execution_limit=2)
        batch = plan_dispatch(steps, ctx, sequential_in_flight=False)
        assert batch.sequential == [0]
        assert batch.parallel == [1]


class TestProgress:
    def test_progress_and_completion(self):
        steps = [PlanStep(tool="a"), PlanStep(tool="b"), PlanStep(tool="c")]
        ctx = _context(steps)
        assert calculate_progress(3, ctx) == 0
        ctx.mark_running(0)
        ctx.mark_completed(0)
        assert calculate_progress(3, ctx) == 33
        ctx.mark_running(1)
        ctx.mark_failed(1)
        assert calculate_progress(3, ctx) == 67
        assert not is_execution_complete(3, ctx)
        ctx.mark_running(2)
        ctx.mark_completed(2)
        assert is_execution_complete(3, ctx)
        assert summarize(ctx)["progress"] == 100

    def test_empty_plan_is_complete(self):
        ctx = _context([])
        assert calculate_progress(0, ctx) == 100
        assert is_execution_complete(0, ctx)

    def test_should_continue_on_error(self):
        steps = [PlanStep(tool="a"), PlanStep(tool="b", depends_on=(0,)), PlanStep(tool="c")]
        assert not should_continue_on_error(_context(steps), 2)
        ctx = _context(steps, continue_on_error=True)
        assert should_continue_on_error(ctx, 2)
        assert not should_continue_on_error(ctx, 0)
