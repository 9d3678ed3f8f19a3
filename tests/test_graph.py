from __future__ import annotations

import pytest

from planexec.service.errors import PlanConfigurationError
from planexec.service.graph import (
    build_dependency_graph,
    direct_dependents,
    parse_plan,
    transitive_dependents,
    validate_plan_steps,
)
from planexec.storage.models import PlanStep


def _steps(*deps):
    return [PlanStep(tool=f"tool_{i}", depends_on=tuple(d)) for i, d in enumerate(deps)]


class TestBuildDependencyGraph:
    def test_graph_maps_index_to_predecessors(self):
        graph = build_dependency_graph(_steps([], [0], [0, 1]))
        assert graph == {0: (), 1: (0,), 2: (0, 1)}

    def test_empty_plan_has_empty_graph(self):
        assert build_dependency_graph([]) == {}

    def test_direct_and_transitive_dependents(self):
        graph = build_dependency_graph(_steps([], [0], [1], [], [2, 3]))
        assert direct_dependents(0, graph) == [1]
        assert transitive_dependents(0, graph) == [1, 2, 4]
        assert transitive_dependents(3, graph) == [4]
        assert transitive_dependents(4, graph) == []


class TestValidatePlanSteps:
    def test_forward_dependency_rejected(self):
        steps = [PlanStep(tool="a", depends_on=(1,)), PlanStep(tool="b")]
        with pytest.raises(PlanConfigurationError) as excinfo:
            validate_plan_steps(steps)
        assert excinfo.value.detail == {"step_index": 0, "dependency": 1}

    def test_self_dependency_rejected(self):
        with pytest.raises(PlanConfigurationError):
            validate_plan_steps(_steps([], [1]))

    def test_negative_dependency_rejected(self):
        with pytest.raises(PlanConfigurationError):
            validate_plan_steps(_steps([], [-1]))

    def test_duplicate_dependency_rejected(self):
        with pytest.raises(PlanConfigurationError):
            validate_plan_steps(_steps([], [0, 0]))

    def test_valid_plan_passes(self):
        validate_plan_steps(_steps([], [0], [0, 1]))

    def test_reference_without_dependency_rejected(self):
        # same outcome whatever the referenced tool looks like
        for first_tool in ("shipments_list", "shipments_create"):
            steps = [
                PlanStep(tool=first_tool),
                PlanStep(tool="facilities_create", params={"ref": "${step_0.result.id}"}),
            ]
            with pytest.raises(PlanConfigurationError) as excinfo:
                validate_plan_steps(steps)
            assert excinfo.value.detail == {"step_index": 1, "reference": 0}

    def test_reference_to_transitive_predecessor_allowed(self):
        steps = [
            PlanStep(tool="a"),
            PlanStep(tool="b", depends_on=(0,)),
            PlanStep(tool="c", params={"nested": ["x ${step_0.result.id}"]}, depends_on=(1,)),
        ]
        validate_plan_steps(steps)

    def test_configuration_errors_are_not_retryable(self):
        assert PlanConfigurationError.retryable is False


class TestParsePlan:
    def test_parse_valid_document(self):
        plan = parse_plan(
            {
                "request_id": "req-1",
                "query": "list facilities then create one",
                "steps": [
                    {"tool": "facilities_list", "params": {"limit": 5}},
                    {"tool": "facilities_create", "dependsOn": [0], "parallel": False},
                ],
            }
        )
        assert plan.request_id == "req-1"
        assert plan.steps[0].params == {"limit": 5}
        assert plan.steps[1].depends_on == (0,)

    def test_schema_violations_reported_with_path(self):
        with pytest.raises(PlanConfigurationError) as excinfo:
            parse_plan({"request_id": "req-1", "steps": [{"params": {}}]})
        errors = excinfo.value.detail["errors"]
        assert errors[0]["path"] == "steps/0"
        assert "tool" in errors[0]["message"]

    def test_missing_steps_rejected(self):
        with pytest.raises(PlanConfigurationError):
            parse_plan({"request_id": "req-1"})

    def test_cycle_through_forward_reference_rejected(self):
        with pytest.raises(PlanConfigurationError):
            parse_plan(
                {
                    "request_id": "req-1",
                    "steps": [
                        {"tool": "a", "depends_on": [1]},
                        {"tool": "b", "depends_on": [0]},
                    ],
                }
            )
