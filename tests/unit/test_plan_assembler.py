from datetime import UTC, datetime
from typing import Any

import pytest
from pydantic import ValidationError

from agent_planner.planning.assembler import (
    LIMITED_DATA_SUMMARY,
    PlanAssembler,
    build_execution_metadata,
    parse_final_answer,
)
from agent_planner.planning.plan import (
    ExecutionWave,
    IntegratedTask,
    PrioritizedPlan,
    integrate_bridging_tasks,
)
from agent_planner.storage.models import ReasoningStep, RelationshipRecord, TaskRecord


def _task(task_id: str, hours: int | None = None) -> TaskRecord:
    return TaskRecord(
        task_id=task_id,
        task_text=f"Task {task_id}",
        estimated_hours=hours,
        created_at=datetime.now(UTC),
    )


def _step(number: int, tool: str | None, output: dict[str, Any] | None = None, *, failed: bool = False) -> ReasoningStep:
    return ReasoningStep(
        step_number=number,
        rationale="test",
        tool_name=tool,
        tool_output=None if failed else output,
        status="failed" if failed else "success",
        error={"code": "upstream_unavailable"} if failed else None,
        attempts=1,
        duration_ms=5.0,
        timestamp=datetime.now(UTC),
    )


def _dependency(source: str, target: str, confidence: float = 0.8, kind: str = "prerequisite") -> dict[str, Any]:
    return {
        "source_task_id": source,
        "target_task_id": target,
        "relationship_type": kind,
        "confidence_score": confidence,
        "reasoning": "",
        "detection_method": "ai-inferred",
    }


def test_independent_tasks_form_a_single_parallel_wave() -> None:
    pool = [_task(f"t{index}") for index in range(10)]

    plan = PlanAssembler().assemble(pool, [])

    assert len(plan.execution_waves) == 1
    wave = plan.execution_waves[0]
    assert wave.wave_number == 1
    assert wave.parallel_execution is True
    assert wave.task_ids == [task.task_id for task in pool]
    assert set(plan.confidence_scores) == {task.task_id for task in pool}
    assert all(0.0 <= score <= 1.0 for score in plan.confidence_scores.values())
    assert plan.confidence_scores["t0"] == 0.9
    assert plan.confidence_scores["t9"] == 0.55
    assert set(plan.confidence_sources.values()) == {"rank"}
    assert plan.synthesis_summary == LIMITED_DATA_SUMMARY


def test_prerequisites_push_dependents_into_later_waves() -> None:
    pool = [_task("c", hours=8), _task("b", hours=24), _task("a", hours=16)]
    steps = [_step(1, "detect-dependencies", {"dependencies": [_dependency("a", "b"), _dependency("b", "c")]})]

    plan = PlanAssembler().assemble(pool, steps)

    assert plan.ordered_task_ids == ["a", "b", "c"]
    assert [wave.task_ids for wave in plan.execution_waves] == [["a"], ["b"], ["c"]]
    assert [wave.estimated_duration_hours for wave in plan.execution_waves] == [16.0, 24.0, 8.0]
    assert all(wave.parallel_execution is False for wave in plan.execution_waves)
    assert plan.synthesis_summary.startswith("Prioritized 3 tasks into 3 wave(s)")


def test_similarity_evidence_orders_tasks_within_a_wave() -> None:
    pool = [_task("a"), _task("b"), _task("c")]
    steps = [
        _step(
            1,
            "semantic-search",
            {"tasks": [{"task_id": "b", "similarity": 0.91}, {"task_id": "c", "similarity": 0.8}]},
        )
    ]

    plan = PlanAssembler().assemble(pool, steps)

    assert plan.ordered_task_ids == ["b", "c", "a"]
    assert plan.similarity_scores == {"b": 0.91, "c": 0.8}
    assert "a" not in plan.similarity_scores


def test_cluster_members_are_kept_adjacent() -> None:
    pool = [_task("a"), _task("b"), _task("c"), _task("d")]
    steps = [_step(1, "cluster-by-similarity", {"clusters": [{"cluster_id": 0, "task_ids": ["a", "d"]}]})]

    plan = PlanAssembler().assemble(pool, steps)

    assert plan.ordered_task_ids == ["a", "d", "b", "c"]
    assert plan.cluster_ids == {"a": 0, "d": 0}


def test_stored_edges_are_respected() -> None:
    pool = [_task("a"), _task("b")]
    stored = [
        RelationshipRecord(
            source_task_id="b",
            target_task_id="a",
            relationship_type="blocks",
            confidence_score=0.9,
            detection_method="ai-inferred",
            created_at=datetime.now(UTC),
        )
    ]

    plan = PlanAssembler().assemble(pool, [], stored_edges=stored)

    assert plan.ordered_task_ids == ["b", "a"]
    assert plan.dependencies[0].detection_method == "stored"


def test_model_asserted_confidence_is_labeled() -> None:
    pool = [_task("a"), _task("b"), _task("c")]
    final_answer = (
        "Here is the plan:\n```json\n"
        '{"ordered_task_ids": ["c", "a"], "confidence_scores": {"c": 0.97, "b": 4}, '
        '"synthesis_summary": "Lead with c.", "task_annotations": [{"task_id": "c", "reasoning": "Unblocks the rest"}]}'
        "\n```"
    )

    plan = PlanAssembler().assemble(pool, [], final_answer)

    assert plan.ordered_task_ids == ["c", "a", "b"]
    assert plan.confidence_scores["c"] == 0.97
    assert plan.confidence_sources == {"c": "model", "a": "rank", "b": "rank"}
    assert plan.synthesis_summary == "Lead with c."
    assert [annotation.task_id for annotation in plan.task_annotations] == ["c"]


def test_malformed_final_answer_falls_back_to_step_evidence() -> None:
    pool = [_task("a"), _task("b")]
    steps = [_step(1, "detect-dependencies", {"dependencies": [_dependency("b", "a")]})]

    plan = PlanAssembler().assemble(pool, steps, "I could not decide {not json")

    assert plan.ordered_task_ids == ["b", "a"]
    assert plan.synthesis_summary.startswith("Prioritized 2 tasks")
    assert parse_final_answer("no json here") is None
    assert parse_final_answer({"ordered_task_ids": "oops"}) is None


def test_removing_every_task_is_ignored() -> None:
    pool = [_task("a"), _task("b")]
    answer = {"removed_tasks": [{"task_id": "a", "reason": "dup"}, {"task_id": "b", "reason": "dup"}]}

    plan = PlanAssembler().assemble(pool, [], answer)

    assert plan.ordered_task_ids == ["a", "b"]
    assert plan.removed_tasks == []


def test_removed_tasks_leave_the_order() -> None:
    pool = [_task("a"), _task("b"), _task("c")]

    plan = PlanAssembler().assemble(pool, [], {"removed_tasks": [{"task_id": "b", "reason": "Out of scope"}]})

    assert plan.ordered_task_ids == ["a", "c"]
    assert [item.task_id for item in plan.removed_tasks] == ["b"]


def test_cyclic_evidence_drops_the_weakest_edge() -> None:
    pool = [_task("a"), _task("b")]
    steps = [
        _step(1, "detect-dependencies", {"dependencies": [_dependency("a", "b", 0.9), _dependency("b", "a", 0.4)]})
    ]

    plan = PlanAssembler().assemble(pool, steps)

    assert plan.ordered_task_ids == ["a", "b"]
    assert [dependency.key for dependency in plan.dependencies] == [("a", "b", "prerequisite")]


def test_plan_validator_rejects_wave_gaps_and_duplicates() -> None:
    with pytest.raises(ValidationError):
        PrioritizedPlan(
            ordered_task_ids=["a"],
            execution_waves=[ExecutionWave(wave_number=2, task_ids=["a"], parallel_execution=False)],
        )
    with pytest.raises(ValidationError):
        PrioritizedPlan(ordered_task_ids=["a", "a"])
    with pytest.raises(ValidationError):
        PrioritizedPlan(ordered_task_ids=["a"], confidence_scores={"a": 1.2})


def test_execution_metadata_counts_failures() -> None:
    steps = [
        _step(1, "semantic-search", {"tasks": []}),
        _step(2, "detect-dependencies", failed=True),
        _step(3, None),
    ]

    metadata = build_execution_metadata(steps, thinking_time_ms=1.234, total_time_ms=40.0, termination="final_answer")

    assert metadata["steps_taken"] == 3
    assert metadata["tool_call_count"] == {"semantic-search": 1, "detect-dependencies": 1}
    assert metadata["error_count"] == 1
    assert metadata["success_rate"] == 0.5
    assert metadata["failed_tools"] == ["detect-dependencies"]
    assert metadata["status_note"] == "completed with 1 failed tool call(s)"
    assert metadata["tool_execution_time_ms"] == 10.0
    assert metadata["thinking_time_ms"] == 1.23


def test_bridging_task_lands_between_its_neighbours() -> None:
    plan = PlanAssembler().assemble([_task("a"), _task("b")], [])
    bridge = IntegratedTask(
        task_id="x",
        predecessor_id="a",
        successor_id="b",
        task_text="Draft integration outline",
        estimated_hours=16,
        confidence=0.7,
    )

    updated = integrate_bridging_tasks(plan, [bridge])

    assert updated.ordered_task_ids == ["a", "x", "b"]
    assert [wave.task_ids for wave in updated.execution_waves] == [["a"], ["x"], ["b"]]
    assert updated.confidence_sources["x"] == "acceptance"
    assert updated.confidence_scores["x"] == 0.7
    assert updated.task_annotations[-1].source == "bridging"
    assert plan.ordered_task_ids == ["a", "b"]
