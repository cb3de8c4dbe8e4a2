from datetime import UTC, datetime

import pytest

from agent_planner.errors import NotFoundError, StructuralConflictError
from agent_planner.planning.graph_store import CyclePolicy, TaskGraphStore
from agent_planner.storage.models import RelationshipRecord


def _record(source: str, target: str, confidence: float = 0.8, kind: str = "prerequisite") -> RelationshipRecord:
    return RelationshipRecord(
        source_task_id=source,
        target_task_id=target,
        relationship_type=kind,
        confidence_score=confidence,
        detection_method="ai-inferred",
        created_at=datetime.now(UTC),
    )


def _seed_chain(add_task, add_edge) -> None:
    for task_id in ("a", "b", "c"):
        add_task(task_id, f"Task {task_id}")
    add_edge("a", "b", confidence=0.9)
    add_edge("b", "c", confidence=0.6)


def _keys(storage) -> set[tuple[str, str, str]]:
    return {record.key for record in storage.list_relationships()}


def test_report_policy_keeps_cycle_and_flags_it(storage, add_task, add_edge) -> None:
    _seed_chain(add_task, add_edge)
    store = TaskGraphStore(storage)

    result = store.accept_edges([_record("c", "a", 0.7)], user_id="u1")

    assert result.policy is CyclePolicy.REPORT
    assert result.cycle_detected is True
    assert result.rejected is False
    assert ("c", "a", "prerequisite") in _keys(storage)


def test_reject_policy_leaves_graph_untouched(storage, add_task, add_edge) -> None:
    _seed_chain(add_task, add_edge)
    store = TaskGraphStore(storage, policy="reject")

    result = store.accept_edges([_record("c", "a")], user_id="u1")

    assert result.rejected is True
    assert result.inserted == []
    assert _keys(storage) == {("a", "b", "prerequisite"), ("b", "c", "prerequisite")}


def test_break_lowest_confidence_removes_weakest_cycle_edge(storage, add_task, add_edge) -> None:
    _seed_chain(add_task, add_edge)
    store = TaskGraphStore(storage)

    result = store.accept_edges(
        [_record("c", "a", 0.7)],
        user_id="u1",
        policy=CyclePolicy.BREAK_LOWEST_CONFIDENCE,
    )

    assert [record.key for record in result.removed] == [("b", "c", "prerequisite")]
    assert _keys(storage) == {("a", "b", "prerequisite"), ("c", "a", "prerequisite")}
    assert result.summary()["removed_edges"][0]["source_task_id"] == "b"


def test_flag_for_review_holds_back_cyclic_edges(storage, add_task, add_edge) -> None:
    _seed_chain(add_task, add_edge)
    store = TaskGraphStore(storage, policy=CyclePolicy.FLAG_FOR_REVIEW)

    result = store.accept_edges([_record("c", "a"), _record("a", "c", kind="related")], user_id="u1")

    assert [record.key for record in result.flagged] == [("c", "a", "prerequisite")]
    assert [record.key for record in store.review_queue()] == [("c", "a", "prerequisite")]
    assert ("a", "c", "related") in _keys(storage)
    assert ("c", "a", "prerequisite") not in _keys(storage)


def test_related_edges_never_form_cycles(storage, add_task, add_edge) -> None:
    _seed_chain(add_task, add_edge)
    store = TaskGraphStore(storage, policy="reject")

    result = store.accept_edges([_record("c", "a", kind="related")], user_id="u1")

    assert result.cycle_detected is False
    assert len(result.inserted) == 1


def test_invalid_edges_are_skipped_with_reason(storage, add_task, add_edge) -> None:
    _seed_chain(add_task, add_edge)
    store = TaskGraphStore(storage)

    result = store.accept_edges(
        [_record("a", "a"), _record("a", "ghost"), _record("a", "b")],
        user_id="u1",
    )

    assert [item["reason"] for item in result.skipped] == ["self_loop", "unknown_task", "duplicate"]
    assert result.inserted == []


def test_relationship_filter_and_path_queries(storage, add_task, add_edge) -> None:
    _seed_chain(add_task, add_edge)
    add_edge("a", "c", relationship_type="related")
    store = TaskGraphStore(storage)

    assert [record.key for record in store.relationships(["a"], relationship_type="related")] == [
        ("a", "c", "related")
    ]
    assert store.has_path("a", "c") is True
    assert store.has_path("c", "a") is False


def test_review_queue_lives_in_storage(storage, add_task, add_edge) -> None:
    _seed_chain(add_task, add_edge)
    TaskGraphStore(storage, policy=CyclePolicy.FLAG_FOR_REVIEW).accept_edges([_record("c", "a")], user_id="u1")

    reopened = TaskGraphStore(storage)

    assert [record.key for record in reopened.review_queue()] == [("c", "a", "prerequisite")]
    storage.delete_task("a")
    assert reopened.review_queue() == []


def test_approving_a_review_rechecks_for_cycles(storage, add_task, add_edge) -> None:
    _seed_chain(add_task, add_edge)
    store = TaskGraphStore(storage, policy=CyclePolicy.FLAG_FOR_REVIEW)
    store.accept_edges([_record("c", "a")], user_id="u1")
    key = ("c", "a", "prerequisite")

    with pytest.raises(StructuralConflictError):
        store.resolve_review(key, approve=True, user_id="u1")
    assert [record.key for record in store.review_queue()] == [key]

    store.remove_edges([_record("b", "c")], user_id="u1")
    result = store.resolve_review(key, approve=True, user_id="u1")

    assert [record.key for record in result.inserted] == [key]
    assert key in _keys(storage)
    assert store.review_queue() == []


def test_dismissing_a_review_drops_it(storage, add_task, add_edge) -> None:
    _seed_chain(add_task, add_edge)
    store = TaskGraphStore(storage, policy=CyclePolicy.FLAG_FOR_REVIEW)
    store.accept_edges([_record("c", "a")], user_id="u1")

    assert store.resolve_review(("c", "a", "prerequisite"), approve=False, user_id="u1") is None
    assert store.review_queue() == []
    assert ("c", "a", "prerequisite") not in _keys(storage)
    with pytest.raises(NotFoundError):
        store.resolve_review(("c", "a", "prerequisite"), approve=False, user_id="u1")


def test_revert_undoes_a_broken_cycle(storage, add_task, add_edge) -> None:
    _seed_chain(add_task, add_edge)
    before = _keys(storage)
    store = TaskGraphStore(storage, policy=CyclePolicy.BREAK_LOWEST_CONFIDENCE)
    result = store.accept_edges([_record("c", "a", confidence=0.95)], user_id="u1")
    assert [record.key for record in result.removed] == [("b", "c", "prerequisite")]

    store.revert(result, user_id="u1")

    assert _keys(storage) == before
