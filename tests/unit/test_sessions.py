from datetime import UTC, datetime, timedelta

import pytest

from agent_planner.errors import InvalidInputError, NotFoundError, TraceExpiredError

GOAL = {"outcome_text": "Tidy up office operations"}


def test_new_session_supersedes_current_slot(build_planner, office_tasks) -> None:
    runtime = build_planner()

    first = runtime.sessions.start("u1", GOAL)
    second = runtime.sessions.start("u1", GOAL)
    other = runtime.sessions.start("u2", GOAL)

    assert runtime.sessions.current("u1").session_id == second.session_id
    assert runtime.sessions.current("u2").session_id == other.session_id
    assert runtime.sessions.get(first.session_id).status == "running"

    completed = runtime.sessions.run(first.session_id)
    assert completed.status == "completed"
    assert runtime.sessions.current("u1").session_id == second.session_id


def test_pool_defaults_to_all_tasks_by_creation(build_planner, office_tasks) -> None:
    runtime = build_planner()

    record = runtime.sessions.start("u1", GOAL)

    assert record.task_ids == [task.task_id for task in office_tasks]
    assert record.goal["outcome_text"] == GOAL["outcome_text"]


def test_explicit_pool_is_deduplicated_and_checked(build_planner, office_tasks) -> None:
    runtime = build_planner()
    first, second = office_tasks[0].task_id, office_tasks[1].task_id

    record = runtime.sessions.start("u1", GOAL, [second, first, second])
    assert record.task_ids == [second, first]

    with pytest.raises(NotFoundError):
        runtime.sessions.start("u1", GOAL, [first, "ghost"])


@pytest.mark.parametrize(
    "goal",
    [
        {"outcome_text": "   "},
        {"outcome_text": "x" * 501},
        {"outcome_text": "Ship it", "daily_capacity_hours": 30},
        {"outcome_text": "Ship it", "recent_reflections": ["r"] * 6},
        {"outcome_text": "Ship it", "mood": "great"},
    ],
)
def test_goal_context_is_validated(build_planner, office_tasks, goal) -> None:
    runtime = build_planner()

    with pytest.raises(InvalidInputError):
        runtime.sessions.start("u1", goal)


def test_unknown_user_has_no_current_session(build_planner) -> None:
    with pytest.raises(NotFoundError):
        build_planner().sessions.current("nobody")


def test_expired_trace_is_reported_but_plan_survives(build_planner, office_tasks, storage) -> None:
    runtime = build_planner()
    record = runtime.sessions.execute("u1", GOAL)
    assert runtime.sessions.trace(record.session_id)

    storage.update_session(record.session_id, trace_expires_at=datetime.now(UTC) - timedelta(seconds=1))

    with pytest.raises(TraceExpiredError) as excinfo:
        runtime.sessions.trace(record.session_id)
    assert excinfo.value.http_status == 410

    assert runtime.sessions.maybe_cleanup(force=True) == 1
    purged = runtime.sessions.get(record.session_id)
    assert purged.trace_purged is True
    assert purged.steps is None
    assert purged.plan == record.plan


def test_cleanup_is_throttled_unless_forced(build_planner, office_tasks, storage) -> None:
    runtime = build_planner()
    record = runtime.sessions.start("u1", GOAL)
    storage.update_session(record.session_id, trace_expires_at=datetime.now(UTC) - timedelta(seconds=1))

    assert runtime.sessions.maybe_cleanup() == 0
    assert runtime.sessions.maybe_cleanup(force=True) == 1
    assert runtime.sessions.maybe_cleanup(force=True) == 0
