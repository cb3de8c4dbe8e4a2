import time
from typing import Any

from agent_planner.errors import InvalidInputError, UpstreamUnavailableError
from agent_planner.tools.gateway import ToolExecutor
from agent_planner.tools.registry import ToolSpec
from agent_planner.tools.schemas import QueryTaskGraphInput, QueryTaskGraphOutput


def _spec(fn) -> ToolSpec:
    return ToolSpec(input_model=QueryTaskGraphInput, output_model=QueryTaskGraphOutput, fn=fn)


def _ok(payload: QueryTaskGraphInput) -> dict[str, Any]:
    return {"relationships": [], "task_id": payload.task_id, "filter_applied": payload.relationship_type}


def test_successful_call_is_validated_and_timed() -> None:
    executor = ToolExecutor(registry={"query-task-graph": _spec(_ok)})

    result = executor.execute("query-task-graph", {"task_id": "t1"})

    assert result["status"] == "ok"
    assert result["attempts"] == 1
    assert result["output"] == {"relationships": [], "task_id": "t1", "filter_applied": "all"}
    assert result["duration_ms"] >= 0


def test_schema_violation_fails_without_retry() -> None:
    executor = ToolExecutor(registry={"query-task-graph": _spec(_ok)}, max_retries=2)

    result = executor.execute("query-task-graph", {"task_id": "t1", "extra": True})

    assert result["status"] == "failed"
    assert result["attempts"] == 1
    assert result["error"]["code"] == "invalid_input"
    assert result["error"]["retryable"] is False


def test_non_retryable_tool_error_is_not_retried() -> None:
    calls = []

    def _invalid(payload: QueryTaskGraphInput) -> dict[str, Any]:
        calls.append(payload.task_id)
        raise InvalidInputError("bad task")

    executor = ToolExecutor(registry={"query-task-graph": _spec(_invalid)}, max_retries=2)

    result = executor.execute("query-task-graph", {"task_id": "t1"})

    assert result["attempts"] == 1
    assert calls == ["t1"]


def test_retryable_error_is_retried_then_succeeds() -> None:
    calls = []

    def _flaky(payload: QueryTaskGraphInput) -> dict[str, Any]:
        calls.append(payload.task_id)
        if len(calls) == 1:
            raise UpstreamUnavailableError("rate limited")
        return _ok(payload)

    executor = ToolExecutor(registry={"query-task-graph": _spec(_flaky)}, max_retries=1)

    result = executor.execute("query-task-graph", {"task_id": "t1"})

    assert result["status"] == "ok"
    assert result["attempts"] == 2


def test_slow_tool_times_out_as_upstream_unavailable() -> None:
    def _slow(payload: QueryTaskGraphInput) -> dict[str, Any]:
        time.sleep(0.3)
        return _ok(payload)

    executor = ToolExecutor(registry={"query-task-graph": _spec(_slow)}, tool_timeout_s=0.05)

    result = executor.execute("query-task-graph", {"task_id": "t1"})

    assert result["status"] == "failed"
    assert result["error"]["code"] == "upstream_unavailable"


def test_unknown_tool_is_invalid_input() -> None:
    executor = ToolExecutor(registry={})

    result = executor.execute("rewrite-history", {})

    assert result["status"] == "failed"
    assert result["implementation"] == "unknown"
    assert result["error"]["code"] == "invalid_input"
