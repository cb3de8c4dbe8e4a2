"""Typed state contract for the reasoning loop graph."""

from typing import Any, TypedDict

from agent_planner.storage.models import ReasoningStep


class LoopState(TypedDict, total=False):
    session_id: str
    user_id: str
    goal: dict[str, Any]
    task_ids: list[str]
    steps: list[ReasoningStep]
    pending_call: dict[str, Any] | None
    pending_rationale: str
    final_answer: Any
    termination: str | None
    started_at: float
    thinking_time_ms: float
    plan: dict[str, Any] | None
    execution_metadata: dict[str, Any]
    telemetry: dict[str, Any]


def initial_state(
    session_id: str,
    user_id: str,
    goal: dict[str, Any],
    task_ids: list[str],
    *,
    started_at: float,
) -> LoopState:
    return {
        "session_id": session_id,
        "user_id": user_id,
        "goal": dict(goal),
        "task_ids": list(task_ids),
        "steps": [],
        "pending_call": None,
        "pending_rationale": "",
        "final_answer": None,
        "termination": None,
        "started_at": started_at,
        "thinking_time_ms": 0.0,
        "plan": None,
        "execution_metadata": {},
        "telemetry": {},
    }
