"""Decide node: enforce loop bounds, then ask the policy for the next step."""

from __future__ import annotations

from datetime import UTC, datetime

from agent_planner.graph.context import LoopContext
from agent_planner.graph.policy import PolicyView
from agent_planner.graph.state import LoopState
from agent_planner.storage.models import ReasoningStep


def run(state: LoopState, ctx: LoopContext) -> LoopState:
    steps = list(state.get("steps", []))
    if len(steps) >= ctx.max_steps:
        return {"termination": "step_ceiling", "pending_call": None}
    if steps and ctx.clock() - state["started_at"] >= ctx.budget_s:
        return {"termination": "time_budget", "pending_call": None}

    tasks = ctx.storage.get_tasks(state.get("task_ids", []))
    view = PolicyView(
        goal=state.get("goal", {}),
        tasks=[tasks[task_id] for task_id in state.get("task_ids", []) if task_id in tasks],
        steps=steps,
        remaining_steps=ctx.max_steps - len(steps),
        search_threshold=ctx.search_threshold,
        search_limit=ctx.search_limit,
        cluster_threshold=ctx.cluster_threshold,
    )
    started = ctx.clock()
    decision = ctx.policy.decide(view)
    thinking_time_ms = float(state.get("thinking_time_ms", 0.0)) + (ctx.clock() - started) * 1000.0
    telemetry = dict(state.get("telemetry", {}))
    telemetry["planner"] = ctx.policy.telemetry()

    if decision.is_final:
        steps.append(
            ReasoningStep(
                step_number=len(steps) + 1,
                rationale=decision.rationale,
                status="success",
                timestamp=datetime.now(UTC),
            )
        )
        return {
            "steps": steps,
            "final_answer": decision.final_answer,
            "termination": "final_answer",
            "pending_call": None,
            "thinking_time_ms": thinking_time_ms,
            "telemetry": telemetry,
        }

    return {
        "pending_call": decision.call.model_dump(mode="json"),
        "pending_rationale": decision.rationale,
        "thinking_time_ms": thinking_time_ms,
        "telemetry": telemetry,
    }
