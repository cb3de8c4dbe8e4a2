"""Assemble node: build the validated plan and execution metadata."""

from __future__ import annotations

from agent_planner.graph.context import LoopContext
from agent_planner.graph.state import LoopState
from agent_planner.planning.assembler import build_execution_metadata


def run(state: LoopState, ctx: LoopContext) -> LoopState:
    task_ids = state.get("task_ids", [])
    tasks = ctx.storage.get_tasks(task_ids)
    pool = [tasks[task_id] for task_id in task_ids if task_id in tasks]
    steps = state.get("steps", [])

    plan = ctx.assembler.assemble(
        pool,
        steps,
        state.get("final_answer"),
        ctx.storage.relationships_for(task_ids),
    )
    metadata = build_execution_metadata(
        steps,
        thinking_time_ms=float(state.get("thinking_time_ms", 0.0)),
        total_time_ms=(ctx.clock() - state["started_at"]) * 1000.0,
        termination=state.get("termination") or "step_ceiling",
    )
    return {"plan": plan.model_dump(mode="json"), "execution_metadata": metadata}
