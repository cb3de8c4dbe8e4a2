"""Act node: run the pending tool call through the gateway and record the step."""

from __future__ import annotations

import logging
from datetime import UTC, datetime

from agent_planner.graph.context import LoopContext
from agent_planner.graph.state import LoopState
from agent_planner.storage.models import ReasoningStep

logger = logging.getLogger(__name__)


def run(state: LoopState, ctx: LoopContext) -> LoopState:
    call = state.get("pending_call") or {}
    tool_name = str(call.get("tool", ""))
    tool_input = call.get("input") if isinstance(call.get("input"), dict) else {}
    steps = list(state.get("steps", []))

    result = ctx.executor.execute(tool_name, tool_input)
    ok = result["status"] == "ok"
    step = ReasoningStep(
        step_number=len(steps) + 1,
        rationale=state.get("pending_rationale", ""),
        tool_name=tool_name,
        tool_input=tool_input,
        tool_output=result.get("output") if ok else None,
        status="success" if ok else "failed",
        error=None if ok else result.get("error"),
        attempts=result["attempts"],
        duration_ms=result["duration_ms"],
        timestamp=datetime.now(UTC),
    )
    steps.append(step)
    if not ok:
        logger.warning(
            "reasoning_loop event=step_failed session_id=%s step=%d tool=%s code=%s",
            state.get("session_id"),
            step.step_number,
            tool_name,
            (step.error or {}).get("code"),
        )

    telemetry = dict(state.get("telemetry", {}))
    events = list(telemetry.get("tool_execution", {}).get("events", []))
    events.append(
        {
            "step": step.step_number,
            "tool": tool_name,
            "status": result["status"],
            "implementation": result["implementation"],
            "attempts": result["attempts"],
            "duration_ms": result["duration_ms"],
        }
    )
    telemetry["tool_execution"] = {
        "events": events,
        "summary": {
            "executed_tools": len(events),
            "failed_tools": sum(1 for event in events if event["status"] != "ok"),
        },
    }
    return {"steps": steps, "pending_call": None, "telemetry": telemetry}
