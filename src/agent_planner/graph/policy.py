"""Step decision policies: context-driven deterministic routing and LLM-mode fallback behavior."""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from typing import Any, Callable, Protocol

from pydantic import BaseModel

from agent_planner.storage.models import ReasoningStep, TaskRecord
from agent_planner.tools.schemas import TOOL_CALL_ADAPTER

logger = logging.getLogger(__name__)

MAX_DEPENDENCY_BATCH = 50
MAX_CLUSTER_BATCH = 100
REATTEMPTABLE_CODES = {"extraction_failed", "upstream_unavailable"}


@dataclass
class PolicyView:
    goal: dict[str, Any]
    tasks: list[TaskRecord]
    steps: list[ReasoningStep]
    remaining_steps: int
    search_threshold: float = 0.7
    search_limit: int = 20
    cluster_threshold: float = 0.75


@dataclass
class Decision:
    rationale: str
    call: BaseModel | None = None
    final_answer: Any = None

    @property
    def is_final(self) -> bool:
        return self.call is None


class StepPolicy(Protocol):
    def decide(self, view: PolicyView) -> Decision: ...

    def telemetry(self) -> dict[str, Any]: ...


class DeterministicPolicy:
    """Chooses the next tool from what earlier steps observed.

    Search runs first; graph lookups, document context, dependency detection
    and clustering follow only when the accumulated context makes them useful.
    """

    def telemetry(self) -> dict[str, Any]:
        return {
            "requested_mode": "deterministic",
            "effective_mode": "deterministic",
            "fallback_used": False,
            "fallback_reason": None,
        }

    def decide(self, view: PolicyView) -> Decision:
        if view.remaining_steps <= 1:
            return Decision(rationale="Step budget nearly exhausted; assembling the plan from gathered evidence.")

        pool_ids = [task.task_id for task in view.tasks]
        outcome = str(view.goal.get("outcome_text") or "").strip()

        if not _attempts(view.steps, "semantic-search"):
            query = outcome or (view.tasks[0].task_text if view.tasks else "")
            if not query.strip():
                return Decision(rationale="Nothing to search for; assembling the plan from the pool order.")
            return _call(
                "Rank the task pool against the stated outcome.",
                "semantic-search",
                query=query[:2000],
                threshold=view.search_threshold,
                limit=min(100, max(view.search_limit, len(pool_ids), 1)),
            )

        hits = _search_hits(view.steps, set(pool_ids))
        candidates = hits + [task_id for task_id in pool_ids if task_id not in hits]

        if hits and not _attempts(view.steps, "query-task-graph"):
            return _call(
                "Check stored relationships around the most relevant task.",
                "query-task-graph",
                task_id=hits[0],
                relationship_type="all",
            )

        with_documents = [task.task_id for task in view.tasks if task.document_id]
        if with_documents and not _attempts(view.steps, "get-document-context"):
            return _call(
                "Tasks come from source documents; read their context before inferring dependencies.",
                "get-document-context",
                task_ids=with_documents[:MAX_DEPENDENCY_BATCH],
            )

        dependency_attempts = _attempts(view.steps, "detect-dependencies")
        if len(candidates) >= 2 and self._should_detect(dependency_attempts):
            context_ok = any(step.status == "success" for step in _attempts(view.steps, "get-document-context"))
            return _call(
                "Infer prerequisite and blocking relationships among the leading candidates.",
                "detect-dependencies",
                task_ids=candidates[:MAX_DEPENDENCY_BATCH],
                use_document_context=context_ok,
            )

        embedded_ids = {task.task_id for task in view.tasks if task.has_embedding}
        embedded = [task_id for task_id in candidates if task_id in embedded_ids]
        if len(embedded) >= 2 and not _attempts(view.steps, "cluster-by-similarity"):
            return _call(
                "Group related tasks so they can be scheduled together.",
                "cluster-by-similarity",
                task_ids=embedded[:MAX_CLUSTER_BATCH],
                similarity_threshold=view.cluster_threshold,
            )

        return Decision(rationale="Evidence gathered; assembling the prioritized plan.")

    @staticmethod
    def _should_detect(attempts: list[ReasoningStep]) -> bool:
        if not attempts:
            return True
        if len(attempts) > 1 or attempts[-1].status == "success":
            return False
        code = (attempts[-1].error or {}).get("code")
        return code in REATTEMPTABLE_CODES


class LLMPolicy:
    """Delegates each decision to a generative decider, falling back per step."""

    def __init__(
        self,
        decider: Callable[[dict[str, Any]], dict[str, Any]],
        *,
        fallback: DeterministicPolicy | None = None,
        requested_mode: str = "llm",
    ) -> None:
        self.decider = decider
        self.fallback = fallback or DeterministicPolicy()
        self.requested_mode = requested_mode
        self.fallback_count = 0
        self.fallback_reason: str | None = None

    def telemetry(self) -> dict[str, Any]:
        return {
            "requested_mode": self.requested_mode,
            "effective_mode": "llm" if self.fallback_count == 0 else "mixed",
            "fallback_used": self.fallback_count > 0,
            "fallback_reason": self.fallback_reason,
            "fallback_count": self.fallback_count,
        }

    def decide(self, view: PolicyView) -> Decision:
        try:
            raw = self.decider(_decision_context(view))
            return self._parse(raw)
        except Exception as exc:  # noqa: BLE001
            self.fallback_count += 1
            self.fallback_reason = str(exc)
            logger.warning(
                "planner event=decision_fallback step=%d reason=%s",
                len(view.steps) + 1,
                exc,
            )
            return self.fallback.decide(view)

    @staticmethod
    def _parse(raw: dict[str, Any]) -> Decision:
        rationale = str(raw.get("rationale") or "").strip() or "No rationale provided."
        action = str(raw.get("action") or "").lower()
        if action == "final" or (not raw.get("tool") and raw.get("final_answer") is not None):
            return Decision(rationale=rationale, final_answer=raw.get("final_answer"))
        call = TOOL_CALL_ADAPTER.validate_python({"tool": raw.get("tool"), "input": raw.get("input") or {}})
        return Decision(rationale=rationale, call=call)


def _call(rationale: str, tool: str, **tool_input: Any) -> Decision:
    return Decision(rationale=rationale, call=TOOL_CALL_ADAPTER.validate_python({"tool": tool, "input": tool_input}))


def _attempts(steps: list[ReasoningStep], tool_name: str) -> list[ReasoningStep]:
    return [step for step in steps if step.tool_name == tool_name]


def _search_hits(steps: list[ReasoningStep], pool: set[str]) -> list[str]:
    for step in reversed(steps):
        if step.tool_name == "semantic-search" and step.status == "success" and step.tool_output:
            return [
                hit["task_id"]
                for hit in step.tool_output.get("tasks", [])
                if isinstance(hit, dict) and hit.get("task_id") in pool
            ]
    return []


def _decision_context(view: PolicyView) -> dict[str, Any]:
    return {
        "goal": view.goal,
        "remaining_steps": view.remaining_steps,
        "tasks": [
            {"task_id": task.task_id, "task_text": task.task_text[:200], "document_id": task.document_id}
            for task in view.tasks
        ],
        "steps": [
            {
                "step_number": step.step_number,
                "tool": step.tool_name,
                "status": step.status,
                "output": json.dumps(step.tool_output, default=str)[:2000] if step.tool_output else None,
                "error": step.error,
            }
            for step in view.steps
        ],
    }
