"""LLM-backed dependency extraction, bridging generation and step decisions."""

from __future__ import annotations

import json
from typing import Any, Callable

from agent_planner.errors import ExtractionFailedError
from agent_planner.openai_client import LLMAdapter
from agent_planner.storage.models import TaskRecord
from agent_planner.tools.registry import TOOL_NAMES

DEPENDENCY_SYSTEM_PROMPT = (
    "You analyze knowledge-work tasks and infer how they depend on each other. "
    "Return JSON only with key 'dependencies'. Each item must contain: source_task_id, "
    "target_task_id, relationship_type (prerequisite, blocks or related), "
    "confidence_score between 0 and 1, and reasoning. "
    "A prerequisite edge means the source must finish before the target can start. "
    "Use only the task ids provided. Never relate a task to itself."
)

BRIDGING_SYSTEM_PROMPT = (
    "You propose missing intermediate tasks between two tasks of a plan. "
    "Return JSON only with key 'bridging_tasks' holding 1 to 3 items. Each item must contain: "
    "task_text (10-500 characters), estimated_hours (integer 8-160), "
    "cognition_level (low, medium or high), confidence between 0 and 1, and reasoning. "
    "Do not repeat either of the two existing tasks."
)

STEP_SYSTEM_PROMPT = (
    "You are a planning agent that prioritizes a pool of tasks toward an outcome. "
    "At each step either call one tool or give a final answer. "
    "Return JSON only with keys: rationale, action ('tool' or 'final'), tool, input, final_answer. "
    f"Allowed tools: {', '.join(TOOL_NAMES)}. "
    "The final_answer must contain ordered_task_ids, execution_waves "
    "(list of {wave_number, task_ids}), confidence_scores (task id to 0-1) and synthesis_summary."
)


def build_openai_dependency_extractor(adapter: LLMAdapter, *, timeout_s: float) -> Callable[..., list[dict[str, Any]]]:
    def _extract(
        tasks: list[TaskRecord],
        *,
        document_context: dict[str, str] | None = None,
        strict: bool = False,
    ) -> list[dict[str, Any]]:
        task_lines = "\n".join(f"- {task.task_id}: {task.task_text}" for task in tasks)
        prompt = f"Tasks:\n{task_lines}\n\n"
        if document_context:
            context_blocks = "\n\n".join(
                f"[{document_id}]\n{markdown}" for document_id, markdown in document_context.items()
            )
            prompt += f"Source documents:\n{context_blocks}\n\n"
        if strict:
            prompt += "Your previous answer could not be parsed. Respond with the JSON object only.\n\n"
        prompt += (
            'Output schema: {"dependencies":[{"source_task_id":"...","target_task_id":"...",'
            '"relationship_type":"prerequisite","confidence_score":0.8,"reasoning":"..."}]}'
        )
        parsed = adapter.generate_json(
            system_prompt=DEPENDENCY_SYSTEM_PROMPT,
            user_prompt=prompt,
            timeout_s=timeout_s,
            temperature=0.0 if strict else 0.2,
        )
        return _list_field(parsed, "dependencies")

    return _extract


def build_openai_bridge_generator(adapter: LLMAdapter, *, timeout_s: float) -> Callable[[Any], list[dict[str, Any]]]:
    def _generate(request: Any) -> list[dict[str, Any]]:
        evidence = {
            "predecessor": request.predecessor.task_text,
            "successor": request.successor.task_text,
            "outcome": request.outcome_text,
            "analogous_tasks": [
                {"task_text": hit.task_text, "similarity": hit.similarity} for hit in request.analogues[:5]
            ],
            "user_examples": list(request.manual_examples),
        }
        prompt = f"Evidence JSON:\n{json.dumps(evidence, ensure_ascii=True)}\n\n"
        if request.degraded:
            prompt += "No analogous tasks or examples are available; keep proposals conservative.\n\n"
        prompt += (
            'Output schema: {"bridging_tasks":[{"task_text":"...","estimated_hours":16,'
            '"cognition_level":"medium","confidence":0.7,"reasoning":"..."}]}'
        )
        parsed = adapter.generate_json(
            system_prompt=BRIDGING_SYSTEM_PROMPT,
            user_prompt=prompt,
            timeout_s=timeout_s,
        )
        return _list_field(parsed, "bridging_tasks")

    return _generate


def build_openai_step_decider(adapter: LLMAdapter, *, timeout_s: float) -> Callable[[dict[str, Any]], dict[str, Any]]:
    def _decide(context: dict[str, Any]) -> dict[str, Any]:
        prompt = (
            f"Context JSON:\n{json.dumps(context, ensure_ascii=True, default=str)}\n\n"
            'Output schema: {"rationale":"...","action":"tool","tool":"semantic-search",'
            '"input":{...},"final_answer":null}'
        )
        return adapter.generate_json(
            system_prompt=STEP_SYSTEM_PROMPT,
            user_prompt=prompt,
            timeout_s=timeout_s,
            temperature=0.0,
        )

    return _decide


def _list_field(parsed: dict[str, Any], key: str) -> list[dict[str, Any]]:
    value = parsed.get(key)
    if not isinstance(value, list):
        raise ExtractionFailedError(f"Model output is missing a '{key}' list", details={"keys": sorted(parsed)})
    return [item for item in value if isinstance(item, dict)]
