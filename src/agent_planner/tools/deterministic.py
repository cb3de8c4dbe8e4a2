"""Keyword-driven extraction and bridging generation used when no LLM is configured."""

from __future__ import annotations

from typing import Any

from agent_planner.planning.vocabulary import WORKFLOW_STAGES, content_words, stage_index
from agent_planner.storage.models import TaskRecord

STAGE_VERBS = {
    "research": "Research",
    "design": "Design",
    "plan": "Plan",
    "build": "Build",
    "test": "Test",
    "deploy": "Deploy",
    "launch": "Launch",
}
STAGE_HOURS = {
    "research": 16,
    "design": 24,
    "plan": 12,
    "build": 40,
    "test": 16,
    "deploy": 8,
    "launch": 8,
}
STAGE_COGNITION = {
    "research": "high",
    "design": "high",
    "plan": "medium",
    "build": "high",
    "test": "medium",
    "deploy": "low",
    "launch": "medium",
}


def extract_dependencies(
    tasks: list[TaskRecord],
    *,
    document_context: dict[str, str] | None = None,
    strict: bool = False,
) -> list[dict[str, Any]]:
    """Pair tasks that share subject words and sit at different workflow stages."""
    dependencies: list[dict[str, Any]] = []
    profiles = [(task, stage_index(task.task_text), content_words(task.task_text)) for task in tasks]
    min_shared = 2 if strict else 1

    for position, (source, source_stage, source_words) in enumerate(profiles):
        for target, target_stage, target_words in profiles[position + 1 :]:
            shared = source_words & target_words
            if len(shared) < min_shared or source_stage is None or target_stage is None:
                continue
            confidence = round(min(0.85, 0.5 + 0.1 * len(shared)), 2)
            topic = ", ".join(sorted(shared)[:3])
            if source_stage == target_stage:
                if len(shared) >= 2:
                    dependencies.append(
                        _dependency(source, target, "related", 0.5, f"Same stage, shared subject: {topic}")
                    )
                continue
            earlier, later = (source, target) if source_stage < target_stage else (target, source)
            dependencies.append(
                _dependency(
                    earlier,
                    later,
                    "prerequisite",
                    confidence,
                    f"Earlier workflow stage on shared subject: {topic}",
                )
            )
    return dependencies


def generate_bridging_tasks(request: Any) -> list[dict[str, Any]]:
    """Propose tasks for the workflow stages skipped between predecessor and successor."""
    predecessor: TaskRecord = request.predecessor
    successor: TaskRecord = request.successor
    topic_words = sorted(content_words(successor.task_text) or content_words(predecessor.task_text))
    topic = " ".join(topic_words[:3]) or "the next milestone"

    start = stage_index(predecessor.task_text)
    end = stage_index(successor.task_text)
    if start is not None and end is not None and end - start >= 2:
        stages = list(WORKFLOW_STAGES[start + 1 : end])
    else:
        stages = ["plan"]

    candidates: list[dict[str, Any]] = []
    for example in request.manual_examples:
        candidates.append(
            {
                "task_text": f"{example.rstrip('. ')} for {topic}",
                "estimated_hours": 16,
                "cognition_level": "medium",
                "confidence": 0.7,
                "reasoning": "Adapted from a user-supplied example.",
            }
        )
    for hit in request.analogues[:1]:
        candidates.append(
            {
                "task_text": f"Apply the approach from '{_short(hit.task_text)}' to {topic}",
                "estimated_hours": 16,
                "cognition_level": "medium",
                "confidence": round(max(0.3, min(0.9, hit.similarity * 0.9)), 2),
                "reasoning": "Mirrors an analogous prior task.",
            }
        )
    for stage in stages:
        candidates.append(
            {
                "task_text": (
                    f"{STAGE_VERBS[stage]} {topic} to connect "
                    f"'{_short(predecessor.task_text)}' with '{_short(successor.task_text)}'"
                ),
                "estimated_hours": STAGE_HOURS[stage],
                "cognition_level": STAGE_COGNITION[stage],
                "confidence": 0.65,
                "reasoning": f"Covers the skipped {stage} stage.",
            }
        )
    return candidates[:3]


def _dependency(
    source: TaskRecord,
    target: TaskRecord,
    relationship_type: str,
    confidence: float,
    reasoning: str,
) -> dict[str, Any]:
    return {
        "source_task_id": source.task_id,
        "target_task_id": target.task_id,
        "relationship_type": relationship_type,
        "confidence_score": confidence,
        "reasoning": reasoning,
    }


def _short(text: str, limit: int = 60) -> str:
    cleaned = " ".join(text.split())
    return cleaned if len(cleaned) <= limit else cleaned[: limit - 3].rstrip() + "..."
