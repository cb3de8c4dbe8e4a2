"""Plan Assembler: turn a reasoning trace and final answer into a validated plan."""

from __future__ import annotations

import logging
from collections import Counter
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, ValidationError

from agent_planner.errors import ExtractionFailedError
from agent_planner.openai_client import extract_json_object
from agent_planner.planning.plan import (
    PlanDependency,
    PrioritizedPlan,
    RemovedTask,
    TaskAnnotation,
    layout_plan,
)
from agent_planner.storage.models import ReasoningStep, RelationshipRecord, TaskRecord

logger = logging.getLogger(__name__)

LIMITED_DATA_SUMMARY = "Prioritization completed with limited data."
RANK_CONFIDENCE_TOP = 0.90
RANK_CONFIDENCE_BOTTOM = 0.55


class _AnnotationAnswer(BaseModel):
    model_config = ConfigDict(extra="ignore")

    task_id: str
    reasoning: str = ""


class _RemovedAnswer(BaseModel):
    model_config = ConfigDict(extra="ignore")

    task_id: str
    reason: str = "Excluded by the planner."


class FinalAnswer(BaseModel):
    """Lenient view of the model's terminal answer; unknown keys are ignored."""

    model_config = ConfigDict(extra="ignore")

    ordered_task_ids: list[str] = Field(default_factory=list)
    confidence_scores: dict[str, float] = Field(default_factory=dict)
    synthesis_summary: str | None = None
    task_annotations: list[_AnnotationAnswer] = Field(default_factory=list)
    removed_tasks: list[_RemovedAnswer] = Field(default_factory=list)


class StepEvidence(BaseModel):
    similarity: dict[str, float] = Field(default_factory=dict)
    dependencies: list[PlanDependency] = Field(default_factory=list)
    cluster_ids: dict[str, int] = Field(default_factory=dict)
    successful_tools: int = 0


class PlanAssembler:
    """Builds a plan from whatever evidence the trace holds.

    Missing or failed tool outputs leave the matching evidence empty. A
    malformed final answer falls back to the step-derived plan, and a plan
    that still fails validation becomes an empty plan.
    """

    def assemble(
        self,
        task_pool: list[TaskRecord],
        steps: list[ReasoningStep],
        final_answer: Any = None,
        stored_edges: list[RelationshipRecord] | None = None,
    ) -> PrioritizedPlan:
        try:
            return self._assemble(task_pool, steps, final_answer, stored_edges or [])
        except (ValidationError, ValueError) as exc:
            logger.warning("plan_assembly event=fallback_empty reason=%s", exc)
            return PrioritizedPlan.empty(LIMITED_DATA_SUMMARY)

    def _assemble(
        self,
        task_pool: list[TaskRecord],
        steps: list[ReasoningStep],
        final_answer: Any,
        stored_edges: list[RelationshipRecord],
    ) -> PrioritizedPlan:
        pool_ids = [task.task_id for task in task_pool]
        known = set(pool_ids)
        evidence = collect_evidence(steps, known)
        for record in stored_edges:
            if record.source_task_id in known and record.target_task_id in known:
                evidence.dependencies.append(_plan_dependency(record.model_dump(), "stored"))
        dependencies = _dedupe(evidence.dependencies)

        answer = parse_final_answer(final_answer)
        removed = [
            RemovedTask(task_id=item.task_id, reason=item.reason)
            for item in (answer.removed_tasks if answer else [])
            if item.task_id in known
        ]
        removed_ids = {item.task_id for item in removed}
        if removed_ids >= known:
            removed, removed_ids = [], set()

        ranked = self._rank(pool_ids, evidence, answer, removed_ids)
        hours = {task.task_id: task.estimated_hours for task in task_pool if task.estimated_hours is not None}
        layout = layout_plan(ranked, dependencies, hours=hours)

        confidence, sources = _confidence(layout.ordered_task_ids, answer)
        annotations = [
            TaskAnnotation(task_id=item.task_id, reasoning=item.reasoning)
            for item in (answer.task_annotations if answer else [])
            if item.task_id in known and item.task_id not in removed_ids
        ]
        summary = (answer.synthesis_summary if answer else None) or _default_summary(
            evidence, len(layout.ordered_task_ids), len(layout.execution_waves), len(layout.dependencies)
        )
        return PrioritizedPlan(
            ordered_task_ids=layout.ordered_task_ids,
            execution_waves=layout.execution_waves,
            dependencies=layout.dependencies,
            confidence_scores=confidence,
            confidence_sources=sources,
            similarity_scores={
                task_id: score for task_id, score in evidence.similarity.items() if task_id not in removed_ids
            },
            synthesis_summary=summary,
            task_annotations=annotations,
            removed_tasks=removed,
            cluster_ids={
                task_id: cluster for task_id, cluster in evidence.cluster_ids.items() if task_id not in removed_ids
            },
        )

    @staticmethod
    def _rank(
        pool_ids: list[str],
        evidence: StepEvidence,
        answer: FinalAnswer | None,
        removed_ids: set[str],
    ) -> list[str]:
        position = {task_id: index for index, task_id in enumerate(pool_ids)}
        candidates = [task_id for task_id in pool_ids if task_id not in removed_ids]
        by_evidence = sorted(
            candidates,
            key=lambda task_id: (
                task_id not in evidence.similarity,
                -evidence.similarity.get(task_id, 0.0),
                position[task_id],
            ),
        )

        # cluster members follow the first-ranked member of their cluster
        grouped: list[str] = []
        emitted: set[str] = set()
        for task_id in by_evidence:
            if task_id in emitted:
                continue
            cluster = evidence.cluster_ids.get(task_id)
            members = (
                [member for member in by_evidence if evidence.cluster_ids.get(member) == cluster]
                if cluster is not None
                else [task_id]
            )
            for member in members:
                if member not in emitted:
                    grouped.append(member)
                    emitted.add(member)

        if answer is None or not answer.ordered_task_ids:
            return grouped
        head: list[str] = []
        for task_id in answer.ordered_task_ids:
            if task_id in position and task_id not in removed_ids and task_id not in head:
                head.append(task_id)
        seen = set(head)
        return head + [task_id for task_id in grouped if task_id not in seen]


def collect_evidence(steps: list[ReasoningStep], known: set[str]) -> StepEvidence:
    """Pull similarity, dependency and cluster evidence from successful tool steps."""
    evidence = StepEvidence()
    for step in steps:
        output = step.tool_output
        if step.status != "success" or not step.tool_name or not isinstance(output, dict):
            continue
        evidence.successful_tools += 1
        if step.tool_name == "semantic-search":
            for hit in output.get("tasks") or []:
                task_id = hit.get("task_id") if isinstance(hit, dict) else None
                if task_id in known:
                    score = float(hit.get("similarity", 0.0))
                    evidence.similarity[task_id] = max(score, evidence.similarity.get(task_id, score))
        elif step.tool_name in {"detect-dependencies", "query-task-graph"}:
            key = "dependencies" if step.tool_name == "detect-dependencies" else "relationships"
            for item in output.get(key) or []:
                if not isinstance(item, dict):
                    continue
                if item.get("source_task_id") in known and item.get("target_task_id") in known:
                    try:
                        evidence.dependencies.append(
                            _plan_dependency(item, item.get("detection_method") or "ai-inferred")
                        )
                    except ValidationError:
                        logger.info("plan_assembly event=dependency_ignored step=%d", step.step_number)
        elif step.tool_name == "cluster-by-similarity":
            for cluster in output.get("clusters") or []:
                if not isinstance(cluster, dict):
                    continue
                for task_id in cluster.get("task_ids") or []:
                    if task_id in known:
                        evidence.cluster_ids.setdefault(task_id, int(cluster.get("cluster_id", 0)))
    return evidence


def parse_final_answer(final_answer: Any) -> FinalAnswer | None:
    if final_answer is None:
        return None
    try:
        payload = extract_json_object(final_answer) if isinstance(final_answer, str) else final_answer
        return FinalAnswer.model_validate(payload)
    except (ExtractionFailedError, ValidationError) as exc:
        logger.warning("plan_assembly event=final_answer_malformed reason=%s", exc)
        return None


def build_execution_metadata(
    steps: list[ReasoningStep],
    *,
    thinking_time_ms: float,
    total_time_ms: float,
    termination: str,
) -> dict[str, Any]:
    tool_steps = [step for step in steps if step.tool_name]
    failed = [step for step in tool_steps if step.status == "failed"]
    error_count = len(failed)
    return {
        "steps_taken": len(steps),
        "tool_call_count": dict(Counter(step.tool_name for step in tool_steps)),
        "thinking_time_ms": round(thinking_time_ms, 2),
        "tool_execution_time_ms": round(sum(step.duration_ms for step in tool_steps), 2),
        "total_time_ms": round(total_time_ms, 2),
        "error_count": error_count,
        "success_rate": round((len(tool_steps) - error_count) / len(tool_steps), 4) if tool_steps else 1.0,
        "status_note": (
            "completed" if error_count == 0 else f"completed with {error_count} failed tool call(s)"
        ),
        "failed_tools": sorted({step.tool_name for step in failed if step.tool_name}),
        "termination": termination,
    }


def _confidence(
    ordered: list[str], answer: FinalAnswer | None
) -> tuple[dict[str, float], dict[str, str]]:
    asserted = answer.confidence_scores if answer else {}
    scores: dict[str, float] = {}
    sources: dict[str, str] = {}
    span = max(1, len(ordered) - 1)
    for index, task_id in enumerate(ordered):
        value = asserted.get(task_id)
        if isinstance(value, (int, float)) and 0.0 <= value <= 1.0:
            scores[task_id] = round(float(value), 2)
            sources[task_id] = "model"
        else:
            drop = (RANK_CONFIDENCE_TOP - RANK_CONFIDENCE_BOTTOM) * index / span
            scores[task_id] = round(RANK_CONFIDENCE_TOP - drop, 2)
            sources[task_id] = "rank"
    return scores, sources


def _default_summary(evidence: StepEvidence, task_count: int, wave_count: int, dependency_count: int) -> str:
    if evidence.successful_tools == 0:
        return LIMITED_DATA_SUMMARY
    return (
        f"Prioritized {task_count} tasks into {wave_count} wave(s) "
        f"respecting {dependency_count} dependency edge(s)."
    )


def _plan_dependency(item: dict[str, Any], detection_method: str) -> PlanDependency:
    return PlanDependency(
        source_task_id=item["source_task_id"],
        target_task_id=item["target_task_id"],
        relationship_type=item["relationship_type"],
        confidence=item.get("confidence_score", item.get("confidence", 0.5)),
        detection_method=detection_method,
    )


def _dedupe(dependencies: list[PlanDependency]) -> list[PlanDependency]:
    best: dict[tuple[str, str, str], PlanDependency] = {}
    for dependency in dependencies:
        current = best.get(dependency.key)
        if current is None or dependency.confidence > current.confidence:
            best[dependency.key] = dependency
    return list(best.values())
