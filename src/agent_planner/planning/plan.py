"""Prioritized Task Plan model and dependency-respecting wave layout."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Literal

from pydantic import BaseModel, Field, model_validator

from agent_planner.planning.cycles import edges_on_cycles, kahn_check, topological_waves
from agent_planner.planning.graph_store import STRUCTURAL_TYPES

logger = logging.getLogger(__name__)

ConfidenceSource = Literal["model", "rank", "acceptance"]


class ExecutionWave(BaseModel):
    wave_number: int = Field(ge=1)
    task_ids: list[str]
    parallel_execution: bool
    estimated_duration_hours: float | None = Field(default=None, ge=0)


class PlanDependency(BaseModel):
    source_task_id: str
    target_task_id: str
    relationship_type: Literal["prerequisite", "blocks", "related"]
    confidence: float = Field(ge=0.0, le=1.0)
    detection_method: Literal["ai-inferred", "stored", "manual"]

    @property
    def key(self) -> tuple[str, str, str]:
        return (self.source_task_id, self.target_task_id, self.relationship_type)


class TaskAnnotation(BaseModel):
    task_id: str
    reasoning: str = ""
    task_text: str | None = None
    estimated_hours: int | None = None
    source: Literal["extracted", "bridging"] = "extracted"


class RemovedTask(BaseModel):
    task_id: str
    reason: str


class PrioritizedPlan(BaseModel):
    """Total order, wave partition and labeled scores for one session.

    ``confidence_scores`` is plan confidence; ``confidence_sources`` says
    whether each value was asserted by the model, derived from rank or set at
    acceptance. ``similarity_scores`` comes from semantic search only.
    """

    ordered_task_ids: list[str] = Field(default_factory=list)
    execution_waves: list[ExecutionWave] = Field(default_factory=list)
    dependencies: list[PlanDependency] = Field(default_factory=list)
    confidence_scores: dict[str, float] = Field(default_factory=dict)
    confidence_sources: dict[str, ConfidenceSource] = Field(default_factory=dict)
    similarity_scores: dict[str, float] = Field(default_factory=dict)
    synthesis_summary: str = ""
    task_annotations: list[TaskAnnotation] = Field(default_factory=list)
    removed_tasks: list[RemovedTask] = Field(default_factory=list)
    cluster_ids: dict[str, int] = Field(default_factory=dict)

    @model_validator(mode="after")
    def _check_structure(self) -> "PrioritizedPlan":
        if len(set(self.ordered_task_ids)) != len(self.ordered_task_ids):
            raise ValueError("ordered_task_ids contains duplicates")
        ordered = set(self.ordered_task_ids)
        for expected, wave in enumerate(self.execution_waves, start=1):
            if wave.wave_number != expected:
                raise ValueError(f"wave numbers must run 1..W without gaps, found {wave.wave_number}")
            stray = [task_id for task_id in wave.task_ids if task_id not in ordered]
            if stray:
                raise ValueError(f"wave {wave.wave_number} references ids outside the order: {stray}")
        for task_id, score in self.confidence_scores.items():
            if not 0.0 <= score <= 1.0:
                raise ValueError(f"confidence for {task_id} is outside [0, 1]")
        return self

    @classmethod
    def empty(cls, summary: str) -> "PrioritizedPlan":
        return cls(synthesis_summary=summary)

    def wave_of(self, task_id: str) -> int | None:
        for wave in self.execution_waves:
            if task_id in wave.task_ids:
                return wave.wave_number
        return None


@dataclass
class PlanLayout:
    ordered_task_ids: list[str]
    execution_waves: list[ExecutionWave]
    dependencies: list[PlanDependency]
    dropped: list[PlanDependency] = field(default_factory=list)


def layout_plan(
    order: list[str],
    dependencies: list[PlanDependency],
    *,
    hours: dict[str, int] | None = None,
) -> PlanLayout:
    """Layer ``order`` into waves that respect every structural dependency.

    Dependencies outside ``order`` are discarded. When the structural edges
    among the planned tasks are cyclic, the lowest-confidence edge on a cycle
    is dropped until they are not; manual edges are dropped last.
    """
    planned = set(order)
    kept = [
        dependency
        for dependency in dependencies
        if dependency.source_task_id in planned
        and dependency.target_task_id in planned
        and dependency.source_task_id != dependency.target_task_id
    ]
    dropped: list[PlanDependency] = []
    while True:
        structural = [
            (dependency.source_task_id, dependency.target_task_id)
            for dependency in kept
            if dependency.relationship_type in STRUCTURAL_TYPES
        ]
        if not kahn_check(structural).cycle_detected:
            break
        cyclic = edges_on_cycles(structural)
        victim = min(
            (
                dependency
                for dependency in kept
                if dependency.relationship_type in STRUCTURAL_TYPES
                and (dependency.source_task_id, dependency.target_task_id) in cyclic
            ),
            key=lambda dependency: (
                dependency.detection_method == "manual",
                dependency.confidence,
                dependency.key,
            ),
        )
        kept.remove(victim)
        dropped.append(victim)
        logger.warning(
            "plan_layout event=edge_dropped source=%s target=%s confidence=%.2f",
            victim.source_task_id,
            victim.target_task_id,
            victim.confidence,
        )

    layers = topological_waves(order, structural)
    hours = hours or {}
    waves: list[ExecutionWave] = []
    for number, task_ids in enumerate(layers, start=1):
        known = [hours[task_id] for task_id in task_ids if hours.get(task_id) is not None]
        waves.append(
            ExecutionWave(
                wave_number=number,
                task_ids=task_ids,
                parallel_execution=len(task_ids) > 1,
                estimated_duration_hours=float(max(known)) if known else None,
            )
        )
    return PlanLayout(
        ordered_task_ids=[task_id for layer in layers for task_id in layer],
        execution_waves=waves,
        dependencies=sorted(kept, key=lambda dependency: dependency.key),
        dropped=dropped,
    )


@dataclass(frozen=True)
class IntegratedTask:
    task_id: str
    predecessor_id: str
    successor_id: str
    task_text: str
    estimated_hours: int
    confidence: float
    reasoning: str = ""


def integrate_bridging_tasks(plan: PrioritizedPlan, items: list[IntegratedTask]) -> PrioritizedPlan:
    """Return a copy of ``plan`` with accepted bridging tasks placed between their neighbours."""
    order = list(plan.ordered_task_ids)
    dependencies = list(plan.dependencies)
    confidence = dict(plan.confidence_scores)
    sources = dict(plan.confidence_sources)
    annotations = list(plan.task_annotations)
    hours = {
        annotation.task_id: annotation.estimated_hours
        for annotation in annotations
        if annotation.estimated_hours is not None
    }

    for item in items:
        if item.successor_id in order:
            order.insert(order.index(item.successor_id), item.task_id)
        elif item.predecessor_id in order:
            order.insert(order.index(item.predecessor_id) + 1, item.task_id)
        else:
            order.append(item.task_id)
        for source, target in ((item.predecessor_id, item.task_id), (item.task_id, item.successor_id)):
            dependencies.append(
                PlanDependency(
                    source_task_id=source,
                    target_task_id=target,
                    relationship_type="prerequisite",
                    confidence=1.0,
                    detection_method="manual",
                )
            )
        confidence[item.task_id] = item.confidence
        sources[item.task_id] = "acceptance"
        hours[item.task_id] = item.estimated_hours
        annotations.append(
            TaskAnnotation(
                task_id=item.task_id,
                reasoning=item.reasoning or "Accepted bridging task.",
                task_text=item.task_text,
                estimated_hours=item.estimated_hours,
                source="bridging",
            )
        )

    layout = layout_plan(order, dependencies, hours=hours)
    return plan.model_copy(
        update={
            "ordered_task_ids": layout.ordered_task_ids,
            "execution_waves": layout.execution_waves,
            "dependencies": layout.dependencies,
            "confidence_scores": confidence,
            "confidence_sources": sources,
            "task_annotations": annotations,
        }
    )
