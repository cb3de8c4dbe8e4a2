"""Gap detection over adjacent pairs of a finished plan."""

from __future__ import annotations

import hashlib
import logging
import time
from datetime import UTC, datetime, timedelta
from typing import Any
from pydantic import BaseModel, Field, computed_field

from agent_planner.errors import InvalidInputError, NotFoundError
from agent_planner.planning.graph_store import STRUCTURAL_TYPES, TaskGraphStore
from agent_planner.planning.vocabulary import skill_tags, stage_index
from agent_planner.storage.base import PlannerStorage
from agent_planner.storage.models import TaskRecord

logger = logging.getLogger(__name__)

INDICATORS = ("time_gap", "action_type_jump", "no_dependency", "skill_jump")


class Gap(BaseModel):
    gap_id: str
    predecessor_task_id: str
    successor_task_id: str
    confidence: float = Field(ge=0.0, le=1.0)
    indicators: dict[str, bool]
    detected_at: datetime

    @computed_field
    @property
    def indicator_tags(self) -> list[str]:
        return [name for name in INDICATORS if self.indicators.get(name)]


def stable_gap_id(predecessor_task_id: str, successor_task_id: str) -> str:
    """Deterministic id for an ordered (predecessor, successor) pair."""
    return hashlib.sha256(f"{predecessor_task_id}->{successor_task_id}".encode("utf-8")).hexdigest()[:32]


def indicator_confidence(indicator_count: int) -> float:
    if indicator_count < 2:
        return 0.0
    if indicator_count == 2:
        return 0.6
    if indicator_count == 3:
        return 0.75
    return 1.0


class GapDetector:
    def __init__(
        self,
        storage: PlannerStorage,
        graph_store: TaskGraphStore,
        *,
        time_gap_days: int = 7,
        max_gaps: int = 3,
    ) -> None:
        self.storage = storage
        self.graph_store = graph_store
        self.time_gap = timedelta(days=time_gap_days)
        self.max_gaps = max_gaps

    def detect(self, ordered_task_ids: list[str]) -> dict[str, Any]:
        started = time.perf_counter()
        if len(ordered_task_ids) < 2:
            raise InvalidInputError("At least two task ids are required to detect gaps")

        tasks = self.storage.get_tasks(ordered_task_ids)
        missing = [task_id for task_id in ordered_task_ids if task_id not in tasks]
        if missing:
            raise NotFoundError("Tasks not found", details={"missing_task_ids": missing})

        direct = {
            (record.source_task_id, record.target_task_id)
            for record in self.graph_store.relationships(ordered_task_ids)
            if record.relationship_type in STRUCTURAL_TYPES
        }

        gaps: list[Gap] = []
        skipped_for_cycle = 0
        for predecessor_id, successor_id in zip(ordered_task_ids, ordered_task_ids[1:]):
            predecessor = tasks[predecessor_id]
            successor = tasks[successor_id]
            indicators = self._indicators(predecessor, successor, direct)
            count = sum(indicators.values())
            if count < 2:
                continue
            if self.graph_store.has_path(successor_id, predecessor_id):
                skipped_for_cycle += 1
                logger.info(
                    "gap_detection event=skipped reason=reverse_path predecessor=%s successor=%s",
                    predecessor_id,
                    successor_id,
                )
                continue
            gaps.append(
                Gap(
                    gap_id=stable_gap_id(predecessor_id, successor_id),
                    predecessor_task_id=predecessor_id,
                    successor_task_id=successor_id,
                    confidence=indicator_confidence(count),
                    indicators=indicators,
                    detected_at=datetime.now(UTC),
                )
            )

        gaps.sort(key=lambda gap: (-gap.confidence, -len(gap.indicator_tags)))
        top = gaps[: self.max_gaps]
        duration_ms = round((time.perf_counter() - started) * 1000.0, 2)
        logger.info(
            "gap_detection event=completed pairs=%d gaps=%d duration_ms=%.2f",
            len(ordered_task_ids) - 1,
            len(top),
            duration_ms,
        )
        return {
            "gaps": top,
            "metadata": {
                "total_pairs_analyzed": len(ordered_task_ids) - 1,
                "gaps_detected": len(top),
                "skipped_for_cycle": skipped_for_cycle,
                "analysis_duration_ms": duration_ms,
            },
        }

    def _indicators(
        self,
        predecessor: TaskRecord,
        successor: TaskRecord,
        direct: set[tuple[str, str]],
    ) -> dict[str, bool]:
        time_gap = successor.created_at - predecessor.created_at > self.time_gap

        start = stage_index(predecessor.task_text)
        end = stage_index(successor.task_text)
        action_type_jump = start is not None and end is not None and abs(end - start) >= 2

        no_dependency = (predecessor.task_id, successor.task_id) not in direct

        predecessor_skills = skill_tags(predecessor.task_text)
        successor_skills = skill_tags(successor.task_text)
        skill_jump = bool(predecessor_skills and successor_skills) and predecessor_skills.isdisjoint(
            successor_skills
        )
        return {
            "time_gap": time_gap,
            "action_type_jump": action_type_jump,
            "no_dependency": no_dependency,
            "skill_jump": skill_jump,
        }
