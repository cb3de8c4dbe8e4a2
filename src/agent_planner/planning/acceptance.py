"""Acceptance of bridging tasks into the live graph and the session plan.

Acceptances for one user run under that user's graph lock, so two batches
cannot both pass the cycle check and jointly close a cycle.
"""

from __future__ import annotations

import logging
import re
from datetime import UTC, datetime
from typing import Any
from uuid import uuid4

from pydantic import BaseModel, ConfigDict, Field

from agent_planner.errors import (
    DuplicateTaskError,
    InvalidInputError,
    NotFoundError,
    StructuralConflictError,
)
from agent_planner.gaps.bridging import BridgingCandidate, BridgingTaskGenerator
from agent_planner.planning.coverage import compute_coverage
from agent_planner.planning.graph_store import CyclePolicy, EdgeMutationResult, TaskGraphStore
from agent_planner.planning.plan import IntegratedTask, PrioritizedPlan, integrate_bridging_tasks
from agent_planner.retrieval.similarity import SimilarityService
from agent_planner.storage.base import PlannerStorage
from agent_planner.storage.models import RelationshipRecord, TaskRecord

logger = logging.getLogger(__name__)

TEXT_BOUNDS = (10, 500)
HOURS_BOUNDS = (8, 160)
_NORMALIZE = re.compile(r"[^a-z0-9]+")


class AcceptedBridgingTask(BaseModel):
    model_config = ConfigDict(extra="forbid")

    task_text: str
    estimated_hours: int
    edited_task_text: str | None = None
    edited_estimated_hours: int | None = None
    predecessor_id: str = Field(min_length=1)
    successor_id: str = Field(min_length=1)
    confidence: float = Field(default=0.7, ge=0.0, le=1.0)
    gap_id: str | None = None
    candidate_id: str | None = None
    reasoning: str = ""

    @property
    def final_text(self) -> str:
        edited = (self.edited_task_text or "").strip()
        return edited or self.task_text.strip()

    @property
    def final_hours(self) -> int:
        return self.edited_estimated_hours if self.edited_estimated_hours is not None else self.estimated_hours

    @property
    def edited(self) -> bool:
        return self.final_text != self.task_text.strip()


class AcceptanceResult(BaseModel):
    inserted_task_ids: list[str]
    cycle_detected: bool
    coverage_percentage: int
    low_alignment_task_ids: list[str] = Field(default_factory=list)
    graph_mutation: dict[str, Any] = Field(default_factory=dict)
    plan: dict[str, Any] | None = None
    accepted_candidate_ids: list[str] = Field(default_factory=list)


class BridgingAcceptanceService:
    def __init__(
        self,
        storage: PlannerStorage,
        similarity: SimilarityService,
        graph_store: TaskGraphStore,
        *,
        duplicate_threshold: float = 0.9,
        coverage_alert_threshold: int = 70,
        bridging: BridgingTaskGenerator | None = None,
    ) -> None:
        self.storage = storage
        self.similarity = similarity
        self.graph_store = graph_store
        self.duplicate_threshold = duplicate_threshold
        self.coverage_alert_threshold = coverage_alert_threshold
        self.bridging = bridging

    def accept(
        self,
        user_id: str,
        session_id: str,
        items: list[AcceptedBridgingTask],
        *,
        policy: CyclePolicy | str | None = None,
    ) -> AcceptanceResult:
        with self.graph_store.lock_for(user_id):
            return self._accept_locked(user_id, session_id, items, policy)

    def _accept_locked(
        self,
        user_id: str,
        session_id: str,
        items: list[AcceptedBridgingTask],
        policy: CyclePolicy | str | None,
    ) -> AcceptanceResult:
        session = self.storage.get_session(session_id)
        if session is None or session.user_id != user_id:
            raise NotFoundError("Session not found", details={"session_id": session_id})
        if self.storage.get_current_session_id(user_id) != session_id:
            raise InvalidInputError(
                "Session has been superseded by a newer session", details={"session_id": session_id}
            )
        if session.status != "completed" or session.plan is None:
            raise InvalidInputError(
                "Session has no completed plan", details={"session_id": session_id, "status": session.status}
            )
        if not items:
            raise InvalidInputError("At least one bridging task is required")

        self._validate(items)
        candidates = self._resolve_candidates(items)
        vectors = [self._embed_unique(item) for item in items]

        now = datetime.now(UTC)
        created: list[TaskRecord] = []
        edges: list[RelationshipRecord] = []
        for item, vector in zip(items, vectors):
            record = TaskRecord(
                task_id=str(uuid4()),
                task_text=item.final_text,
                embedding=vector,
                source="bridging",
                variant_of_text=item.task_text.strip() if item.edited else None,
                estimated_hours=item.final_hours,
                created_at=now,
            )
            created.append(record)
            for source, target in ((item.predecessor_id, record.task_id), (record.task_id, item.successor_id)):
                edges.append(
                    RelationshipRecord(
                        source_task_id=source,
                        target_task_id=target,
                        relationship_type="prerequisite",
                        confidence_score=1.0,
                        detection_method="manual",
                        reasoning="Accepted bridging task",
                        created_at=now,
                    )
                )

        for record in created:
            self.storage.upsert_task(record)
        mutation: EdgeMutationResult | None = None
        try:
            mutation = self.graph_store.accept_edges(edges, user_id=user_id, policy=policy)
            if mutation.rejected:
                raise StructuralConflictError(
                    "Accepting these tasks would create a dependency cycle",
                    details=mutation.summary(),
                )

            plan = PrioritizedPlan.model_validate(session.plan)
            plan = integrate_bridging_tasks(
                plan,
                [
                    IntegratedTask(
                        task_id=record.task_id,
                        predecessor_id=item.predecessor_id,
                        successor_id=item.successor_id,
                        task_text=record.task_text,
                        estimated_hours=item.final_hours,
                        confidence=item.confidence,
                        reasoning=item.reasoning,
                    )
                    for item, record in zip(items, created)
                ],
            )
            coverage = compute_coverage(
                self.similarity.embedder,
                self.storage,
                str(session.goal.get("outcome_text") or ""),
                plan.ordered_task_ids,
                alert_threshold=self.coverage_alert_threshold,
            )
            plan_payload = plan.model_dump(mode="json")
            self.storage.update_session(
                session_id,
                plan=plan_payload,
                task_ids=[*session.task_ids, *(record.task_id for record in created)],
            )
        except Exception:
            if mutation is not None and not mutation.rejected:
                self.graph_store.revert(mutation, user_id=user_id)
            self._rollback(created)
            raise

        accepted_candidate_ids = self._mark_accepted(items, candidates)

        logger.info(
            "acceptance event=completed user_id=%s session_id=%s inserted=%d cycle_detected=%s coverage=%d",
            user_id,
            session_id,
            len(created),
            mutation.cycle_detected,
            coverage["coverage_percentage"],
        )
        return AcceptanceResult(
            inserted_task_ids=[record.task_id for record in created],
            cycle_detected=mutation.cycle_detected,
            coverage_percentage=coverage["coverage_percentage"],
            low_alignment_task_ids=coverage["low_alignment_task_ids"],
            graph_mutation=mutation.summary(),
            plan=plan_payload,
            accepted_candidate_ids=accepted_candidate_ids,
        )

    def _validate(self, items: list[AcceptedBridgingTask]) -> None:
        referenced = {task_id for item in items for task_id in (item.predecessor_id, item.successor_id)}
        existing = self.storage.get_tasks(referenced)
        missing = sorted(referenced - set(existing))
        if missing:
            raise NotFoundError("Predecessor or successor task not found", details={"missing_task_ids": missing})

        seen: set[str] = set()
        for index, item in enumerate(items):
            text = item.final_text
            if not TEXT_BOUNDS[0] <= len(text) <= TEXT_BOUNDS[1]:
                raise InvalidInputError(
                    f"Task text must be {TEXT_BOUNDS[0]}-{TEXT_BOUNDS[1]} characters",
                    details={"index": index, "length": len(text)},
                )
            if not HOURS_BOUNDS[0] <= item.final_hours <= HOURS_BOUNDS[1]:
                raise InvalidInputError(
                    f"Estimated hours must be {HOURS_BOUNDS[0]}-{HOURS_BOUNDS[1]}",
                    details={"index": index, "estimated_hours": item.final_hours},
                )
            if item.predecessor_id == item.successor_id:
                raise InvalidInputError("Predecessor and successor must differ", details={"index": index})
            key = _NORMALIZE.sub(" ", text.lower()).strip()
            if key in seen:
                raise DuplicateTaskError("Bridging tasks in one batch must be distinct", details={"index": index})
            seen.add(key)

    def _embed_unique(self, item: AcceptedBridgingTask) -> list[float]:
        vector = self.similarity.embed(item.final_text)
        result = self.similarity.search(vector, threshold=self.duplicate_threshold, limit=3, relax=False)
        if result.hits:
            raise DuplicateTaskError(
                "A near-identical task already exists",
                details={
                    "task_text": item.final_text,
                    "matches": [hit.model_dump() for hit in result.hits],
                },
            )
        return vector

    def _rollback(self, created: list[TaskRecord]) -> None:
        for record in created:
            self.storage.delete_task(record.task_id)
        logger.warning("acceptance event=rolled_back tasks=%d", len(created))

    def _resolve_candidates(self, items: list[AcceptedBridgingTask]) -> list[BridgingCandidate | None]:
        resolved: list[BridgingCandidate | None] = []
        for index, item in enumerate(items):
            if item.gap_id is None:
                if item.candidate_id is not None:
                    raise InvalidInputError("candidate_id requires gap_id", details={"index": index})
                resolved.append(None)
                continue
            if self.bridging is None:
                resolved.append(None)
                continue
            gap = self.bridging.get_analysis(item.gap_id).gap
            if (gap.predecessor_task_id, gap.successor_task_id) != (item.predecessor_id, item.successor_id):
                raise InvalidInputError(
                    "Bridging task does not match its gap",
                    details={
                        "index": index,
                        "gap_id": item.gap_id,
                        "predecessor_id": gap.predecessor_task_id,
                        "successor_id": gap.successor_task_id,
                    },
                )
            candidate = self.bridging.find_candidate(
                item.gap_id, candidate_id=item.candidate_id, task_text=item.task_text
            )
            if candidate is not None and candidate.status != "proposed":
                raise InvalidInputError(
                    f"Bridging candidate is already {candidate.status}",
                    details={"index": index, "gap_id": item.gap_id, "candidate_id": candidate.candidate_id},
                )
            resolved.append(candidate)
        return resolved

    def _mark_accepted(
        self,
        items: list[AcceptedBridgingTask],
        candidates: list[BridgingCandidate | None],
    ) -> list[str]:
        accepted: list[str] = []
        if self.bridging is None:
            return accepted
        for item, candidate in zip(items, candidates):
            if candidate is None or item.gap_id is None:
                continue
            try:
                self.bridging.set_candidate_status(item.gap_id, candidate.candidate_id, "accepted")
            except (InvalidInputError, NotFoundError) as exc:
                logger.warning(
                    "acceptance event=candidate_not_marked gap_id=%s candidate_id=%s error=%s",
                    item.gap_id,
                    candidate.candidate_id,
                    exc,
                )
                continue
            accepted.append(candidate.candidate_id)
        return accepted
