"""Task Graph Store: sole owner of task-relationship edges.

Every write goes through :meth:`TaskGraphStore.accept_edges`, which holds a
per-user lock while it runs a full-graph Kahn check and applies the configured
cycle policy.
"""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Iterable

from agent_planner.errors import NotFoundError, StructuralConflictError
from agent_planner.planning.cycles import Edge, edges_on_cycles, has_path, kahn_check
from agent_planner.storage.base import PlannerStorage
from agent_planner.storage.models import RelationshipRecord

logger = logging.getLogger(__name__)

STRUCTURAL_TYPES = frozenset({"prerequisite", "blocks"})


class CyclePolicy(str, Enum):
    REPORT = "report"
    REJECT = "reject"
    BREAK_LOWEST_CONFIDENCE = "break_lowest_confidence"
    FLAG_FOR_REVIEW = "flag_for_review"


@dataclass
class EdgeMutationResult:
    policy: CyclePolicy
    proposed: list[RelationshipRecord] = field(default_factory=list)
    inserted: list[RelationshipRecord] = field(default_factory=list)
    skipped: list[dict[str, Any]] = field(default_factory=list)
    removed: list[RelationshipRecord] = field(default_factory=list)
    flagged: list[RelationshipRecord] = field(default_factory=list)
    cycle_detected: bool = False
    rejected: bool = False

    def summary(self) -> dict[str, Any]:
        return {
            "policy": self.policy.value,
            "cycle_detected": self.cycle_detected,
            "rejected": self.rejected,
            "inserted_count": len(self.inserted),
            "skipped": self.skipped,
            "removed_edges": [_edge_payload(record) for record in self.removed],
            "flagged_edges": [_edge_payload(record) for record in self.flagged],
        }


class TaskGraphStore:
    def __init__(self, storage: PlannerStorage, *, policy: CyclePolicy | str = CyclePolicy.REPORT) -> None:
        self.storage = storage
        self.policy = CyclePolicy(policy)
        self._locks: dict[str, threading.RLock] = {}
        self._locks_guard = threading.Lock()

    def lock_for(self, user_id: str) -> threading.RLock:
        with self._locks_guard:
            return self._locks.setdefault(user_id, threading.RLock())

    def relationships(
        self,
        task_ids: Iterable[str] | None = None,
        *,
        relationship_type: str = "all",
    ) -> list[RelationshipRecord]:
        records = (
            self.storage.list_relationships()
            if task_ids is None
            else self.storage.relationships_for(task_ids)
        )
        if relationship_type != "all":
            records = [record for record in records if record.relationship_type == relationship_type]
        return sorted(records, key=lambda record: record.key)

    def structural_edges(self) -> list[Edge]:
        return [
            (record.source_task_id, record.target_task_id)
            for record in self.storage.list_relationships()
            if record.relationship_type in STRUCTURAL_TYPES
        ]

    def has_path(self, source: str, target: str) -> bool:
        return has_path(self.structural_edges(), source, target)

    def review_queue(self) -> list[RelationshipRecord]:
        return self.storage.list_relationship_reviews()

    def accept_edges(
        self,
        records: list[RelationshipRecord],
        *,
        user_id: str,
        policy: CyclePolicy | str | None = None,
    ) -> EdgeMutationResult:
        with self.lock_for(user_id):
            return self._accept_locked(records, CyclePolicy(policy or self.policy))

    def remove_edges(self, records: list[RelationshipRecord], *, user_id: str) -> None:
        with self.lock_for(user_id):
            for record in records:
                self.storage.delete_relationship(*record.key)

    def revert(self, result: EdgeMutationResult, *, user_id: str) -> None:
        """Undo an applied mutation: drop what it inserted or queued, restore what it broke."""
        proposed_keys = {record.key for record in result.proposed}
        with self.lock_for(user_id):
            for record in result.inserted:
                self.storage.delete_relationship(*record.key)
            for record in result.flagged:
                self.storage.delete_relationship_review(*record.key)
            restored = [record for record in result.removed if record.key not in proposed_keys]
            self.storage.upsert_relationships(restored)
        logger.warning(
            "graph_store event=reverted inserted=%d flagged=%d restored=%d",
            len(result.inserted),
            len(result.flagged),
            len(restored),
        )

    def resolve_review(
        self,
        key: tuple[str, str, str],
        *,
        approve: bool,
        user_id: str,
    ) -> EdgeMutationResult | None:
        """Approve a flagged edge into the graph, or dismiss it.

        Approval runs the edge through the cycle check again under the
        ``reject`` policy, so an edge that still closes a cycle stays queued.
        """
        with self.lock_for(user_id):
            queued = {record.key: record for record in self.storage.list_relationship_reviews()}
            record = queued.get(key)
            if record is None:
                raise NotFoundError(
                    "Relationship is not awaiting review",
                    details=dict(zip(("source_task_id", "target_task_id", "relationship_type"), key)),
                )
            if not approve:
                self.storage.delete_relationship_review(*key)
                logger.info("graph_store event=review_dismissed source=%s target=%s", key[0], key[1])
                return None
            result = self._accept_locked([record], CyclePolicy.REJECT)
            if result.rejected:
                raise StructuralConflictError(
                    "Approving this relationship would still create a dependency cycle",
                    details=result.summary(),
                )
            self.storage.delete_relationship_review(*key)
            logger.info("graph_store event=review_approved source=%s target=%s", key[0], key[1])
            return result

    def _accept_locked(self, records: list[RelationshipRecord], policy: CyclePolicy) -> EdgeMutationResult:
        result = EdgeMutationResult(policy=policy)
        existing = {record.key: record for record in self.storage.list_relationships()}
        known_tasks = self.storage.get_tasks(
            {task_id for record in records for task_id in (record.source_task_id, record.target_task_id)}
        )

        candidates: dict[tuple[str, str, str], RelationshipRecord] = {}
        for record in records:
            reason = None
            if record.source_task_id == record.target_task_id:
                reason = "self_loop"
            elif record.source_task_id not in known_tasks or record.target_task_id not in known_tasks:
                reason = "unknown_task"
            elif record.key in existing:
                reason = "duplicate"
            if reason is not None:
                result.skipped.append({**_edge_payload(record), "reason": reason})
                continue
            current = candidates.get(record.key)
            if current is None or record.confidence_score > current.confidence_score:
                candidates[record.key] = record

        proposed = list(candidates.values())
        result.proposed = proposed
        if not proposed:
            return result

        structural = [
            (record.source_task_id, record.target_task_id)
            for record in [*existing.values(), *proposed]
            if record.relationship_type in STRUCTURAL_TYPES
        ]
        check = kahn_check(structural)
        if not check.cycle_detected:
            self.storage.upsert_relationships(proposed)
            result.inserted = proposed
            return result

        result.cycle_detected = True
        logger.warning(
            "graph_store event=cycle_detected policy=%s proposed=%d residual_nodes=%d",
            policy.value,
            len(proposed),
            len(check.residual_nodes),
        )

        if policy is CyclePolicy.REJECT:
            result.rejected = True
            return result

        if policy is CyclePolicy.FLAG_FOR_REVIEW:
            cyclic = edges_on_cycles(structural)
            for record in proposed:
                edge = (record.source_task_id, record.target_task_id)
                if record.relationship_type in STRUCTURAL_TYPES and edge in cyclic:
                    result.flagged.append(record)
                else:
                    result.inserted.append(record)
            self.storage.upsert_relationships(result.inserted)
            self.storage.queue_relationship_reviews(result.flagged)
            return result

        self.storage.upsert_relationships(proposed)
        result.inserted = proposed
        if policy is CyclePolicy.BREAK_LOWEST_CONFIDENCE:
            result.removed = self._break_cycles({record.key for record in proposed})
            removed_keys = {record.key for record in result.removed}
            result.inserted = [record for record in proposed if record.key not in removed_keys]
        return result

    def _break_cycles(self, proposed_keys: set[tuple[str, str, str]]) -> list[RelationshipRecord]:
        removed: list[RelationshipRecord] = []
        while True:
            structural = [
                record
                for record in self.storage.list_relationships()
                if record.relationship_type in STRUCTURAL_TYPES
            ]
            cyclic = edges_on_cycles((record.source_task_id, record.target_task_id) for record in structural)
            on_cycle = [
                record for record in structural if (record.source_task_id, record.target_task_id) in cyclic
            ]
            if not on_cycle:
                return removed
            # lowest confidence first; newly proposed edges lose ties
            victim = min(
                on_cycle,
                key=lambda record: (record.confidence_score, record.key not in proposed_keys, record.key),
            )
            self.storage.delete_relationship(*victim.key)
            removed.append(victim)
            logger.warning(
                "graph_store event=edge_removed source=%s target=%s confidence=%.2f",
                victim.source_task_id,
                victim.target_task_id,
                victim.confidence_score,
            )


def _edge_payload(record: RelationshipRecord) -> dict[str, Any]:
    return {
        "source_task_id": record.source_task_id,
        "target_task_id": record.target_task_id,
        "relationship_type": record.relationship_type,
        "confidence_score": record.confidence_score,
        "detection_method": record.detection_method,
    }
