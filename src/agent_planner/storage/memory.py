"""In-memory storage backend for tests and local runs."""

from __future__ import annotations

import threading
from datetime import UTC, datetime
from typing import Any, Iterable

import numpy as np

from agent_planner.storage.models import (
    DocumentRecord,
    RelationshipRecord,
    SessionRecord,
    TaskRecord,
)


class InMemoryPlannerStorage:
    """Dictionary-backed implementation of ``PlannerStorage``."""

    def __init__(self) -> None:
        self._lock = threading.RLock()
        self._tasks: dict[str, TaskRecord] = {}
        self._relationships: dict[tuple[str, str, str], RelationshipRecord] = {}
        self._documents: dict[str, DocumentRecord] = {}
        self._sessions: dict[str, SessionRecord] = {}
        self._current_sessions: dict[str, str] = {}
        self._reviews: dict[tuple[str, str, str], RelationshipRecord] = {}

    def migrate(self) -> None:
        return None

    def upsert_task(self, record: TaskRecord) -> TaskRecord:
        with self._lock:
            self._tasks[record.task_id] = record
        return record

    def get_task(self, task_id: str) -> TaskRecord | None:
        with self._lock:
            return self._tasks.get(task_id)

    def get_tasks(self, task_ids: Iterable[str]) -> dict[str, TaskRecord]:
        with self._lock:
            return {task_id: self._tasks[task_id] for task_id in task_ids if task_id in self._tasks}

    def list_tasks(self) -> list[TaskRecord]:
        with self._lock:
            return sorted(self._tasks.values(), key=lambda item: (item.created_at, item.task_id))

    def delete_task(self, task_id: str) -> None:
        with self._lock:
            self._tasks.pop(task_id, None)
            for key in [key for key in self._relationships if task_id in key[:2]]:
                del self._relationships[key]
            for key in [key for key in self._reviews if task_id in key[:2]]:
                del self._reviews[key]

    def vector_query(
        self, vector: list[float], *, threshold: float, limit: int
    ) -> list[tuple[TaskRecord, float]]:
        with self._lock:
            candidates = [record for record in self._tasks.values() if record.embedding]
        if not candidates:
            return []

        query = np.asarray(vector, dtype=float)
        query_norm = np.linalg.norm(query)
        if query_norm == 0:
            return []
        matrix = np.asarray([record.embedding for record in candidates], dtype=float)
        norms = np.linalg.norm(matrix, axis=1)
        norms[norms == 0] = 1.0
        similarities = (matrix @ query) / (norms * query_norm)

        hits = [
            (record, round(float(score), 6))
            for record, score in zip(candidates, similarities)
            if float(score) >= threshold
        ]
        hits.sort(key=lambda item: (-item[1], item[0].task_id))
        return hits[:limit]

    def list_relationships(self) -> list[RelationshipRecord]:
        with self._lock:
            return list(self._relationships.values())

    def relationships_for(self, task_ids: Iterable[str]) -> list[RelationshipRecord]:
        wanted = set(task_ids)
        with self._lock:
            return [
                record
                for record in self._relationships.values()
                if record.source_task_id in wanted or record.target_task_id in wanted
            ]

    def upsert_relationships(self, records: list[RelationshipRecord]) -> None:
        with self._lock:
            for record in records:
                self._relationships[record.key] = record

    def delete_relationship(self, source_task_id: str, target_task_id: str, relationship_type: str) -> None:
        with self._lock:
            self._relationships.pop((source_task_id, target_task_id, relationship_type), None)

    def queue_relationship_reviews(self, records: list[RelationshipRecord]) -> None:
        with self._lock:
            for record in records:
                self._reviews[record.key] = record

    def list_relationship_reviews(self) -> list[RelationshipRecord]:
        with self._lock:
            return sorted(self._reviews.values(), key=lambda record: (record.created_at, record.key))

    def delete_relationship_review(self, source_task_id: str, target_task_id: str, relationship_type: str) -> None:
        with self._lock:
            self._reviews.pop((source_task_id, target_task_id, relationship_type), None)

    def upsert_document(self, record: DocumentRecord) -> DocumentRecord:
        with self._lock:
            self._documents[record.document_id] = record
        return record

    def get_document(self, document_id: str) -> DocumentRecord | None:
        with self._lock:
            return self._documents.get(document_id)

    def create_session(self, record: SessionRecord) -> SessionRecord:
        with self._lock:
            self._sessions[record.session_id] = record
        return record

    def update_session(self, session_id: str, **fields: Any) -> SessionRecord:
        with self._lock:
            current = self._sessions.get(session_id)
            if current is None:
                raise KeyError(f"Session {session_id} does not exist")
            updated = current.model_copy(update={**fields, "updated_at": datetime.now(UTC)})
            self._sessions[session_id] = updated
            return updated

    def get_session(self, session_id: str) -> SessionRecord | None:
        with self._lock:
            return self._sessions.get(session_id)

    def set_current_session(self, user_id: str, session_id: str) -> None:
        with self._lock:
            self._current_sessions[user_id] = session_id

    def get_current_session_id(self, user_id: str) -> str | None:
        with self._lock:
            return self._current_sessions.get(user_id)

    def purge_expired_traces(self, now: datetime) -> int:
        purged = 0
        with self._lock:
            for session_id, record in list(self._sessions.items()):
                if record.trace_purged or record.trace_expires_at > now:
                    continue
                self._sessions[session_id] = record.model_copy(
                    update={"steps": None, "trace_purged": True, "updated_at": now}
                )
                purged += 1
        return purged
