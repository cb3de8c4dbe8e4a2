"""Storage interfaces for tasks, relationships, documents and sessions."""

from __future__ import annotations

from datetime import datetime
from typing import Any, Iterable, Protocol

from agent_planner.storage.models import (
    DocumentRecord,
    RelationshipRecord,
    SessionRecord,
    TaskRecord,
)


class PlannerStorage(Protocol):
    def migrate(self) -> None: ...

    def upsert_task(self, record: TaskRecord) -> TaskRecord: ...

    def get_task(self, task_id: str) -> TaskRecord | None: ...

    def get_tasks(self, task_ids: Iterable[str]) -> dict[str, TaskRecord]: ...

    def list_tasks(self) -> list[TaskRecord]: ...

    def delete_task(self, task_id: str) -> None: ...

    def vector_query(
        self, vector: list[float], *, threshold: float, limit: int
    ) -> list[tuple[TaskRecord, float]]: ...

    def list_relationships(self) -> list[RelationshipRecord]: ...

    def relationships_for(self, task_ids: Iterable[str]) -> list[RelationshipRecord]: ...

    def upsert_relationships(self, records: list[RelationshipRecord]) -> None: ...

    def delete_relationship(self, source_task_id: str, target_task_id: str, relationship_type: str) -> None: ...

    def queue_relationship_reviews(self, records: list[RelationshipRecord]) -> None: ...

    def list_relationship_reviews(self) -> list[RelationshipRecord]: ...

    def delete_relationship_review(self, source_task_id: str, target_task_id: str, relationship_type: str) -> None: ...

    def upsert_document(self, record: DocumentRecord) -> DocumentRecord: ...

    def get_document(self, document_id: str) -> DocumentRecord | None: ...

    def create_session(self, record: SessionRecord) -> SessionRecord: ...

    def update_session(self, session_id: str, **fields: Any) -> SessionRecord: ...

    def get_session(self, session_id: str) -> SessionRecord | None: ...

    def set_current_session(self, user_id: str, session_id: str) -> None: ...

    def get_current_session_id(self, user_id: str) -> str | None: ...

    def purge_expired_traces(self, now: datetime) -> int: ...
