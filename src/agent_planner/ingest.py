"""Registration of extracted tasks and source documents."""

from __future__ import annotations

import hashlib
import logging
from datetime import UTC, datetime
from typing import Any

from pydantic import BaseModel, ConfigDict, Field

from agent_planner.errors import InvalidInputError
from agent_planner.retrieval.embeddings import Embedder
from agent_planner.storage.base import PlannerStorage
from agent_planner.storage.models import DocumentRecord, TaskRecord

logger = logging.getLogger(__name__)


class TaskInput(BaseModel):
    model_config = ConfigDict(extra="forbid")

    task_id: str | None = Field(default=None, min_length=1)
    task_text: str = Field(min_length=1, max_length=2000)
    document_id: str | None = None
    manual_override: dict[str, Any] | None = None
    estimated_hours: int | None = Field(default=None, ge=1, le=160)


def stable_task_id(task_text: str, document_id: str | None) -> str:
    return hashlib.sha256(f"{task_text}||{document_id or ''}".encode("utf-8")).hexdigest()[:32]


def register_tasks(
    storage: PlannerStorage,
    embedder: Embedder,
    tasks: list[TaskInput],
) -> list[TaskRecord]:
    """Store tasks with embeddings. Re-registering an id with different text is rejected."""
    registered: list[TaskRecord] = []
    for item in tasks:
        text = item.task_text.strip()
        task_id = item.task_id or stable_task_id(text, item.document_id)
        existing = storage.get_task(task_id)
        if existing is not None and existing.task_text != text:
            raise InvalidInputError(
                "Task text is immutable once embedded; register the edit as a new task",
                details={"task_id": task_id},
            )
        embedding = existing.embedding if existing is not None and existing.has_embedding else embedder.embed(text)
        record = TaskRecord(
            task_id=task_id,
            task_text=text,
            document_id=item.document_id,
            manual_override=item.manual_override,
            embedding=embedding,
            estimated_hours=item.estimated_hours,
            created_at=existing.created_at if existing is not None else datetime.now(UTC),
        )
        registered.append(storage.upsert_task(record))
    logger.info("ingest event=tasks_registered count=%d", len(registered))
    return registered


def register_document(storage: PlannerStorage, *, document_id: str, filename: str, markdown: str) -> DocumentRecord:
    return storage.upsert_document(DocumentRecord(document_id=document_id, filename=filename, markdown=markdown))
