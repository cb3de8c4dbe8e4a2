"""Source-document context for tasks, split into fixed-size chunks."""

from __future__ import annotations

from typing import Any

from agent_planner.errors import DocumentDeletedError, InvalidInputError, NotFoundError
from agent_planner.storage.base import PlannerStorage


class DocumentContextService:
    def __init__(self, storage: PlannerStorage, *, chunk_chars: int = 4000) -> None:
        self.storage = storage
        self.chunk_chars = chunk_chars

    def get(self, task_ids: list[str], *, chunk_number: int | None = None) -> dict[str, Any]:
        tasks = self.storage.get_tasks(task_ids)
        if not tasks:
            raise NotFoundError("No tasks found for document context", details={"task_ids": task_ids})

        by_document: dict[str, list[dict[str, str]]] = {}
        for task_id in task_ids:
            task = tasks.get(task_id)
            if task is None or not task.document_id:
                continue
            by_document.setdefault(task.document_id, []).append(
                {"task_id": task.task_id, "task_text": task.task_text}
            )

        documents: list[dict[str, Any]] = []
        unavailable: list[str] = []
        for document_id, document_tasks in by_document.items():
            document = self.storage.get_document(document_id)
            if document is None or document.deleted:
                unavailable.append(document_id)
                continue
            chunks = split_markdown(document.markdown, self.chunk_chars)
            selected = chunk_number or 1
            if selected > len(chunks):
                raise InvalidInputError(
                    "chunk_number is out of range",
                    details={"document_id": document_id, "total_chunks": len(chunks)},
                )
            documents.append(
                {
                    "document_id": document_id,
                    "filename": document.filename,
                    "markdown": chunks[selected - 1],
                    "tasks": document_tasks,
                    "chunk_number": selected,
                    "total_chunks": len(chunks),
                }
            )

        if by_document and not documents:
            raise DocumentDeletedError(
                "Source documents are no longer available",
                details={"document_ids": unavailable},
            )
        return {"documents": documents, "unavailable_document_ids": unavailable}


def split_markdown(markdown: str, chunk_chars: int) -> list[str]:
    """Greedy paragraph packing; oversize paragraphs are hard-split."""
    if not markdown:
        return [""]
    chunks: list[str] = []
    current = ""
    for paragraph in markdown.split("\n\n"):
        while len(paragraph) > chunk_chars:
            if current:
                chunks.append(current)
                current = ""
            chunks.append(paragraph[:chunk_chars])
            paragraph = paragraph[chunk_chars:]
        candidate = f"{current}\n\n{paragraph}" if current else paragraph
        if len(candidate) > chunk_chars:
            chunks.append(current)
            current = paragraph
        else:
            current = candidate
    if current or not chunks:
        chunks.append(current)
    return chunks
