"""Dependency Analyzer: infer relationships among a task batch."""

from __future__ import annotations

import logging
from datetime import UTC, datetime
from typing import Any, Callable, Literal

from pydantic import BaseModel, Field, ValidationError

from agent_planner.errors import (
    ExtractionFailedError,
    InvalidInputError,
    NotFoundError,
)
from agent_planner.planning.graph_store import TaskGraphStore
from agent_planner.storage.base import PlannerStorage
from agent_planner.storage.models import RelationshipRecord, TaskRecord

logger = logging.getLogger(__name__)

MIN_BATCH = 2
MAX_CONTEXT_CHARS = 6000

DependencyExtractor = Callable[..., list[dict[str, Any]]]


class ExtractedDependency(BaseModel):
    source_task_id: str = Field(min_length=1)
    target_task_id: str = Field(min_length=1)
    relationship_type: Literal["prerequisite", "blocks", "related"]
    confidence_score: float = Field(ge=0.0, le=1.0)
    reasoning: str = ""


class DependencyAnalyzer:
    """Runs an extraction routine over task text and proposes the edges it finds.

    ``extractor`` is called as ``extractor(tasks, document_context=..., strict=...)``
    and returns raw dependency dicts. A malformed result is retried once with
    ``strict=True``.
    """

    def __init__(
        self,
        storage: PlannerStorage,
        graph_store: TaskGraphStore,
        extractor: DependencyExtractor,
        *,
        max_batch: int = 50,
    ) -> None:
        self.storage = storage
        self.graph_store = graph_store
        self.extractor = extractor
        self.max_batch = max_batch

    def analyze(
        self,
        task_ids: list[str],
        *,
        use_document_context: bool = False,
        user_id: str = "system",
    ) -> dict[str, Any]:
        unique_ids = list(dict.fromkeys(task_ids))
        if len(unique_ids) < MIN_BATCH:
            raise InvalidInputError(
                "Dependency analysis needs at least two task ids",
                details={"task_count": len(unique_ids)},
            )
        if len(unique_ids) > self.max_batch:
            raise InvalidInputError(
                f"Dependency analysis accepts at most {self.max_batch} task ids",
                details={"task_count": len(unique_ids)},
            )

        tasks = self.storage.get_tasks(unique_ids)
        missing = [task_id for task_id in unique_ids if task_id not in tasks]
        if missing:
            raise NotFoundError("Tasks not found", details={"missing_task_ids": missing})

        ordered_tasks = [tasks[task_id] for task_id in unique_ids]
        document_context = self._document_context(ordered_tasks) if use_document_context else {}
        dependencies = self._extract(ordered_tasks, document_context)

        now = datetime.now(UTC)
        records = [
            RelationshipRecord(
                source_task_id=item.source_task_id,
                target_task_id=item.target_task_id,
                relationship_type=item.relationship_type,
                confidence_score=item.confidence_score,
                detection_method="ai-inferred",
                reasoning=item.reasoning or None,
                created_at=now,
            )
            for item in dependencies
        ]
        mutation = self.graph_store.accept_edges(records, user_id=user_id)

        logger.info(
            "dependency_analysis event=completed analyzed=%d proposed=%d inserted=%d cycle_detected=%s",
            len(ordered_tasks),
            len(records),
            len(mutation.inserted),
            mutation.cycle_detected,
        )
        return {
            "dependencies": [
                {
                    "source_task_id": item.source_task_id,
                    "target_task_id": item.target_task_id,
                    "relationship_type": item.relationship_type,
                    "confidence_score": item.confidence_score,
                    "reasoning": item.reasoning,
                    "detection_method": "ai-inferred",
                }
                for item in dependencies
            ],
            "analyzed_count": len(ordered_tasks),
            "context_included": bool(document_context),
            "cycle_detected": mutation.cycle_detected,
            "graph_mutation": mutation.summary(),
        }

    def _extract(
        self,
        tasks: list[TaskRecord],
        document_context: dict[str, str],
    ) -> list[ExtractedDependency]:
        try:
            raw = self.extractor(tasks, document_context=document_context, strict=False)
            return self._validate(raw, tasks)
        except ExtractionFailedError as exc:
            logger.warning("dependency_analysis event=extraction_retry reason=%s", exc)
        raw = self.extractor(tasks, document_context=document_context, strict=True)
        return self._validate(raw, tasks)

    @staticmethod
    def _validate(raw: Any, tasks: list[TaskRecord]) -> list[ExtractedDependency]:
        if not isinstance(raw, list):
            raise ExtractionFailedError("Extraction output must be a list of dependencies")

        known = {task.task_id for task in tasks}
        accepted: dict[tuple[str, str, str], ExtractedDependency] = {}
        invalid = 0
        for item in raw:
            try:
                parsed = ExtractedDependency.model_validate(item)
            except ValidationError:
                invalid += 1
                continue
            if parsed.source_task_id == parsed.target_task_id:
                continue
            if parsed.source_task_id not in known or parsed.target_task_id not in known:
                invalid += 1
                continue
            key = (parsed.source_task_id, parsed.target_task_id, parsed.relationship_type)
            if key not in accepted or parsed.confidence_score > accepted[key].confidence_score:
                accepted[key] = parsed

        if raw and invalid == len(raw):
            raise ExtractionFailedError(
                "Extraction output contained no valid dependencies",
                details={"invalid_count": invalid},
            )
        return list(accepted.values())

    def _document_context(self, tasks: list[TaskRecord]) -> dict[str, str]:
        document_ids = list(dict.fromkeys(task.document_id for task in tasks if task.document_id))
        context: dict[str, str] = {}
        deleted = 0
        for document_id in document_ids:
            document = self.storage.get_document(document_id)
            if document is None or document.deleted:
                deleted += 1
                continue
            context[document_id] = document.markdown[:MAX_CONTEXT_CHARS]
        if document_ids and deleted == len(document_ids):
            logger.warning("dependency_analysis event=context_unavailable documents=%d", deleted)
        return context
