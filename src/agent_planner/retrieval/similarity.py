"""Ranked nearest-neighbour search with dynamic threshold relaxation."""

from __future__ import annotations

import logging

from pydantic import BaseModel, Field

from agent_planner.errors import InvalidInputError
from agent_planner.retrieval.embeddings import Embedder
from agent_planner.storage.base import PlannerStorage

logger = logging.getLogger(__name__)


class SearchHit(BaseModel):
    task_id: str
    task_text: str
    document_id: str | None = None
    similarity: float = Field(ge=-1.0, le=1.0)


class SearchResult(BaseModel):
    """Search outcome. ``relaxed`` is set when the applied threshold is lower than requested."""

    hits: list[SearchHit]
    requested_threshold: float
    applied_threshold: float
    relaxed: bool
    relaxation_attempts: int = 0

    @property
    def count(self) -> int:
        return len(self.hits)


class SimilarityService:
    def __init__(
        self,
        storage: PlannerStorage,
        embedder: Embedder,
        *,
        relaxation_step: float = 0.2,
        relaxation_floor: float = 0.4,
        max_relaxations: int = 2,
    ) -> None:
        self.storage = storage
        self.embedder = embedder
        self.relaxation_step = relaxation_step
        self.relaxation_floor = relaxation_floor
        self.max_relaxations = max_relaxations

    def embed(self, text: str) -> list[float]:
        return self.embedder.embed(text)

    def search_text(self, query: str, *, threshold: float, limit: int, relax: bool = True) -> SearchResult:
        return self.search(self.embed(query), threshold=threshold, limit=limit, relax=relax)

    def search(
        self,
        vector: list[float],
        *,
        threshold: float,
        limit: int,
        relax: bool = True,
    ) -> SearchResult:
        if not 0.0 <= threshold <= 1.0:
            raise InvalidInputError("threshold must be between 0 and 1", details={"threshold": threshold})
        if not 1 <= limit <= 100:
            raise InvalidInputError("limit must be between 1 and 100", details={"limit": limit})
        if not vector:
            raise InvalidInputError("query vector must be non-empty")

        applied = threshold
        attempts = 0
        rows = self.storage.vector_query(vector, threshold=applied, limit=limit)
        while not rows and relax and attempts < self.max_relaxations and applied > self.relaxation_floor:
            attempts += 1
            applied = max(self.relaxation_floor, round(applied - self.relaxation_step, 4))
            rows = self.storage.vector_query(vector, threshold=applied, limit=limit)

        if attempts:
            logger.warning(
                "similarity_search event=relaxed requested_threshold=%.2f applied_threshold=%.2f "
                "attempts=%d hits=%d",
                threshold,
                applied,
                attempts,
                len(rows),
            )

        hits = [
            SearchHit(
                task_id=record.task_id,
                task_text=record.task_text,
                document_id=record.document_id,
                similarity=similarity,
            )
            for record, similarity in rows
            if similarity >= applied
        ]
        hits.sort(key=lambda hit: (-hit.similarity, hit.task_id))
        return SearchResult(
            hits=hits[:limit],
            requested_threshold=threshold,
            applied_threshold=applied,
            relaxed=applied < threshold,
            relaxation_attempts=attempts,
        )
