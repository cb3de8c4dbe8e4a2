from __future__ import annotations

from datetime import UTC, datetime, timedelta
from typing import Any, Callable

import pytest

from agent_planner.config.settings import Settings
from agent_planner.ingest import TaskInput, register_tasks
from agent_planner.planning.graph_store import TaskGraphStore
from agent_planner.retrieval.embeddings import HashEmbedder
from agent_planner.retrieval.similarity import SimilarityService
from agent_planner.runtime import PlannerRuntime, build_runtime
from agent_planner.storage.memory import InMemoryPlannerStorage
from agent_planner.storage.models import RelationshipRecord, TaskRecord


class VectorEmbedder:
    """Maps known texts to fixed vectors; any other text gets ``default``."""

    model_version = "fixed-vectors"

    def __init__(self, vectors: dict[str, list[float]], *, default: list[float] | None = None) -> None:
        self.vectors = vectors
        self.default = default or [0.0, 0.0, 0.0, 1.0]
        self.dimension = len(self.default)
        self.calls = 0

    def embed(self, text: str) -> list[float]:
        self.calls += 1
        return list(self.vectors.get(text, self.default))


@pytest.fixture
def storage() -> InMemoryPlannerStorage:
    return InMemoryPlannerStorage()


@pytest.fixture
def hash_embedder() -> HashEmbedder:
    return HashEmbedder(dimension=256)


@pytest.fixture
def graph_store(storage: InMemoryPlannerStorage) -> TaskGraphStore:
    return TaskGraphStore(storage)


@pytest.fixture
def similarity(storage: InMemoryPlannerStorage, hash_embedder: HashEmbedder) -> SimilarityService:
    return SimilarityService(storage, hash_embedder)


@pytest.fixture
def add_task(storage: InMemoryPlannerStorage) -> Callable[..., TaskRecord]:
    def _add(
        task_id: str,
        text: str,
        embedding: list[float] | None = None,
        *,
        days_ago: int = 0,
        document_id: str | None = None,
        estimated_hours: int | None = None,
    ) -> TaskRecord:
        return storage.upsert_task(
            TaskRecord(
                task_id=task_id,
                task_text=text,
                embedding=embedding,
                document_id=document_id,
                estimated_hours=estimated_hours,
                created_at=datetime.now(UTC) - timedelta(days=days_ago),
            )
        )

    return _add


@pytest.fixture
def add_edge(storage: InMemoryPlannerStorage) -> Callable[..., RelationshipRecord]:
    def _add(
        source: str,
        target: str,
        *,
        relationship_type: str = "prerequisite",
        confidence: float = 0.8,
        detection_method: str = "ai-inferred",
    ) -> RelationshipRecord:
        record = RelationshipRecord(
            source_task_id=source,
            target_task_id=target,
            relationship_type=relationship_type,
            confidence_score=confidence,
            detection_method=detection_method,
            created_at=datetime.now(UTC),
        )
        storage.upsert_relationships([record])
        return record

    return _add


@pytest.fixture
def build_planner(storage: InMemoryPlannerStorage) -> Callable[..., PlannerRuntime]:
    def _build(settings: Settings | None = None, **overrides: Any) -> PlannerRuntime:
        return build_runtime(
            settings or Settings(planner_mode="deterministic", executor_mode="deterministic"),
            storage,
            embedder=overrides.pop("embedder", HashEmbedder(dimension=64)),
            **overrides,
        )

    return _build


OFFICE_TASKS = (
    "Order office chairs",
    "Renew domain names",
    "Book team dinner",
    "Update payroll records",
    "Archive old invoices",
    "Clean shared drive",
    "Schedule dentist visit",
    "Refresh laptop batteries",
    "Organize supply closet",
    "Sort vendor contracts",
)


@pytest.fixture
def office_tasks(storage: InMemoryPlannerStorage) -> list[TaskRecord]:
    """Ten tasks with no workflow-stage vocabulary, so no dependencies are inferred."""
    return register_tasks(storage, HashEmbedder(dimension=64), [TaskInput(task_text=text) for text in OFFICE_TASKS])


@pytest.fixture
def vector_embedder() -> type[VectorEmbedder]:
    return VectorEmbedder
