"""Fixed registry of analysis tools bound to planner services."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Callable

from pydantic import BaseModel

from agent_planner.errors import NotFoundError
from agent_planner.planning.clustering import ClusteringEngine
from agent_planner.planning.context import DocumentContextService
from agent_planner.planning.dependencies import DependencyAnalyzer
from agent_planner.planning.graph_store import TaskGraphStore
from agent_planner.retrieval.similarity import SimilarityService
from agent_planner.storage.base import PlannerStorage
from agent_planner.tools.schemas import (
    ClusterBySimilarityInput,
    ClusterBySimilarityOutput,
    DetectDependenciesInput,
    DetectDependenciesOutput,
    GetDocumentContextInput,
    GetDocumentContextOutput,
    QueryTaskGraphInput,
    QueryTaskGraphOutput,
    SemanticSearchInput,
    SemanticSearchOutput,
)

TOOL_NAMES = (
    "semantic-search",
    "detect-dependencies",
    "cluster-by-similarity",
    "get-document-context",
    "query-task-graph",
)


@dataclass(frozen=True)
class ToolSpec:
    input_model: type[BaseModel]
    output_model: type[BaseModel]
    fn: Callable[[Any], dict[str, Any]]
    implementation: str = "deterministic"
    description: str = ""


def build_registry(
    *,
    storage: PlannerStorage,
    similarity: SimilarityService,
    dependency_analyzer: DependencyAnalyzer,
    clustering: ClusteringEngine,
    context_service: DocumentContextService,
    graph_store: TaskGraphStore,
    user_id: str,
    extraction_mode: str = "deterministic",
) -> dict[str, ToolSpec]:
    def semantic_search(payload: SemanticSearchInput) -> dict[str, Any]:
        result = similarity.search_text(payload.query, threshold=payload.threshold, limit=payload.limit)
        return {
            "tasks": [hit.model_dump() for hit in result.hits],
            "query": payload.query,
            "count": result.count,
            "requested_threshold": result.requested_threshold,
            "applied_threshold": result.applied_threshold,
            "relaxed": result.relaxed,
            "relaxation_attempts": result.relaxation_attempts,
        }

    def detect_dependencies(payload: DetectDependenciesInput) -> dict[str, Any]:
        return dependency_analyzer.analyze(
            payload.task_ids,
            use_document_context=payload.use_document_context,
            user_id=user_id,
        )

    def cluster_by_similarity(payload: ClusterBySimilarityInput) -> dict[str, Any]:
        return clustering.cluster(payload.task_ids, threshold=payload.similarity_threshold)

    def get_document_context(payload: GetDocumentContextInput) -> dict[str, Any]:
        return context_service.get(payload.task_ids, chunk_number=payload.chunk_number)

    def query_task_graph(payload: QueryTaskGraphInput) -> dict[str, Any]:
        if storage.get_task(payload.task_id) is None:
            raise NotFoundError("Task not found", details={"task_id": payload.task_id})
        records = graph_store.relationships([payload.task_id], relationship_type=payload.relationship_type)
        return {
            "relationships": [
                {
                    "source_task_id": record.source_task_id,
                    "target_task_id": record.target_task_id,
                    "relationship_type": record.relationship_type,
                    "confidence_score": record.confidence_score,
                    "reasoning": record.reasoning or "",
                    "detection_method": "stored",
                }
                for record in records
            ],
            "task_id": payload.task_id,
            "filter_applied": payload.relationship_type,
        }

    return {
        "semantic-search": ToolSpec(
            input_model=SemanticSearchInput,
            output_model=SemanticSearchOutput,
            fn=semantic_search,
            description="Rank tasks by similarity to a query, relaxing the threshold when nothing matches.",
        ),
        "detect-dependencies": ToolSpec(
            input_model=DetectDependenciesInput,
            output_model=DetectDependenciesOutput,
            fn=detect_dependencies,
            implementation=extraction_mode,
            description="Infer prerequisite/blocks/related edges among 2-50 tasks.",
        ),
        "cluster-by-similarity": ToolSpec(
            input_model=ClusterBySimilarityInput,
            output_model=ClusterBySimilarityOutput,
            fn=cluster_by_similarity,
            description="Group 2-100 tasks by embedding similarity.",
        ),
        "get-document-context": ToolSpec(
            input_model=GetDocumentContextInput,
            output_model=GetDocumentContextOutput,
            fn=get_document_context,
            description="Fetch source-document markdown for tasks.",
        ),
        "query-task-graph": ToolSpec(
            input_model=QueryTaskGraphInput,
            output_model=QueryTaskGraphOutput,
            fn=query_task_graph,
            description="List stored relationships touching a task.",
        ),
    }


def list_tools() -> list[str]:
    return sorted(TOOL_NAMES)
