"""Strict Pydantic schemas for tool inputs, outputs and the ToolCall union."""

from __future__ import annotations

from typing import Annotated, Any, Literal, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter


class StrictModel(BaseModel):
    """Base model for strict schema validation."""

    model_config = ConfigDict(extra="forbid")


RelationshipFilter = Literal["prerequisite", "blocks", "related", "all"]


class SemanticSearchInput(StrictModel):
    query: str = Field(min_length=1, max_length=2000)
    threshold: float = Field(default=0.7, ge=0.0, le=1.0)
    limit: int = Field(default=20, ge=1, le=100)


class SearchHitOutput(StrictModel):
    task_id: str
    task_text: str
    document_id: str | None = None
    similarity: float


class SemanticSearchOutput(StrictModel):
    tasks: list[SearchHitOutput]
    query: str
    count: int
    requested_threshold: float
    applied_threshold: float
    relaxed: bool
    relaxation_attempts: int


class DetectDependenciesInput(StrictModel):
    task_ids: list[str] = Field(min_length=2, max_length=50)
    use_document_context: bool = False


class DependencyOutput(StrictModel):
    source_task_id: str
    target_task_id: str
    relationship_type: Literal["prerequisite", "blocks", "related"]
    confidence_score: float = Field(ge=0.0, le=1.0)
    reasoning: str = ""
    detection_method: Literal["ai-inferred", "stored", "manual"]


class DetectDependenciesOutput(StrictModel):
    dependencies: list[DependencyOutput]
    analyzed_count: int
    context_included: bool
    cycle_detected: bool
    graph_mutation: dict[str, Any]


class ClusterBySimilarityInput(StrictModel):
    task_ids: list[str] = Field(min_length=2, max_length=100)
    similarity_threshold: float = Field(default=0.75, ge=0.0, le=1.0)


class ClusterOutput(StrictModel):
    cluster_id: int
    task_ids: list[str]
    centroid: list[float]
    average_similarity: float


class ClusterBySimilarityOutput(StrictModel):
    clusters: list[ClusterOutput]
    task_count: int
    cluster_count: int
    threshold_used: float
    ungrouped_task_ids: list[str]


class GetDocumentContextInput(StrictModel):
    task_ids: list[str] = Field(min_length=1, max_length=50)
    chunk_number: int | None = Field(default=None, ge=1)


class DocumentContextOutput(StrictModel):
    document_id: str
    filename: str
    markdown: str
    tasks: list[dict[str, str]]
    chunk_number: int
    total_chunks: int


class GetDocumentContextOutput(StrictModel):
    documents: list[DocumentContextOutput]
    unavailable_document_ids: list[str] = Field(default_factory=list)


class QueryTaskGraphInput(StrictModel):
    task_id: str = Field(min_length=1)
    relationship_type: RelationshipFilter = "all"


class QueryTaskGraphOutput(StrictModel):
    relationships: list[DependencyOutput]
    task_id: str
    filter_applied: RelationshipFilter


class SemanticSearchCall(StrictModel):
    tool: Literal["semantic-search"]
    input: SemanticSearchInput


class DetectDependenciesCall(StrictModel):
    tool: Literal["detect-dependencies"]
    input: DetectDependenciesInput


class ClusterBySimilarityCall(StrictModel):
    tool: Literal["cluster-by-similarity"]
    input: ClusterBySimilarityInput


class GetDocumentContextCall(StrictModel):
    tool: Literal["get-document-context"]
    input: GetDocumentContextInput


class QueryTaskGraphCall(StrictModel):
    tool: Literal["query-task-graph"]
    input: QueryTaskGraphInput


ToolCall = Annotated[
    Union[
        SemanticSearchCall,
        DetectDependenciesCall,
        ClusterBySimilarityCall,
        GetDocumentContextCall,
        QueryTaskGraphCall,
    ],
    Field(discriminator="tool"),
]

TOOL_CALL_ADAPTER: TypeAdapter[ToolCall] = TypeAdapter(ToolCall)
