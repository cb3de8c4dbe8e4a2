"""Storage models shared by API and persistence backends."""

from datetime import datetime
from typing import Any, Literal

from pydantic import BaseModel, Field

RelationshipType = Literal["prerequisite", "blocks", "related"]
DetectionMethod = Literal["ai-inferred", "stored", "manual"]
SessionStatus = Literal["running", "completed", "failed"]
StepStatus = Literal["success", "failed", "skipped"]


class TaskRecord(BaseModel):
    """Persisted task. Text is immutable once embedded."""

    task_id: str
    task_text: str
    document_id: str | None = None
    manual_override: dict[str, Any] | None = None
    embedding: list[float] | None = Field(default=None, exclude=True)
    source: Literal["extracted", "bridging"] = "extracted"
    variant_of_text: str | None = None
    estimated_hours: int | None = None
    created_at: datetime

    @property
    def has_embedding(self) -> bool:
        return bool(self.embedding)


class RelationshipRecord(BaseModel):
    source_task_id: str
    target_task_id: str
    relationship_type: RelationshipType
    confidence_score: float = Field(ge=0.0, le=1.0)
    detection_method: DetectionMethod
    reasoning: str | None = None
    created_at: datetime

    @property
    def key(self) -> tuple[str, str, str]:
        return (self.source_task_id, self.target_task_id, self.relationship_type)


class DocumentRecord(BaseModel):
    document_id: str
    filename: str
    markdown: str
    deleted: bool = False


class ReasoningStep(BaseModel):
    """One loop iteration: rationale, optional tool call, outcome."""

    step_number: int = Field(ge=1, le=10)
    rationale: str
    tool_name: str | None = None
    tool_input: dict[str, Any] | None = None
    tool_output: dict[str, Any] | None = None
    status: StepStatus
    error: dict[str, Any] | None = None
    attempts: int = 0
    duration_ms: float = 0.0
    timestamp: datetime


class SessionRecord(BaseModel):
    """Persisted reasoning session. Steps are dropped once the trace expires."""

    session_id: str
    user_id: str
    status: SessionStatus
    goal: dict[str, Any]
    task_ids: list[str] = Field(default_factory=list)
    steps: list[ReasoningStep] | None = None
    plan: dict[str, Any] | None = None
    execution_metadata: dict[str, Any] | None = None
    error: str | None = None
    created_at: datetime
    updated_at: datetime
    completed_at: datetime | None = None
    trace_expires_at: datetime
    trace_purged: bool = False
