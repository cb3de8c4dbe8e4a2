"""Error taxonomy shared by tools, services and the HTTP layer.

Every error carries a stable ``code`` and a ``retryable`` flag so callers can
decide between retrying with backoff and moving on.
"""

from __future__ import annotations

from typing import Any


class PlannerError(Exception):
    code = "internal_error"
    retryable = False
    http_status = 500

    def __init__(self, message: str, *, details: dict[str, Any] | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.details = dict(details or {})

    def to_payload(self) -> dict[str, Any]:
        return {"code": self.code, "message": self.message, "details": self.details}


class InvalidInputError(PlannerError):
    code = "invalid_input"
    http_status = 400


class NotFoundError(PlannerError):
    code = "not_found"
    http_status = 404


class MissingEmbeddingsError(NotFoundError):
    code = "missing_embeddings"


class DocumentDeletedError(NotFoundError):
    code = "document_deleted"
    http_status = 410


class UpstreamUnavailableError(PlannerError):
    """Timeout, rate limit or 5xx from an upstream provider."""

    code = "upstream_unavailable"
    retryable = True
    http_status = 503


class EmbeddingError(PlannerError):
    code = "embedding_error"
    http_status = 502


class ExtractionFailedError(PlannerError):
    """Generative output could not be parsed into the expected shape."""

    code = "extraction_failed"
    http_status = 502


class GenerationTimeoutError(PlannerError):
    code = "generation_timeout"
    http_status = 504


class ClusteringFailedError(PlannerError):
    code = "clustering_failed"


class StructuralConflictError(PlannerError):
    code = "structural_conflict"
    http_status = 409


class DuplicateTaskError(InvalidInputError):
    code = "duplicate_task"
    http_status = 409


class AIServiceError(PlannerError):
    """Terminal failure reported by a generative provider."""

    code = "ai_service_error"
    http_status = 502


class TraceExpiredError(NotFoundError):
    """Session exists but its reasoning trace was purged by retention cleanup."""

    code = "trace_expired"
    http_status = 410
