"""Text embedders: OpenAI embeddings API and a deterministic hash encoder."""

from __future__ import annotations

import hashlib
import logging
import re
from typing import Any, Protocol

import numpy as np

from agent_planner.config.settings import Settings
from agent_planner.errors import EmbeddingError, InvalidInputError
from agent_planner.openai_client import post_openai_json

logger = logging.getLogger(__name__)

_TOKEN_PATTERN = re.compile(r"[a-z0-9]+")
MAX_EMBEDDING_CHARS = 8000


class Embedder(Protocol):
    model_version: str
    dimension: int

    def embed(self, text: str) -> list[float]: ...


class HashEmbedder:
    """Deterministic token-hash encoder for offline runs and tests.

    Each lowercase token and adjacent token pair is hashed into a signed bucket,
    so texts sharing vocabulary land close together in cosine space.
    """

    def __init__(self, dimension: int = 256) -> None:
        if dimension <= 0:
            raise ValueError("Embedding dimension must be positive.")
        self.dimension = dimension
        self.model_version = f"hash-v1-{dimension}"

    def embed(self, text: str) -> list[float]:
        cleaned = _validate_text(text)
        tokens = _TOKEN_PATTERN.findall(cleaned.lower())
        if not tokens:
            raise InvalidInputError("Text has no embeddable tokens")

        features = tokens + [f"{left} {right}" for left, right in zip(tokens, tokens[1:])]
        vector = np.zeros(self.dimension, dtype=float)
        for feature in features:
            digest = hashlib.sha256(feature.encode("utf-8")).digest()
            bucket = int.from_bytes(digest[:4], "big") % self.dimension
            sign = 1.0 if digest[4] % 2 == 0 else -1.0
            weight = 1.0 if " " not in feature else 0.5
            vector[bucket] += sign * weight

        norm = np.linalg.norm(vector)
        if norm == 0:
            raise EmbeddingError("Hash embedding collapsed to a zero vector")
        return (vector / norm).round(8).tolist()


class OpenAIEmbedder:
    """Embeddings via the OpenAI ``/embeddings`` endpoint."""

    def __init__(
        self,
        *,
        api_key: str,
        model: str = "text-embedding-3-small",
        dimension: int = 1536,
        base_url: str = "https://api.openai.com/v1",
        timeout_s: float = 10.0,
        trace: bool = False,
    ) -> None:
        if not api_key:
            raise ValueError("OPENAI_API_KEY is required for openai embeddings")
        self.api_key = api_key
        self.model = model
        self.dimension = dimension
        self.base_url = base_url.rstrip("/")
        self.timeout_s = timeout_s
        self.trace = trace
        self.model_version = f"openai-{model}-{dimension}"

    def embed(self, text: str) -> list[float]:
        cleaned = _validate_text(text)
        response = post_openai_json(
            f"{self.base_url}/embeddings",
            {"model": self.model, "input": cleaned, "dimensions": self.dimension},
            api_key=self.api_key,
            timeout_s=self.timeout_s,
            trace=self.trace,
        )
        return _parse_embedding_response(response, expected_dimension=self.dimension)


def build_embedder(settings: Settings) -> Embedder:
    provider = settings.embedding_provider.lower().strip()
    if provider == "openai":
        return OpenAIEmbedder(
            api_key=settings.resolved_openai_api_key(),
            model=settings.embedding_model,
            dimension=settings.embedding_dimension,
            base_url=settings.llm_base_url,
            timeout_s=settings.embedding_timeout_s,
            trace=settings.llm_trace,
        )
    if provider != "hash":
        logger.warning("embedding provider=%s unsupported; using hash encoder", provider)
    return HashEmbedder(dimension=settings.embedding_dimension)


def _validate_text(text: str) -> str:
    cleaned = (text or "").strip()
    if not cleaned:
        raise InvalidInputError("Text for embedding must be non-empty")
    return cleaned[:MAX_EMBEDDING_CHARS]


def _parse_embedding_response(response: dict[str, Any], *, expected_dimension: int) -> list[float]:
    data = response.get("data")
    if not isinstance(data, list) or not data or not isinstance(data[0], dict):
        raise EmbeddingError("Embedding response did not contain data")
    vector = data[0].get("embedding")
    if not isinstance(vector, list) or len(vector) != expected_dimension:
        raise EmbeddingError(
            "Embedding response had an unexpected shape",
            details={"expected_dimension": expected_dimension},
        )
    return [float(value) for value in vector]
