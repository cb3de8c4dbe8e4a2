"""Embedding and similarity search."""

from agent_planner.retrieval.embeddings import Embedder, HashEmbedder, OpenAIEmbedder, build_embedder
from agent_planner.retrieval.similarity import SearchHit, SearchResult, SimilarityService

__all__ = [
    "Embedder",
    "HashEmbedder",
    "OpenAIEmbedder",
    "SearchHit",
    "SearchResult",
    "SimilarityService",
    "build_embedder",
]
