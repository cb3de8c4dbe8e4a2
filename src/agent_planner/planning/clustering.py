"""Similarity Clustering Engine: complete-linkage clustering of task embeddings."""

from __future__ import annotations

import logging
from typing import Any

import numpy as np
from sklearn.cluster import AgglomerativeClustering
from sklearn.metrics.pairwise import cosine_similarity

from agent_planner.errors import ClusteringFailedError, InvalidInputError, MissingEmbeddingsError
from agent_planner.storage.base import PlannerStorage

logger = logging.getLogger(__name__)


class ClusteringEngine:
    def __init__(
        self,
        storage: PlannerStorage,
        *,
        max_batch: int = 100,
        default_threshold: float = 0.75,
    ) -> None:
        self.storage = storage
        self.max_batch = max_batch
        self.default_threshold = default_threshold

    def cluster(self, task_ids: list[str], *, threshold: float | None = None) -> dict[str, Any]:
        unique_ids = list(dict.fromkeys(task_ids))
        threshold = self.default_threshold if threshold is None else threshold
        if not 0.0 <= threshold <= 1.0:
            raise InvalidInputError("similarity_threshold must be between 0 and 1")
        if len(unique_ids) < 2:
            raise InvalidInputError(
                "Clustering needs at least two task ids",
                details={"task_count": len(unique_ids)},
            )
        if len(unique_ids) > self.max_batch:
            raise InvalidInputError(
                f"Clustering accepts at most {self.max_batch} task ids",
                details={"task_count": len(unique_ids)},
            )

        tasks = self.storage.get_tasks(unique_ids)
        missing = [task_id for task_id in unique_ids if task_id not in tasks or not tasks[task_id].embedding]
        if missing:
            raise MissingEmbeddingsError(
                "Embeddings missing for some tasks",
                details={"missing_task_ids": missing},
            )

        matrix = np.asarray([tasks[task_id].embedding for task_id in unique_ids], dtype=float)
        try:
            similarities = cosine_similarity(matrix)
            model = AgglomerativeClustering(
                n_clusters=None,
                metric="cosine",
                linkage="complete",
                distance_threshold=max(1.0 - threshold, 1e-9),
            )
            labels = model.fit_predict(matrix)
        except (ValueError, FloatingPointError) as exc:
            raise ClusteringFailedError(f"Clustering failed: {exc}") from exc

        groups: dict[int, list[int]] = {}
        for index, label in enumerate(labels):
            groups.setdefault(int(label), []).append(index)

        clusters: list[dict[str, Any]] = []
        grouped: set[int] = set()
        for members in groups.values():
            if len(members) < 2:
                continue
            average = _average_pairwise(similarities, members)
            if average < threshold:
                continue
            grouped.update(members)
            centroid = matrix[members].mean(axis=0)
            clusters.append(
                {
                    "task_ids": [unique_ids[index] for index in members],
                    "centroid": np.round(centroid, 6).tolist(),
                    "average_similarity": round(average, 4),
                }
            )

        clusters.sort(key=lambda item: (-len(item["task_ids"]), -item["average_similarity"]))
        for cluster_id, cluster in enumerate(clusters):
            cluster["cluster_id"] = cluster_id

        logger.info(
            "clustering event=completed tasks=%d clusters=%d threshold=%.2f",
            len(unique_ids),
            len(clusters),
            threshold,
        )
        return {
            "clusters": clusters,
            "task_count": len(unique_ids),
            "cluster_count": len(clusters),
            "threshold_used": threshold,
            "ungrouped_task_ids": [
                task_id for index, task_id in enumerate(unique_ids) if index not in grouped
            ],
        }


def _average_pairwise(similarities: np.ndarray, members: list[int]) -> float:
    block = similarities[np.ix_(members, members)]
    count = len(members)
    off_diagonal = block.sum() - np.trace(block)
    return float(off_diagonal / (count * (count - 1)))
