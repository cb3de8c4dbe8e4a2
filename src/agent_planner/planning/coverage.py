"""Goal-alignment coverage between an outcome statement and a plan's tasks."""

from __future__ import annotations

import numpy as np

from agent_planner.retrieval.embeddings import Embedder
from agent_planner.storage.base import PlannerStorage


def compute_coverage(
    embedder: Embedder,
    storage: PlannerStorage,
    outcome_text: str | None,
    task_ids: list[str],
    *,
    alert_threshold: int = 70,
    low_alignment_limit: int = 3,
) -> dict[str, object]:
    """Cosine of the outcome vector against the centroid of plan task vectors, as a percentage.

    Below ``alert_threshold`` the least-aligned tasks are listed.
    """
    tasks = [task for task in storage.get_tasks(task_ids).values() if task.has_embedding]
    if not outcome_text or not outcome_text.strip() or not tasks:
        return {"coverage_percentage": 0, "low_alignment_task_ids": []}

    outcome = _unit(np.asarray(embedder.embed(outcome_text), dtype=float))
    matrix = np.asarray([task.embedding for task in tasks], dtype=float)
    norms = np.linalg.norm(matrix, axis=1, keepdims=True)
    norms[norms == 0] = 1.0
    matrix = matrix / norms

    centroid = _unit(matrix.mean(axis=0))
    coverage = int(round(max(0.0, min(1.0, float(outcome @ centroid))) * 100))

    low_alignment: list[str] = []
    if coverage < alert_threshold:
        alignment = matrix @ outcome
        ranked = sorted(zip(alignment.tolist(), [task.task_id for task in tasks]))
        low_alignment = [task_id for _, task_id in ranked[:low_alignment_limit]]
    return {"coverage_percentage": coverage, "low_alignment_task_ids": low_alignment}


def _unit(vector: np.ndarray) -> np.ndarray:
    norm = np.linalg.norm(vector)
    return vector if norm == 0 else vector / norm
