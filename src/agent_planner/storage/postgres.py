"""PostgreSQL-backed storage with automatic table migration.

Vectors live in a pgvector ``vector`` column; similarity is ``1 - cosine distance``.
"""

from __future__ import annotations

import json
import threading
from datetime import UTC, datetime
from typing import Any, Iterable

from agent_planner.storage.models import (
    DocumentRecord,
    ReasoningStep,
    RelationshipRecord,
    SessionRecord,
    TaskRecord,
)

_SESSION_JSON_FIELDS = {"goal", "task_ids", "steps", "plan", "execution_metadata"}
_SESSION_COLUMNS = {
    "status",
    "goal",
    "task_ids",
    "steps",
    "plan",
    "execution_metadata",
    "error",
    "completed_at",
    "trace_expires_at",
    "trace_purged",
}


class PostgresPlannerStorage:
    """Persist tasks, relationships, documents and sessions in PostgreSQL."""

    def __init__(self, database_url: str) -> None:
        if not database_url:
            raise ValueError("AGENT_PLANNER_DATABASE_URL is required")
        self.database_url = database_url
        self._lock = threading.Lock()
        self._psycopg, self._dict_row, self._json_wrapper = self._load_psycopg()

    def migrate(self) -> None:
        with self._lock, self._connect() as conn:
            conn.execute("CREATE EXTENSION IF NOT EXISTS vector")
            conn.execute("""
                CREATE TABLE IF NOT EXISTS tasks (
                    task_id TEXT PRIMARY KEY,
                    task_text TEXT NOT NULL,
                    document_id TEXT,
                    manual_override JSONB,
                    embedding vector,
                    source TEXT NOT NULL DEFAULT 'extracted',
                    variant_of_text TEXT,
                    estimated_hours INTEGER,
                    created_at TIMESTAMPTZ NOT NULL
                )
                """)
            conn.execute("""
                CREATE TABLE IF NOT EXISTS task_relationships (
                    source_task_id TEXT NOT NULL REFERENCES tasks(task_id) ON DELETE CASCADE,
                    target_task_id TEXT NOT NULL REFERENCES tasks(task_id) ON DELETE CASCADE,
                    relationship_type TEXT NOT NULL,
                    confidence_score DOUBLE PRECISION NOT NULL,
                    detection_method TEXT NOT NULL,
                    reasoning TEXT,
                    created_at TIMESTAMPTZ NOT NULL,
                    PRIMARY KEY (source_task_id, target_task_id, relationship_type),
                    CHECK (source_task_id <> target_task_id)
                )
                """)
            conn.execute("""
                CREATE TABLE IF NOT EXISTS relationship_reviews (
                    source_task_id TEXT NOT NULL REFERENCES tasks(task_id) ON DELETE CASCADE,
                    target_task_id TEXT NOT NULL REFERENCES tasks(task_id) ON DELETE CASCADE,
                    relationship_type TEXT NOT NULL,
                    confidence_score DOUBLE PRECISION NOT NULL,
                    detection_method TEXT NOT NULL,
                    reasoning TEXT,
                    created_at TIMESTAMPTZ NOT NULL,
                    PRIMARY KEY (source_task_id, target_task_id, relationship_type)
                )
                """)
            conn.execute("""
                CREATE TABLE IF NOT EXISTS documents (
                    document_id TEXT PRIMARY KEY,
                    filename TEXT NOT NULL,
                    markdown TEXT NOT NULL,
                    deleted BOOLEAN NOT NULL DEFAULT FALSE
                )
                """)
            conn.execute("""
                CREATE TABLE IF NOT EXISTS reasoning_sessions (
                    session_id TEXT PRIMARY KEY,
                    user_id TEXT NOT NULL,
                    status TEXT NOT NULL,
                    goal JSONB NOT NULL DEFAULT '{}'::jsonb,
                    task_ids JSONB NOT NULL DEFAULT '[]'::jsonb,
                    steps JSONB,
                    plan JSONB,
                    execution_metadata JSONB,
                    error TEXT,
                    created_at TIMESTAMPTZ NOT NULL,
                    updated_at TIMESTAMPTZ NOT NULL,
                    completed_at TIMESTAMPTZ,
                    trace_expires_at TIMESTAMPTZ NOT NULL,
                    trace_purged BOOLEAN NOT NULL DEFAULT FALSE
                )
                """)
            conn.execute("""
                CREATE INDEX IF NOT EXISTS idx_reasoning_sessions_trace_expires_at
                ON reasoning_sessions(trace_expires_at)
                """)
            conn.execute("""
                CREATE TABLE IF NOT EXISTS user_session_slots (
                    user_id TEXT PRIMARY KEY,
                    session_id TEXT NOT NULL REFERENCES reasoning_sessions(session_id)
                )
                """)
            conn.commit()

    def upsert_task(self, record: TaskRecord) -> TaskRecord:
        with self._lock, self._connect() as conn:
            conn.execute(
                """
                INSERT INTO tasks (
                    task_id,
                    task_text,
                    document_id,
                    manual_override,
                    embedding,
                    source,
                    variant_of_text,
                    estimated_hours,
                    created_at
                )
                VALUES (%s, %s, %s, %s, %s::vector, %s, %s, %s, %s)
                ON CONFLICT (task_id) DO UPDATE
                SET document_id = EXCLUDED.document_id,
                    manual_override = EXCLUDED.manual_override,
                    embedding = COALESCE(tasks.embedding, EXCLUDED.embedding),
                    estimated_hours = EXCLUDED.estimated_hours
                """,
                (
                    record.task_id,
                    record.task_text,
                    record.document_id,
                    self._json_wrapper(record.manual_override) if record.manual_override else None,
                    _vector_literal(record.embedding) if record.embedding else None,
                    record.source,
                    record.variant_of_text,
                    record.estimated_hours,
                    record.created_at,
                ),
            )
            conn.commit()
        return record

    def get_task(self, task_id: str) -> TaskRecord | None:
        return self.get_tasks([task_id]).get(task_id)

    def get_tasks(self, task_ids: Iterable[str]) -> dict[str, TaskRecord]:
        wanted = list(dict.fromkeys(task_ids))
        if not wanted:
            return {}
        with self._lock, self._connect() as conn:
            rows = conn.execute(
                "SELECT *, embedding::text AS embedding_text FROM tasks WHERE task_id = ANY(%s)",
                (wanted,),
            ).fetchall()
        return {row["task_id"]: self._row_to_task(row) for row in rows}

    def list_tasks(self) -> list[TaskRecord]:
        with self._lock, self._connect() as conn:
            rows = conn.execute(
                "SELECT *, embedding::text AS embedding_text FROM tasks ORDER BY created_at, task_id"
            ).fetchall()
        return [self._row_to_task(row) for row in rows]

    def delete_task(self, task_id: str) -> None:
        with self._lock, self._connect() as conn:
            conn.execute("DELETE FROM tasks WHERE task_id = %s", (task_id,))
            conn.commit()

    def vector_query(
        self, vector: list[float], *, threshold: float, limit: int
    ) -> list[tuple[TaskRecord, float]]:
        literal = _vector_literal(vector)
        with self._lock, self._connect() as conn:
            rows = conn.execute(
                """
                SELECT *,
                       embedding::text AS embedding_text,
                       1 - (embedding <=> %s::vector) AS similarity
                FROM tasks
                WHERE embedding IS NOT NULL
                  AND 1 - (embedding <=> %s::vector) >= %s
                ORDER BY embedding <=> %s::vector, task_id
                LIMIT %s
                """,
                (literal, literal, threshold, literal, limit),
            ).fetchall()
        return [(self._row_to_task(row), round(float(row["similarity"]), 6)) for row in rows]

    def list_relationships(self) -> list[RelationshipRecord]:
        with self._lock, self._connect() as conn:
            rows = conn.execute("SELECT * FROM task_relationships").fetchall()
        return [RelationshipRecord.model_validate(row) for row in rows]

    def relationships_for(self, task_ids: Iterable[str]) -> list[RelationshipRecord]:
        wanted = list(dict.fromkeys(task_ids))
        if not wanted:
            return []
        with self._lock, self._connect() as conn:
            rows = conn.execute(
                """
                SELECT *
                FROM task_relationships
                WHERE source_task_id = ANY(%s) OR target_task_id = ANY(%s)
                """,
                (wanted, wanted),
            ).fetchall()
        return [RelationshipRecord.model_validate(row) for row in rows]

    def upsert_relationships(self, records: list[RelationshipRecord]) -> None:
        if not records:
            return
        with self._lock, self._connect() as conn:
            for record in records:
                conn.execute(
                    """
                    INSERT INTO task_relationships (
                        source_task_id,
                        target_task_id,
                        relationship_type,
                        confidence_score,
                        detection_method,
                        reasoning,
                        created_at
                    )
                    VALUES (%s, %s, %s, %s, %s, %s, %s)
                    ON CONFLICT (source_task_id, target_task_id, relationship_type) DO UPDATE
                    SET confidence_score = EXCLUDED.confidence_score,
                        detection_method = EXCLUDED.detection_method,
                        reasoning = EXCLUDED.reasoning
                    """,
                    (
                        record.source_task_id,
                        record.target_task_id,
                        record.relationship_type,
                        record.confidence_score,
                        record.detection_method,
                        record.reasoning,
                        record.created_at,
                    ),
                )
            conn.commit()

    def delete_relationship(self, source_task_id: str, target_task_id: str, relationship_type: str) -> None:
        with self._lock, self._connect() as conn:
            conn.execute(
                """
                DELETE FROM task_relationships
                WHERE source_task_id = %s AND target_task_id = %s AND relationship_type = %s
                """,
                (source_task_id, target_task_id, relationship_type),
            )
            conn.commit()

    def queue_relationship_reviews(self, records: list[RelationshipRecord]) -> None:
        if not records:
            return
        with self._lock, self._connect() as conn:
            for record in records:
                conn.execute(
                    """
                    INSERT INTO relationship_reviews (
                        source_task_id,
                        target_task_id,
                        relationship_type,
                        confidence_score,
                        detection_method,
                        reasoning,
                        created_at
                    )
                    VALUES (%s, %s, %s, %s, %s, %s, %s)
                    ON CONFLICT (source_task_id, target_task_id, relationship_type) DO UPDATE
                    SET confidence_score = EXCLUDED.confidence_score,
                        detection_method = EXCLUDED.detection_method,
                        reasoning = EXCLUDED.reasoning
                    """,
                    (
                        record.source_task_id,
                        record.target_task_id,
                        record.relationship_type,
                        record.confidence_score,
                        record.detection_method,
                        record.reasoning,
                        record.created_at,
                    ),
                )
            conn.commit()

    def list_relationship_reviews(self) -> list[RelationshipRecord]:
        with self._lock, self._connect() as conn:
            rows = conn.execute(
                """
                SELECT *
                FROM relationship_reviews
                ORDER BY created_at, source_task_id, target_task_id, relationship_type
                """
            ).fetchall()
        return [RelationshipRecord.model_validate(row) for row in rows]

    def delete_relationship_review(self, source_task_id: str, target_task_id: str, relationship_type: str) -> None:
        with self._lock, self._connect() as conn:
            conn.execute(
                """
                DELETE FROM relationship_reviews
                WHERE source_task_id = %s AND target_task_id = %s AND relationship_type = %s
                """,
                (source_task_id, target_task_id, relationship_type),
            )
            conn.commit()

    def upsert_document(self, record: DocumentRecord) -> DocumentRecord:
        with self._lock, self._connect() as conn:
            conn.execute(
                """
                INSERT INTO documents (document_id, filename, markdown, deleted)
                VALUES (%s, %s, %s, %s)
                ON CONFLICT (document_id) DO UPDATE
                SET filename = EXCLUDED.filename,
                    markdown = EXCLUDED.markdown,
                    deleted = EXCLUDED.deleted
                """,
                (record.document_id, record.filename, record.markdown, record.deleted),
            )
            conn.commit()
        return record

    def get_document(self, document_id: str) -> DocumentRecord | None:
        with self._lock, self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM documents WHERE document_id = %s",
                (document_id,),
            ).fetchone()
        if row is None:
            return None
        return DocumentRecord.model_validate(row)

    def create_session(self, record: SessionRecord) -> SessionRecord:
        payload = record.model_dump(mode="json")
        with self._lock, self._connect() as conn:
            conn.execute(
                """
                INSERT INTO reasoning_sessions (
                    session_id,
                    user_id,
                    status,
                    goal,
                    task_ids,
                    steps,
                    plan,
                    execution_metadata,
                    error,
                    created_at,
                    updated_at,
                    completed_at,
                    trace_expires_at,
                    trace_purged
                )
                VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s)
                """,
                (
                    record.session_id,
                    record.user_id,
                    record.status,
                    self._json_wrapper(payload["goal"]),
                    self._json_wrapper(payload["task_ids"]),
                    self._json_wrapper(payload["steps"]) if record.steps is not None else None,
                    self._json_wrapper(record.plan) if record.plan is not None else None,
                    (
                        self._json_wrapper(record.execution_metadata)
                        if record.execution_metadata is not None
                        else None
                    ),
                    record.error,
                    record.created_at,
                    record.updated_at,
                    record.completed_at,
                    record.trace_expires_at,
                    record.trace_purged,
                ),
            )
            conn.commit()
        return record

    def update_session(self, session_id: str, **fields: Any) -> SessionRecord:
        unknown = set(fields) - _SESSION_COLUMNS
        if unknown:
            raise ValueError(f"Unknown session fields: {sorted(unknown)}")

        assignments: list[str] = []
        values: list[Any] = []
        for name, value in fields.items():
            assignments.append(f"{name} = %s")
            if name == "steps" and value is not None:
                value = [
                    step.model_dump(mode="json") if isinstance(step, ReasoningStep) else step
                    for step in value
                ]
            if name in _SESSION_JSON_FIELDS and value is not None:
                value = self._json_wrapper(value)
            values.append(value)
        assignments.append("updated_at = %s")
        values.append(datetime.now(tz=UTC))
        values.append(session_id)

        with self._lock, self._connect() as conn:
            conn.execute(
                f"UPDATE reasoning_sessions SET {', '.join(assignments)} WHERE session_id = %s",
                tuple(values),
            )
            conn.commit()
        refreshed = self.get_session(session_id)
        if refreshed is None:
            raise KeyError(f"Session {session_id} does not exist")
        return refreshed

    def get_session(self, session_id: str) -> SessionRecord | None:
        with self._lock, self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM reasoning_sessions WHERE session_id = %s",
                (session_id,),
            ).fetchone()
        if row is None:
            return None
        payload = dict(row)
        for name in _SESSION_JSON_FIELDS:
            if isinstance(payload.get(name), str):
                payload[name] = json.loads(payload[name])
        return SessionRecord.model_validate(payload)

    def set_current_session(self, user_id: str, session_id: str) -> None:
        with self._lock, self._connect() as conn:
            conn.execute(
                """
                INSERT INTO user_session_slots (user_id, session_id)
                VALUES (%s, %s)
                ON CONFLICT (user_id) DO UPDATE SET session_id = EXCLUDED.session_id
                """,
                (user_id, session_id),
            )
            conn.commit()

    def get_current_session_id(self, user_id: str) -> str | None:
        with self._lock, self._connect() as conn:
            row = conn.execute(
                "SELECT session_id FROM user_session_slots WHERE user_id = %s",
                (user_id,),
            ).fetchone()
        return None if row is None else str(row["session_id"])

    def purge_expired_traces(self, now: datetime) -> int:
        with self._lock, self._connect() as conn:
            cursor = conn.execute(
                """
                UPDATE reasoning_sessions
                SET steps = NULL, trace_purged = TRUE, updated_at = %s
                WHERE trace_purged = FALSE AND trace_expires_at <= %s
                """,
                (now, now),
            )
            conn.commit()
        return int(cursor.rowcount or 0)

    def _connect(self) -> Any:
        return self._psycopg.connect(self.database_url, row_factory=self._dict_row)

    @staticmethod
    def _row_to_task(row: dict[str, Any]) -> TaskRecord:
        payload = dict(row)
        raw_embedding = payload.pop("embedding_text", None)
        payload["embedding"] = json.loads(raw_embedding) if raw_embedding else None
        payload.pop("similarity", None)
        return TaskRecord.model_validate(payload)

    @staticmethod
    def _load_psycopg() -> tuple[Any, Any, Any]:
        try:
            import psycopg
            from psycopg.rows import dict_row
            from psycopg.types.json import Json
        except ImportError as exc:  # pragma: no cover
            raise RuntimeError(
                "PostgreSQL storage requires psycopg. "
                'Install with: python -m pip install "psycopg[binary]>=3.1,<4.0"'
            ) from exc
        return psycopg, dict_row, Json


def _vector_literal(vector: list[float] | None) -> str | None:
    if vector is None:
        return None
    return "[" + ",".join(f"{float(value):.8f}" for value in vector) + "]"
