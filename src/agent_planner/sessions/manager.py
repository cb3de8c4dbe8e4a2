"""Reasoning session lifecycle: one current session slot per user, trace retention."""

from __future__ import annotations

import logging
import threading
import time
from datetime import UTC, datetime, timedelta
from typing import Any, Callable
from uuid import uuid4

from pydantic import BaseModel, ConfigDict, Field, ValidationError

from agent_planner.errors import InvalidInputError, NotFoundError, TraceExpiredError
from agent_planner.graph.context import LoopContext
from agent_planner.graph.state import initial_state
from agent_planner.graph.workflow import build_graph, recursion_limit
from agent_planner.storage.base import PlannerStorage
from agent_planner.storage.models import ReasoningStep, SessionRecord

logger = logging.getLogger(__name__)

EMPTY_POOL_ERROR = "No tasks available to prioritize."


class GoalContext(BaseModel):
    model_config = ConfigDict(extra="forbid", str_strip_whitespace=True)

    outcome_text: str = Field(min_length=1, max_length=500)
    state_preference: str | None = Field(default=None, max_length=100)
    daily_capacity_hours: float | None = Field(default=None, gt=0, le=24)
    recent_reflections: list[str] = Field(default_factory=list, max_length=5)


class SessionManager:
    def __init__(
        self,
        storage: PlannerStorage,
        loop_factory: Callable[[str], LoopContext],
        *,
        max_task_pool: int = 200,
        trace_retention_days: int = 7,
        cleanup_interval_s: float = 3600.0,
    ) -> None:
        self.storage = storage
        self.loop_factory = loop_factory
        self.max_task_pool = max_task_pool
        self.trace_retention = timedelta(days=trace_retention_days)
        self.cleanup_interval_s = cleanup_interval_s
        self._last_cleanup: float | None = None
        self._cleanup_lock = threading.Lock()

    def start(
        self,
        user_id: str,
        goal: GoalContext | dict[str, Any],
        task_ids: list[str] | None = None,
    ) -> SessionRecord:
        """Record a running session and make it the user's current one."""
        if not user_id:
            raise InvalidInputError("user_id is required")
        try:
            goal_context = goal if isinstance(goal, GoalContext) else GoalContext.model_validate(goal)
        except ValidationError as exc:
            raise InvalidInputError(
                "Invalid goal context",
                details={"errors": exc.errors(include_url=False, include_context=False)},
            ) from exc

        pool = self._resolve_pool(task_ids)
        now = datetime.now(UTC)
        record = self.storage.create_session(
            SessionRecord(
                session_id=str(uuid4()),
                user_id=user_id,
                status="running",
                goal=goal_context.model_dump(),
                task_ids=pool,
                steps=[],
                created_at=now,
                updated_at=now,
                trace_expires_at=now + self.trace_retention,
            )
        )
        previous = self.storage.get_current_session_id(user_id)
        self.storage.set_current_session(user_id, record.session_id)
        logger.info(
            "session event=started session_id=%s user_id=%s tasks=%d superseded=%s",
            record.session_id,
            user_id,
            len(pool),
            previous,
        )
        self.maybe_cleanup()
        return record

    def run(self, session_id: str) -> SessionRecord:
        """Drive the reasoning loop for a started session and persist its outcome on that session."""
        session = self.get(session_id)
        if not session.task_ids:
            logger.warning("session event=failed session_id=%s reason=empty_pool", session_id)
            return self._fail(session_id, EMPTY_POOL_ERROR)

        try:
            ctx = self.loop_factory(session.user_id)
            graph = build_graph(ctx)
            final = graph.invoke(
                initial_state(
                    session_id,
                    session.user_id,
                    session.goal,
                    session.task_ids,
                    started_at=ctx.clock(),
                ),
                config={"recursion_limit": recursion_limit(ctx.max_steps)},
            )
        except Exception as exc:  # noqa: BLE001
            logger.exception("session event=failed session_id=%s reason=loop_error", session_id)
            return self._fail(session_id, f"Reasoning loop failed: {exc}")

        plan = final.get("plan")
        if not plan:
            return self._fail(session_id, "No plan could be produced.")
        metadata = dict(final.get("execution_metadata") or {})
        telemetry = final.get("telemetry") or {}
        metadata["planner"] = telemetry.get("planner", {})
        steps: list[ReasoningStep] = final.get("steps", [])

        updated = self.storage.update_session(
            session_id,
            status="completed",
            steps=steps,
            plan=plan,
            execution_metadata=metadata,
            completed_at=datetime.now(UTC),
        )
        current = self.storage.get_current_session_id(session.user_id)
        logger.info(
            "session event=completed session_id=%s steps=%d errors=%d termination=%s current=%s",
            session_id,
            metadata.get("steps_taken", 0),
            metadata.get("error_count", 0),
            metadata.get("termination"),
            current == session_id,
        )
        return updated

    def execute(
        self,
        user_id: str,
        goal: GoalContext | dict[str, Any],
        task_ids: list[str] | None = None,
    ) -> SessionRecord:
        return self.run(self.start(user_id, goal, task_ids).session_id)

    def get(self, session_id: str) -> SessionRecord:
        record = self.storage.get_session(session_id)
        if record is None:
            raise NotFoundError("Session not found", details={"session_id": session_id})
        return record

    def current(self, user_id: str) -> SessionRecord:
        session_id = self.storage.get_current_session_id(user_id)
        if session_id is None:
            raise NotFoundError("User has no session", details={"user_id": user_id})
        return self.get(session_id)

    def trace(self, session_id: str) -> list[ReasoningStep]:
        record = self.get(session_id)
        if record.trace_purged or record.steps is None or record.trace_expires_at <= datetime.now(UTC):
            raise TraceExpiredError(
                "Reasoning trace has expired; only the plan remains",
                details={"session_id": session_id, "expired_at": record.trace_expires_at.isoformat()},
            )
        return record.steps

    def maybe_cleanup(self, *, force: bool = False) -> int:
        """Purge expired traces, at most once per cleanup interval unless forced."""
        with self._cleanup_lock:
            now = time.monotonic()
            if not force and self._last_cleanup is not None and now - self._last_cleanup < self.cleanup_interval_s:
                return 0
            self._last_cleanup = now
        purged = self.storage.purge_expired_traces(datetime.now(UTC))
        if purged:
            logger.info("session event=traces_purged count=%d", purged)
        return purged

    def _resolve_pool(self, task_ids: list[str] | None) -> list[str]:
        if task_ids is None:
            pool = [task.task_id for task in sorted(self.storage.list_tasks(), key=lambda task: task.created_at)]
        else:
            pool = list(dict.fromkeys(task_ids))
            found = self.storage.get_tasks(pool)
            missing = [task_id for task_id in pool if task_id not in found]
            if missing:
                raise NotFoundError("Tasks not found", details={"missing_task_ids": missing})
        if len(pool) > self.max_task_pool:
            raise InvalidInputError(
                f"A session accepts at most {self.max_task_pool} tasks",
                details={"task_count": len(pool)},
            )
        return pool

    def _fail(self, session_id: str, message: str) -> SessionRecord:
        return self.storage.update_session(
            session_id,
            status="failed",
            error=message,
            completed_at=datetime.now(UTC),
        )
