"""Bridging Task Generator with a per-gap state machine.

Each gap moves ``loading -> success | error | requires_manual_examples``. From
``requires_manual_examples`` it returns to ``loading`` when the user supplies
one or two example texts, or explicitly skips them to accept a degraded,
lower-confidence generation.
"""

from __future__ import annotations

import logging
import re
import threading
import time
from concurrent.futures import ThreadPoolExecutor, TimeoutError, as_completed
from dataclasses import dataclass, replace
from datetime import UTC, datetime, timedelta
from typing import Annotated, Any, Callable, Literal
from uuid import uuid4

from pydantic import BaseModel, Field, StringConstraints, ValidationError

from agent_planner.errors import (
    EmbeddingError,
    ExtractionFailedError,
    GenerationTimeoutError,
    InvalidInputError,
    NotFoundError,
    PlannerError,
    UpstreamUnavailableError,
)
from agent_planner.gaps.detector import Gap
from agent_planner.retrieval.similarity import SearchHit, SimilarityService
from agent_planner.storage.base import PlannerStorage
from agent_planner.storage.models import TaskRecord

logger = logging.getLogger(__name__)

GapState = Literal["loading", "success", "error", "requires_manual_examples"]
GapErrorCode = Literal[
    "validation_error",
    "task_not_found",
    "no_suggestions",
    "requires_manual_examples",
    "embedding_error",
    "generation_timeout",
    "ai_service_error",
]

TRANSITIONS: dict[str, frozenset[str]] = {
    "loading": frozenset({"success", "error", "requires_manual_examples"}),
    "requires_manual_examples": frozenset({"loading"}),
    "success": frozenset(),
    "error": frozenset(),
}

CandidateStatus = Literal["proposed", "accepted", "rejected"]
CANDIDATE_TRANSITIONS: dict[str, frozenset[str]] = {
    "proposed": frozenset({"accepted", "rejected"}),
    "accepted": frozenset(),
    "rejected": frozenset(),
}

MAX_CANDIDATES = 3
_NORMALIZE = re.compile(r"[^a-z0-9]+")

ExampleText = Annotated[str, StringConstraints(strip_whitespace=True, min_length=10, max_length=200)]


class ManualExamples(BaseModel):
    examples: list[ExampleText] = Field(min_length=1, max_length=2)


class BridgingCandidate(BaseModel):
    candidate_id: str = Field(default_factory=lambda: str(uuid4()))
    gap_id: str
    task_text: str = Field(min_length=10, max_length=500)
    estimated_hours: int = Field(ge=8, le=160)
    cognition_level: Literal["low", "medium", "high"] = "medium"
    confidence: float = Field(ge=0.0, le=1.0)
    reasoning: str = ""
    status: CandidateStatus = "proposed"
    degraded: bool = False


class GapAnalysis(BaseModel):
    gap: Gap
    state: GapState = "loading"
    candidates: list[BridgingCandidate] = Field(default_factory=list)
    error_code: GapErrorCode | None = None
    error_message: str | None = None
    analogues: list[SearchHit] = Field(default_factory=list)
    search: dict[str, Any] | None = None
    manual_examples: list[str] = Field(default_factory=list)
    degraded: bool = False
    attempts: int = 0
    duration_ms: float = 0.0
    history: list[GapState] = Field(default_factory=lambda: ["loading"])
    updated_at: datetime = Field(default_factory=lambda: datetime.now(UTC))

    def transition(self, new_state: GapState) -> None:
        if new_state not in TRANSITIONS[self.state]:
            raise InvalidInputError(
                f"Gap cannot move from {self.state} to {new_state}",
                details={"gap_id": self.gap.gap_id},
            )
        self.state = new_state
        self.history.append(new_state)
        self.updated_at = datetime.now(UTC)


@dataclass(frozen=True)
class BridgingRequest:
    predecessor: TaskRecord
    successor: TaskRecord
    outcome_text: str | None
    analogues: list[SearchHit]
    manual_examples: list[str]
    degraded: bool
    attempt: int = 1


BridgeGenerator = Callable[[BridgingRequest], list[dict[str, Any]]]


class BridgingTaskGenerator:
    def __init__(
        self,
        storage: PlannerStorage,
        similarity: SimilarityService,
        generator: BridgeGenerator,
        *,
        search_threshold: float = 0.6,
        search_limit: int = 5,
        timeout_s: float = 8.0,
        max_attempts: int = 2,
        degraded_factor: float = 0.6,
        max_workers: int = 3,
        retention_s: float = 7 * 86400.0,
        max_analyses: int = 500,
    ) -> None:
        self.storage = storage
        self.similarity = similarity
        self.generator = generator
        self.search_threshold = search_threshold
        self.search_limit = search_limit
        self.timeout_s = timeout_s
        self.max_attempts = max_attempts
        self.degraded_factor = degraded_factor
        self.max_workers = max_workers
        self.retention = timedelta(seconds=retention_s)
        self.max_analyses = max_analyses
        self._analyses: dict[str, GapAnalysis] = {}
        self._analyses_lock = threading.Lock()

    def get_analysis(self, gap_id: str) -> GapAnalysis:
        with self._analyses_lock:
            analysis = self._analyses.get(gap_id)
        if analysis is None:
            raise NotFoundError("Gap analysis not found", details={"gap_id": gap_id})
        return analysis

    def find_candidate(
        self,
        gap_id: str,
        *,
        candidate_id: str | None = None,
        task_text: str | None = None,
    ) -> BridgingCandidate | None:
        """Look a candidate up by id, or else the proposed candidate whose text matches."""
        analysis = self.get_analysis(gap_id)
        with self._analyses_lock:
            if candidate_id is not None:
                return self._candidate_locked(analysis, candidate_id)
            if task_text is None:
                return None
            key = _normalize(task_text)
            for candidate in analysis.candidates:
                if candidate.status == "proposed" and _normalize(candidate.task_text) == key:
                    return candidate
        return None

    def set_candidate_status(self, gap_id: str, candidate_id: str, status: CandidateStatus) -> BridgingCandidate:
        analysis = self.get_analysis(gap_id)
        with self._analyses_lock:
            candidate = self._candidate_locked(analysis, candidate_id)
            if status not in CANDIDATE_TRANSITIONS[candidate.status]:
                raise InvalidInputError(
                    f"Candidate cannot move from {candidate.status} to {status}",
                    details={"gap_id": gap_id, "candidate_id": candidate_id},
                )
            candidate.status = status
            analysis.updated_at = datetime.now(UTC)
        logger.info("bridging event=candidate_%s gap_id=%s candidate_id=%s", status, gap_id, candidate_id)
        return candidate

    def reject_candidate(self, gap_id: str, candidate_id: str) -> BridgingCandidate:
        return self.set_candidate_status(gap_id, candidate_id, "rejected")

    def prune(self, now: datetime | None = None) -> int:
        """Drop settled analyses older than the retention window."""
        with self._analyses_lock:
            return self._prune_locked(now or datetime.now(UTC))

    def start(
        self,
        gap: Gap,
        *,
        outcome_text: str | None = None,
        manual_examples: list[str] | None = None,
        skip_examples: bool = False,
    ) -> GapAnalysis:
        analysis = GapAnalysis(gap=gap)
        with self._analyses_lock:
            self._prune_locked(datetime.now(UTC), reserve=1)
            self._analyses[gap.gap_id] = analysis
        if manual_examples:
            try:
                analysis.manual_examples = ManualExamples(examples=manual_examples).examples
            except ValidationError as exc:
                return self._fail(analysis, "validation_error", _first_error(exc))
        analysis.degraded = skip_examples and not analysis.manual_examples
        return self._run(analysis, outcome_text)

    def provide_examples(
        self,
        analysis: GapAnalysis,
        examples: list[str],
        *,
        outcome_text: str | None = None,
    ) -> GapAnalysis:
        self._require_manual_state(analysis)
        try:
            validated = ManualExamples(examples=examples).examples
        except ValidationError as exc:
            raise InvalidInputError(_first_error(exc), details={"gap_id": analysis.gap.gap_id}) from exc
        analysis.transition("loading")
        analysis.manual_examples = validated
        analysis.error_code = None
        analysis.error_message = None
        return self._run(analysis, outcome_text)

    def skip_examples(self, analysis: GapAnalysis, *, outcome_text: str | None = None) -> GapAnalysis:
        self._require_manual_state(analysis)
        analysis.transition("loading")
        analysis.degraded = True
        analysis.error_code = None
        analysis.error_message = None
        return self._run(analysis, outcome_text)

    def generate_all(
        self,
        gaps: list[Gap],
        *,
        outcome_text: str | None = None,
        manual_examples: dict[str, list[str]] | None = None,
        skip_gap_ids: set[str] | None = None,
    ) -> list[GapAnalysis]:
        """Analyse every gap concurrently; one failure never affects the others."""
        if not gaps:
            return []
        examples_by_gap = manual_examples or {}
        skipped = skip_gap_ids or set()
        settled: dict[str, GapAnalysis] = {}
        with ThreadPoolExecutor(max_workers=min(self.max_workers, len(gaps))) as pool:
            futures = {
                pool.submit(
                    self.start,
                    gap,
                    outcome_text=outcome_text,
                    manual_examples=examples_by_gap.get(gap.gap_id),
                    skip_examples=gap.gap_id in skipped,
                ): gap
                for gap in gaps
            }
            for future in as_completed(futures):
                gap = futures[future]
                try:
                    settled[gap.gap_id] = future.result()
                except Exception as exc:  # noqa: BLE001
                    logger.exception("bridging event=crashed gap_id=%s", gap.gap_id)
                    with self._analyses_lock:
                        crashed = self._analyses.setdefault(gap.gap_id, GapAnalysis(gap=gap))
                    if crashed.state != "loading":
                        crashed = GapAnalysis(gap=gap)
                    settled[gap.gap_id] = self._fail(crashed, "ai_service_error", str(exc))
        return [settled[gap.gap_id] for gap in gaps]

    def _run(self, analysis: GapAnalysis, outcome_text: str | None) -> GapAnalysis:
        started = time.perf_counter()
        try:
            return self._generate(analysis, outcome_text)
        finally:
            analysis.duration_ms = round((time.perf_counter() - started) * 1000.0, 2)
            logger.info(
                "bridging event=settled gap_id=%s state=%s error_code=%s candidates=%d degraded=%s",
                analysis.gap.gap_id,
                analysis.state,
                analysis.error_code,
                len(analysis.candidates),
                analysis.degraded,
            )

    def _generate(self, analysis: GapAnalysis, outcome_text: str | None) -> GapAnalysis:
        gap = analysis.gap
        tasks = self.storage.get_tasks([gap.predecessor_task_id, gap.successor_task_id])
        predecessor = tasks.get(gap.predecessor_task_id)
        successor = tasks.get(gap.successor_task_id)
        if predecessor is None or successor is None:
            return self._fail(analysis, "task_not_found", "Predecessor or successor task not found")

        query = f"{predecessor.task_text} followed by {successor.task_text}"
        try:
            result = self.similarity.search_text(
                query,
                threshold=self.search_threshold,
                limit=min(100, self.search_limit + 2),
            )
        except InvalidInputError as exc:
            return self._fail(analysis, "validation_error", exc.message)
        except (EmbeddingError, UpstreamUnavailableError) as exc:
            return self._fail(analysis, "embedding_error", exc.message)

        excluded = {predecessor.task_id, successor.task_id}
        analysis.analogues = [hit for hit in result.hits if hit.task_id not in excluded][: self.search_limit]
        analysis.search = {
            "requested_threshold": result.requested_threshold,
            "applied_threshold": result.applied_threshold,
            "relaxed": result.relaxed,
        }

        if not analysis.analogues and not analysis.manual_examples and not analysis.degraded:
            analysis.transition("requires_manual_examples")
            analysis.error_code = "requires_manual_examples"
            analysis.error_message = "No analogous tasks found; provide 1-2 examples or skip."
            return analysis

        request = BridgingRequest(
            predecessor=predecessor,
            successor=successor,
            outcome_text=outcome_text,
            analogues=analysis.analogues,
            manual_examples=analysis.manual_examples,
            degraded=analysis.degraded,
        )
        try:
            raw = self._call_generator(request, analysis)
        except GenerationTimeoutError as exc:
            return self._fail(analysis, "generation_timeout", exc.message)
        except InvalidInputError as exc:
            return self._fail(analysis, "validation_error", exc.message)
        except PlannerError as exc:
            return self._fail(analysis, "ai_service_error", exc.message)

        analysis.candidates = self._validate_candidates(raw, analysis, predecessor, successor)
        if not analysis.candidates:
            return self._fail(analysis, "no_suggestions", "Generation produced no usable bridging tasks")
        analysis.transition("success")
        return analysis

    def _call_generator(self, request: BridgingRequest, analysis: GapAnalysis) -> Any:
        last_error: PlannerError | None = None
        for attempt in range(1, self.max_attempts + 1):
            analysis.attempts += 1
            pool = ThreadPoolExecutor(max_workers=1)
            try:
                future = pool.submit(self.generator, replace(request, attempt=attempt))
                return future.result(timeout=self.timeout_s)
            except TimeoutError:
                last_error = GenerationTimeoutError(f"Generation timed out after {self.timeout_s:.1f}s")
            except (UpstreamUnavailableError, ExtractionFailedError) as exc:
                last_error = exc
            finally:
                pool.shutdown(wait=False, cancel_futures=True)
            logger.warning(
                "bridging event=generation_retry gap_id=%s attempt=%d/%d reason=%s",
                analysis.gap.gap_id,
                attempt,
                self.max_attempts,
                last_error,
            )
        if last_error is None:
            raise GenerationTimeoutError("Generation produced no attempts")
        raise last_error

    def _validate_candidates(
        self,
        raw: Any,
        analysis: GapAnalysis,
        predecessor: TaskRecord,
        successor: TaskRecord,
    ) -> list[BridgingCandidate]:
        if not isinstance(raw, list):
            return []
        seen = {_normalize(predecessor.task_text), _normalize(successor.task_text)}
        candidates: list[BridgingCandidate] = []
        for item in raw:
            if not isinstance(item, dict):
                continue
            payload = dict(item)
            hours = payload.get("estimated_hours")
            if isinstance(hours, (int, float)):
                payload["estimated_hours"] = min(160, max(8, int(round(hours))))
            confidence = payload.get("confidence")
            if isinstance(confidence, (int, float)) and analysis.degraded:
                payload["confidence"] = round(float(confidence) * self.degraded_factor, 4)
            fields = {key: value for key, value in payload.items() if key in _CANDIDATE_FIELDS}
            try:
                candidate = BridgingCandidate(gap_id=analysis.gap.gap_id, degraded=analysis.degraded, **fields)
            except ValidationError:
                logger.info("bridging event=candidate_dropped gap_id=%s", analysis.gap.gap_id)
                continue
            key = _normalize(candidate.task_text)
            if key in seen:
                continue
            seen.add(key)
            candidates.append(candidate)
        candidates.sort(key=lambda candidate: -candidate.confidence)
        return candidates[:MAX_CANDIDATES]

    def _prune_locked(self, now: datetime, *, reserve: int = 0) -> int:
        cutoff = now - self.retention
        expired = [
            gap_id
            for gap_id, analysis in self._analyses.items()
            if analysis.state != "loading" and analysis.updated_at <= cutoff
        ]
        for gap_id in expired:
            del self._analyses[gap_id]

        evicted = 0
        overflow = len(self._analyses) + reserve - self.max_analyses
        if overflow > 0:
            settled = sorted(
                (analysis for analysis in self._analyses.values() if analysis.state != "loading"),
                key=lambda analysis: analysis.updated_at,
            )
            for analysis in settled[:overflow]:
                del self._analyses[analysis.gap.gap_id]
                evicted += 1

        if expired or evicted:
            logger.info("bridging event=pruned expired=%d evicted=%d", len(expired), evicted)
        return len(expired) + evicted

    @staticmethod
    def _candidate_locked(analysis: GapAnalysis, candidate_id: str) -> BridgingCandidate:
        for candidate in analysis.candidates:
            if candidate.candidate_id == candidate_id:
                return candidate
        raise NotFoundError(
            "Bridging candidate not found",
            details={"gap_id": analysis.gap.gap_id, "candidate_id": candidate_id},
        )

    @staticmethod
    def _require_manual_state(analysis: GapAnalysis) -> None:
        if analysis.state != "requires_manual_examples":
            raise InvalidInputError(
                "Gap is not waiting for manual examples",
                details={"gap_id": analysis.gap.gap_id, "state": analysis.state},
            )

    @staticmethod
    def _fail(analysis: GapAnalysis, code: GapErrorCode, message: str) -> GapAnalysis:
        analysis.transition("error")
        analysis.error_code = code
        analysis.error_message = message
        return analysis


_CANDIDATE_FIELDS = {"task_text", "estimated_hours", "cognition_level", "confidence", "reasoning"}


def _normalize(text: str) -> str:
    return _NORMALIZE.sub(" ", text.lower()).strip()


def _first_error(exc: ValidationError) -> str:
    errors = exc.errors(include_url=False)
    if not errors:
        return "Invalid manual examples"
    return f"Invalid manual examples: {errors[0].get('msg', 'invalid value')}"
