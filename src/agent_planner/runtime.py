"""Wiring of storage, embeddings, analysis services and the reasoning loop."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Callable

from agent_planner.config.settings import Settings
from agent_planner.gaps.bridging import BridgeGenerator, BridgingTaskGenerator
from agent_planner.gaps.detector import GapDetector
from agent_planner.graph.context import LoopContext
from agent_planner.graph.policy import DeterministicPolicy, LLMPolicy, StepPolicy
from agent_planner.openai_client import resolve_llm_adapter
from agent_planner.planning.acceptance import BridgingAcceptanceService
from agent_planner.planning.clustering import ClusteringEngine
from agent_planner.planning.context import DocumentContextService
from agent_planner.planning.dependencies import DependencyAnalyzer, DependencyExtractor
from agent_planner.planning.graph_store import TaskGraphStore
from agent_planner.retrieval.embeddings import Embedder, build_embedder
from agent_planner.retrieval.similarity import SimilarityService
from agent_planner.sessions.manager import SessionManager
from agent_planner.storage.base import PlannerStorage
from agent_planner.tools import deterministic
from agent_planner.tools.gateway import ToolExecutor
from agent_planner.tools.llm import (
    build_openai_bridge_generator,
    build_openai_dependency_extractor,
    build_openai_step_decider,
)
from agent_planner.tools.registry import ToolSpec, build_registry

logger = logging.getLogger(__name__)

StepDecider = Callable[[dict[str, Any]], dict[str, Any]]


@dataclass
class PlannerRuntime:
    settings: Settings
    storage: PlannerStorage
    embedder: Embedder
    similarity: SimilarityService
    graph_store: TaskGraphStore
    dependency_analyzer: DependencyAnalyzer
    clustering: ClusteringEngine
    context_service: DocumentContextService
    gap_detector: GapDetector
    bridging: BridgingTaskGenerator
    acceptance: BridgingAcceptanceService
    step_decider: StepDecider | None = None
    extraction_mode: str = "deterministic"
    telemetry: dict[str, Any] = field(default_factory=dict)
    sessions: SessionManager = field(init=False)

    def __post_init__(self) -> None:
        self.sessions = SessionManager(
            self.storage,
            self.loop_context,
            max_task_pool=self.settings.max_task_pool,
            trace_retention_days=self.settings.trace_retention_days,
            cleanup_interval_s=self.settings.trace_cleanup_interval_s,
        )

    def registry(self, user_id: str) -> dict[str, ToolSpec]:
        return build_registry(
            storage=self.storage,
            similarity=self.similarity,
            dependency_analyzer=self.dependency_analyzer,
            clustering=self.clustering,
            context_service=self.context_service,
            graph_store=self.graph_store,
            user_id=user_id,
            extraction_mode=self.extraction_mode,
        )

    def tool_executor(self, user_id: str) -> ToolExecutor:
        return ToolExecutor(
            registry=self.registry(user_id),
            tool_timeout_s=self.settings.tool_timeout_s,
            max_retries=self.settings.tool_max_retries,
            backoff_s=self.settings.tool_retry_backoff_s,
        )

    def policy(self) -> StepPolicy:
        if self.step_decider is None:
            return DeterministicPolicy()
        return LLMPolicy(self.step_decider, requested_mode=self.settings.planner_mode)

    def loop_context(self, user_id: str) -> LoopContext:
        return LoopContext(
            policy=self.policy(),
            executor=self.tool_executor(user_id),
            storage=self.storage,
            max_steps=self.settings.max_reasoning_steps,
            budget_s=self.settings.session_budget_s,
            search_threshold=self.settings.search_default_threshold,
            search_limit=self.settings.search_default_limit,
            cluster_threshold=self.settings.cluster_default_threshold,
        )


def build_runtime(
    settings: Settings,
    storage: PlannerStorage,
    *,
    embedder: Embedder | None = None,
    dependency_extractor: DependencyExtractor | None = None,
    bridge_generator: BridgeGenerator | None = None,
    step_decider: StepDecider | None = None,
) -> PlannerRuntime:
    """Build every service from settings; explicit callables override the configured modes."""
    embedder = embedder or build_embedder(settings)
    telemetry: dict[str, Any] = {}

    executor_resolution = resolve_llm_adapter(settings, requested_mode=settings.executor_mode)
    telemetry["executor"] = executor_resolution.telemetry()
    extraction_mode = executor_resolution.effective_mode
    if executor_resolution.adapter is not None:
        dependency_extractor = dependency_extractor or build_openai_dependency_extractor(
            executor_resolution.adapter, timeout_s=settings.llm_timeout_s
        )
        bridge_generator = bridge_generator or build_openai_bridge_generator(
            executor_resolution.adapter, timeout_s=settings.llm_timeout_s
        )
    if dependency_extractor is not None and executor_resolution.adapter is None:
        extraction_mode = "custom"

    planner_resolution = resolve_llm_adapter(settings, requested_mode=settings.planner_mode)
    telemetry["planner"] = planner_resolution.telemetry()
    if step_decider is None and planner_resolution.adapter is not None:
        step_decider = build_openai_step_decider(planner_resolution.adapter, timeout_s=settings.llm_timeout_s)

    for component, resolution in (("executor", executor_resolution), ("planner", planner_resolution)):
        if resolution.fallback_reason:
            logger.warning("runtime event=llm_fallback component=%s reason=%s", component, resolution.fallback_reason)

    similarity = SimilarityService(
        storage,
        embedder,
        relaxation_step=settings.relaxation_step,
        relaxation_floor=settings.relaxation_floor,
        max_relaxations=settings.relaxation_max_retries,
    )
    graph_store = TaskGraphStore(storage, policy=settings.cycle_policy)
    bridging = BridgingTaskGenerator(
        storage,
        similarity,
        bridge_generator or deterministic.generate_bridging_tasks,
        search_threshold=settings.bridging_search_threshold,
        search_limit=settings.bridging_search_limit,
        timeout_s=settings.bridging_timeout_s,
        max_attempts=settings.bridging_max_attempts,
        degraded_factor=settings.bridging_degraded_confidence_factor,
        max_workers=settings.gap_max_workers,
        retention_s=settings.trace_retention_days * 86400.0,
        max_analyses=settings.gap_analysis_max_entries,
    )
    return PlannerRuntime(
        settings=settings,
        storage=storage,
        embedder=embedder,
        similarity=similarity,
        graph_store=graph_store,
        dependency_analyzer=DependencyAnalyzer(
            storage,
            graph_store,
            dependency_extractor or deterministic.extract_dependencies,
        ),
        clustering=ClusteringEngine(storage, default_threshold=settings.cluster_default_threshold),
        context_service=DocumentContextService(storage, chunk_chars=settings.document_chunk_chars),
        gap_detector=GapDetector(
            storage,
            graph_store,
            time_gap_days=settings.gap_time_gap_days,
            max_gaps=settings.gap_max_results,
        ),
        bridging=bridging,
        acceptance=BridgingAcceptanceService(
            storage,
            similarity,
            graph_store,
            duplicate_threshold=settings.duplicate_similarity_threshold,
            coverage_alert_threshold=settings.coverage_alert_threshold,
            bridging=bridging,
        ),
        step_decider=step_decider,
        extraction_mode=extraction_mode,
        telemetry=telemetry,
    )
