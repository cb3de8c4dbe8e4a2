"""FastAPI app entrypoint for agent-planner."""

from __future__ import annotations

from contextlib import asynccontextmanager
from typing import Any

from fastapi import BackgroundTasks, FastAPI, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from agent_planner.config.settings import Settings, get_settings
from agent_planner.errors import InvalidInputError, PlannerError
from agent_planner.gaps.bridging import GapAnalysis
from agent_planner.ingest import TaskInput, register_document, register_tasks
from agent_planner.planning.acceptance import AcceptanceResult, AcceptedBridgingTask
from agent_planner.planning.graph_store import CyclePolicy
from agent_planner.runtime import PlannerRuntime, build_runtime
from agent_planner.sessions.manager import GoalContext
from agent_planner.storage.base import PlannerStorage
from agent_planner.storage.models import DocumentRecord, TaskRecord
from agent_planner.storage.postgres import PostgresPlannerStorage
from agent_planner.tools import list_tools
from agent_planner.tools.schemas import ClusterBySimilarityInput, SemanticSearchInput


class RegisterTasksRequest(BaseModel):
    tasks: list[TaskInput] = Field(min_length=1, max_length=200)


class RegisterDocumentRequest(BaseModel):
    document_id: str = Field(min_length=1)
    filename: str = Field(min_length=1)
    markdown: str


class DetectDependenciesRequest(BaseModel):
    task_ids: list[str]
    use_document_context: bool = False
    user_id: str = "system"


class CreateSessionRequest(BaseModel):
    user_id: str = Field(min_length=1)
    goal: GoalContext
    task_ids: list[str] | None = None


class DetectGapsRequest(BaseModel):
    session_id: str | None = None
    task_ids: list[str] | None = None


class GenerateBridgesRequest(BaseModel):
    session_id: str | None = None
    task_ids: list[str] | None = None
    outcome_text: str | None = Field(default=None, max_length=500)
    manual_examples: dict[str, list[str]] = Field(default_factory=dict)
    skip_gap_ids: list[str] = Field(default_factory=list)


class ManualExamplesRequest(BaseModel):
    examples: list[str]
    outcome_text: str | None = Field(default=None, max_length=500)


class SkipExamplesRequest(BaseModel):
    outcome_text: str | None = Field(default=None, max_length=500)


class AcceptBridgesRequest(BaseModel):
    user_id: str = Field(min_length=1)
    session_id: str = Field(min_length=1)
    tasks: list[AcceptedBridgingTask] = Field(min_length=1)
    cycle_policy: CyclePolicy | None = None


class ResolveReviewRequest(BaseModel):
    user_id: str = Field(min_length=1)
    source_task_id: str = Field(min_length=1)
    target_task_id: str = Field(min_length=1)
    relationship_type: str = Field(min_length=1)
    approve: bool


def _ensure_runtime_state(
    app: FastAPI,
    *,
    settings: Settings,
    storage_override: PlannerStorage | None,
    runtime_override: PlannerRuntime | None,
) -> None:
    if not hasattr(app.state, "runtime"):
        if runtime_override is not None:
            app.state.runtime = runtime_override
        else:
            database_url = settings.resolved_database_url()
            if storage_override is None and not database_url:
                raise RuntimeError(
                    "Missing database URL. Set AGENT_PLANNER_DATABASE_URL "
                    "or DATABASE_URL before starting the app."
                )
            storage = storage_override or PostgresPlannerStorage(database_url)
            storage.migrate()
            app.state.runtime = build_runtime(settings, storage)

    if not hasattr(app.state, "settings"):
        app.state.settings = settings


def create_app(
    *,
    storage: PlannerStorage | None = None,
    settings_override: Settings | None = None,
    runtime: PlannerRuntime | None = None,
) -> FastAPI:
    settings = settings_override or (runtime.settings if runtime is not None else get_settings())
    eager = storage is not None or runtime is not None

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        _ensure_runtime_state(
            app,
            settings=settings,
            storage_override=storage,
            runtime_override=runtime,
        )
        yield

    app = FastAPI(title=settings.app_name, lifespan=None if eager else lifespan)

    # Keep test paths reliable when lifespan is not executed by the client.
    if eager:
        _ensure_runtime_state(
            app,
            settings=settings,
            storage_override=storage,
            runtime_override=runtime,
        )

    def _runtime(request: Request) -> PlannerRuntime:
        if not hasattr(request.app.state, "runtime"):
            _ensure_runtime_state(
                request.app,
                settings=settings,
                storage_override=storage,
                runtime_override=runtime,
            )
        return request.app.state.runtime

    @app.exception_handler(PlannerError)
    async def planner_error_handler(request: Request, exc: PlannerError) -> JSONResponse:
        return JSONResponse(status_code=exc.http_status, content=exc.to_payload())

    @app.get("/health")
    def health() -> dict[str, str]:
        return {"status": "ok", "service": settings.app_name}

    @app.get("/tools")
    def tools() -> dict[str, list[str]]:
        return {"tools": list_tools()}

    @app.post("/tasks")
    def create_tasks(payload: RegisterTasksRequest, request: Request) -> dict[str, list[TaskRecord]]:
        rt = _runtime(request)
        return {"tasks": register_tasks(rt.storage, rt.embedder, payload.tasks)}

    @app.post("/documents", response_model=DocumentRecord)
    def create_document(payload: RegisterDocumentRequest, request: Request) -> DocumentRecord:
        return register_document(
            _runtime(request).storage,
            document_id=payload.document_id,
            filename=payload.filename,
            markdown=payload.markdown,
        )

    @app.post("/embeddings/search")
    def search(payload: SemanticSearchInput, request: Request) -> dict[str, Any]:
        result = _runtime(request).similarity.search_text(
            payload.query, threshold=payload.threshold, limit=payload.limit
        )
        return {**result.model_dump(mode="json"), "count": result.count}

    @app.post("/dependencies/detect")
    def detect_dependencies(payload: DetectDependenciesRequest, request: Request) -> dict[str, Any]:
        return _runtime(request).dependency_analyzer.analyze(
            payload.task_ids,
            use_document_context=payload.use_document_context,
            user_id=payload.user_id,
        )

    @app.post("/clusters")
    def clusters(payload: ClusterBySimilarityInput, request: Request) -> dict[str, Any]:
        return _runtime(request).clustering.cluster(payload.task_ids, threshold=payload.similarity_threshold)

    @app.post("/sessions", status_code=202)
    def create_session(
        payload: CreateSessionRequest,
        request: Request,
        background_tasks: BackgroundTasks,
    ) -> dict[str, Any]:
        rt = _runtime(request)
        record = rt.sessions.start(payload.user_id, payload.goal, payload.task_ids)
        background_tasks.add_task(rt.sessions.run, record.session_id)
        return record.model_dump(mode="json", exclude={"steps"})

    @app.get("/sessions/{session_id}")
    def get_session(session_id: str, request: Request) -> dict[str, Any]:
        record = _runtime(request).sessions.get(session_id)
        return record.model_dump(mode="json", exclude={"steps"})

    @app.get("/sessions/{session_id}/trace")
    def get_trace(session_id: str, request: Request) -> dict[str, Any]:
        steps = _runtime(request).sessions.trace(session_id)
        return {"session_id": session_id, "steps": [step.model_dump(mode="json") for step in steps]}

    @app.get("/users/{user_id}/sessions/current")
    def current_session(user_id: str, request: Request) -> dict[str, Any]:
        record = _runtime(request).sessions.current(user_id)
        return record.model_dump(mode="json", exclude={"steps"})

    @app.post("/gaps/detect")
    def detect_gaps(payload: DetectGapsRequest, request: Request) -> dict[str, Any]:
        rt = _runtime(request)
        order, _ = _resolve_order(rt, payload.session_id, payload.task_ids)
        result = rt.gap_detector.detect(order)
        return {
            "gaps": [gap.model_dump(mode="json") for gap in result["gaps"]],
            "metadata": result["metadata"],
        }

    @app.post("/gaps/generate")
    def generate_bridges(payload: GenerateBridgesRequest, request: Request) -> dict[str, Any]:
        rt = _runtime(request)
        order, outcome = _resolve_order(rt, payload.session_id, payload.task_ids)
        detection = rt.gap_detector.detect(order)
        analyses = rt.bridging.generate_all(
            detection["gaps"],
            outcome_text=payload.outcome_text or outcome,
            manual_examples=payload.manual_examples,
            skip_gap_ids=set(payload.skip_gap_ids),
        )
        return {
            "gaps": [_analysis_payload(analysis) for analysis in analyses],
            "metadata": detection["metadata"],
        }

    @app.get("/gaps/{gap_id}")
    def get_gap(gap_id: str, request: Request) -> dict[str, Any]:
        return _analysis_payload(_runtime(request).bridging.get_analysis(gap_id))

    @app.post("/gaps/{gap_id}/examples")
    def provide_examples(gap_id: str, payload: ManualExamplesRequest, request: Request) -> dict[str, Any]:
        bridging = _runtime(request).bridging
        analysis = bridging.provide_examples(
            bridging.get_analysis(gap_id), payload.examples, outcome_text=payload.outcome_text
        )
        return _analysis_payload(analysis)

    @app.post("/gaps/{gap_id}/skip")
    def skip_examples(gap_id: str, payload: SkipExamplesRequest, request: Request) -> dict[str, Any]:
        bridging = _runtime(request).bridging
        analysis = bridging.skip_examples(bridging.get_analysis(gap_id), outcome_text=payload.outcome_text)
        return _analysis_payload(analysis)

    @app.post("/gaps/accept", response_model=AcceptanceResult)
    def accept_bridges(payload: AcceptBridgesRequest, request: Request) -> AcceptanceResult:
        return _runtime(request).acceptance.accept(
            payload.user_id,
            payload.session_id,
            payload.tasks,
            policy=payload.cycle_policy,
        )

    @app.post("/gaps/{gap_id}/candidates/{candidate_id}/reject")
    def reject_candidate(gap_id: str, candidate_id: str, request: Request) -> dict[str, Any]:
        candidate = _runtime(request).bridging.reject_candidate(gap_id, candidate_id)
        return candidate.model_dump(mode="json")

    @app.get("/graph/review-queue")
    def review_queue(request: Request) -> dict[str, Any]:
        records = _runtime(request).graph_store.review_queue()
        return {"relationships": [record.model_dump(mode="json") for record in records]}

    @app.post("/graph/review-queue/resolve")
    def resolve_review(payload: ResolveReviewRequest, request: Request) -> dict[str, Any]:
        result = _runtime(request).graph_store.resolve_review(
            (payload.source_task_id, payload.target_task_id, payload.relationship_type),
            approve=payload.approve,
            user_id=payload.user_id,
        )
        return {"approved": result is not None, "graph_mutation": result.summary() if result else None}

    @app.post("/maintenance/cleanup")
    def cleanup(request: Request) -> dict[str, int]:
        rt = _runtime(request)
        return {
            "purged": rt.sessions.maybe_cleanup(force=True),
            "gap_analyses_pruned": rt.bridging.prune(),
        }

    return app


app = create_app()


def _resolve_order(
    rt: PlannerRuntime,
    session_id: str | None,
    task_ids: list[str] | None,
) -> tuple[list[str], str | None]:
    if session_id:
        record = rt.sessions.get(session_id)
        if record.plan is None:
            raise InvalidInputError("Session has no plan yet", details={"session_id": session_id})
        return list(record.plan.get("ordered_task_ids", [])), record.goal.get("outcome_text")
    if task_ids:
        return list(task_ids), None
    raise InvalidInputError("Provide a session_id or an ordered list of task_ids")


def _analysis_payload(analysis: GapAnalysis) -> dict[str, Any]:
    return analysis.model_dump(mode="json")
