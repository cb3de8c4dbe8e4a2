import time
from datetime import UTC, datetime, timedelta
from typing import Any

import pytest

from agent_planner.errors import InvalidInputError, NotFoundError, UpstreamUnavailableError
from agent_planner.gaps.bridging import BridgingRequest, BridgingTaskGenerator
from agent_planner.gaps.detector import Gap
from agent_planner.retrieval.similarity import SimilarityService
from agent_planner.tools.deterministic import generate_bridging_tasks

EXAMPLE = "Draft rollout checklist for support"


class RecordingGenerator:
    def __init__(self, fn=generate_bridging_tasks) -> None:
        self.fn = fn
        self.requests: list[BridgingRequest] = []

    def __call__(self, request: BridgingRequest) -> list[dict[str, Any]]:
        self.requests.append(request)
        return self.fn(request)


def _gap(predecessor: str = "r", successor: str = "d", gap_id: str = "gap-1") -> Gap:
    return Gap(
        gap_id=gap_id,
        predecessor_task_id=predecessor,
        successor_task_id=successor,
        confidence=0.75,
        indicators={"time_gap": True, "action_type_jump": True, "no_dependency": True, "skill_jump": False},
        detected_at=datetime.now(UTC),
    )


def _seed(add_task) -> None:
    add_task("r", "Research onboarding interviews", [1.0, 0.0, 0.0, 0.0])
    add_task("d", "Deploy onboarding pipeline", [0.0, 1.0, 0.0, 0.0])


@pytest.fixture
def make_generator(storage, vector_embedder):
    def _make(fn=None, **kwargs: Any) -> tuple[BridgingTaskGenerator, RecordingGenerator]:
        recorder = RecordingGenerator(fn or generate_bridging_tasks)
        similarity = SimilarityService(storage, vector_embedder({}))
        return BridgingTaskGenerator(storage, similarity, recorder, **kwargs), recorder

    return _make


def test_no_analogues_and_no_examples_requires_manual_input(make_generator, add_task) -> None:
    _seed(add_task)
    generator, recorder = make_generator()

    analysis = generator.start(_gap())

    assert analysis.state == "requires_manual_examples"
    assert analysis.error_code == "requires_manual_examples"
    assert analysis.candidates == []
    assert analysis.search["relaxed"] is True
    assert recorder.requests == []
    assert generator.get_analysis("gap-1") is analysis


def test_manual_examples_resume_generation(make_generator, add_task) -> None:
    _seed(add_task)
    generator, recorder = make_generator()
    analysis = generator.start(_gap())

    analysis = generator.provide_examples(analysis, [EXAMPLE], outcome_text="Smooth onboarding")

    assert analysis.state == "success"
    assert analysis.history == ["loading", "requires_manual_examples", "loading", "success"]
    assert analysis.error_code is None
    assert 1 <= len(analysis.candidates) <= 3
    assert analysis.candidates[0].task_text.startswith(EXAMPLE)
    assert recorder.requests[0].manual_examples == [EXAMPLE]
    assert recorder.requests[0].outcome_text == "Smooth onboarding"
    assert all(8 <= candidate.estimated_hours <= 160 for candidate in analysis.candidates)


def test_skipping_examples_generates_degraded_candidates(make_generator, add_task) -> None:
    _seed(add_task)
    generator, recorder = make_generator()
    analysis = generator.start(_gap())

    analysis = generator.skip_examples(analysis)

    assert analysis.state == "success"
    assert analysis.degraded is True
    assert recorder.requests[0].degraded is True
    assert all(candidate.degraded for candidate in analysis.candidates)
    assert [candidate.confidence for candidate in analysis.candidates] == [0.39, 0.39, 0.39]


def test_skip_requested_up_front_bypasses_manual_state(make_generator, add_task) -> None:
    _seed(add_task)
    generator, _ = make_generator()

    analysis = generator.start(_gap(), skip_examples=True)

    assert analysis.state == "success"
    assert analysis.history == ["loading", "success"]


def test_analogues_feed_generation_directly(make_generator, add_task) -> None:
    _seed(add_task)
    add_task("analog", "Pilot onboarding staging rollout", [0.0, 0.0, 0.0, 1.0])
    generator, recorder = make_generator()

    analysis = generator.start(_gap())

    assert analysis.state == "success"
    assert [hit.task_id for hit in analysis.analogues] == ["analog"]
    assert recorder.requests[0].analogues[0].task_id == "analog"


@pytest.mark.parametrize("examples", [[], ["too short"], [EXAMPLE, EXAMPLE, EXAMPLE], ["x" * 201]])
def test_invalid_examples_keep_waiting(make_generator, add_task, examples) -> None:
    _seed(add_task)
    generator, _ = make_generator()
    analysis = generator.start(_gap())

    with pytest.raises(InvalidInputError):
        generator.provide_examples(analysis, examples)

    assert analysis.state == "requires_manual_examples"


def test_examples_are_rejected_outside_the_waiting_state(make_generator, add_task) -> None:
    _seed(add_task)
    generator, _ = make_generator()
    analysis = generator.start(_gap(), manual_examples=[EXAMPLE])
    assert analysis.state == "success"

    with pytest.raises(InvalidInputError):
        generator.provide_examples(analysis, [EXAMPLE])
    with pytest.raises(InvalidInputError):
        generator.skip_examples(analysis)


def test_invalid_examples_at_start_are_a_validation_error(make_generator, add_task) -> None:
    _seed(add_task)
    generator, recorder = make_generator()

    analysis = generator.start(_gap(), manual_examples=["short"])

    assert analysis.state == "error"
    assert analysis.error_code == "validation_error"
    assert recorder.requests == []


def test_missing_task_is_reported(make_generator, add_task) -> None:
    _seed(add_task)
    generator, _ = make_generator()

    analysis = generator.start(_gap(successor="ghost"))

    assert analysis.state == "error"
    assert analysis.error_code == "task_not_found"


def test_unusable_output_is_no_suggestions(make_generator, add_task) -> None:
    _seed(add_task)

    def _useless(request: BridgingRequest) -> list[dict[str, Any]]:
        return [
            {"task_text": "tiny", "estimated_hours": 10, "confidence": 0.5},
            {"task_text": "Research onboarding interviews", "estimated_hours": 10, "confidence": 0.5},
        ]

    generator, _ = make_generator(_useless)

    analysis = generator.start(_gap(), skip_examples=True)

    assert analysis.error_code == "no_suggestions"


def test_candidate_hours_are_clamped_and_ranked(make_generator, add_task) -> None:
    _seed(add_task)

    def _raw(request: BridgingRequest) -> list[dict[str, Any]]:
        return [
            {"task_text": "Write onboarding support macros", "estimated_hours": 2, "confidence": 0.4},
            {"task_text": "Run onboarding pilot with two teams", "estimated_hours": 400, "confidence": 0.8},
            {"task_text": "Run onboarding pilot with two teams!", "estimated_hours": 20, "confidence": 0.9},
        ]

    generator, _ = make_generator(_raw)

    analysis = generator.start(_gap(), manual_examples=[EXAMPLE])

    assert [candidate.estimated_hours for candidate in analysis.candidates] == [160, 8]
    assert [candidate.confidence for candidate in analysis.candidates] == [0.8, 0.4]


def test_slow_generation_times_out_after_retries(make_generator, add_task) -> None:
    _seed(add_task)

    def _slow(request: BridgingRequest) -> list[dict[str, Any]]:
        time.sleep(0.3)
        return []

    generator, recorder = make_generator(_slow, timeout_s=0.05, max_attempts=2)

    analysis = generator.start(_gap(), skip_examples=True)

    assert analysis.state == "error"
    assert analysis.error_code == "generation_timeout"
    assert analysis.attempts == 2


def test_transient_upstream_failure_is_retried(make_generator, add_task) -> None:
    _seed(add_task)
    attempts: list[int] = []

    def _flaky(request: BridgingRequest) -> list[dict[str, Any]]:
        attempts.append(request.attempt)
        if request.attempt == 1:
            raise UpstreamUnavailableError("rate limited")
        return generate_bridging_tasks(request)

    generator, _ = make_generator(_flaky)

    analysis = generator.start(_gap(), skip_examples=True)

    assert analysis.state == "success"
    assert attempts == [1, 2]


def test_fan_out_settles_every_gap(make_generator, add_task) -> None:
    _seed(add_task)
    add_task("t", "Test onboarding pipeline", [0.0, 0.0, 1.0, 0.0])

    def _crash_on_test(request: BridgingRequest) -> list[dict[str, Any]]:
        if request.predecessor.task_id == "t":
            raise RuntimeError("generator exploded")
        return generate_bridging_tasks(request)

    generator, _ = make_generator(_crash_on_test)
    gaps = [_gap("r", "d", "g1"), _gap("t", "d", "g2"), _gap("r", "t", "g3")]

    analyses = generator.generate_all(gaps, manual_examples={"g1": [EXAMPLE]}, skip_gap_ids={"g2", "g3"})

    assert [analysis.gap.gap_id for analysis in analyses] == ["g1", "g2", "g3"]
    assert [analysis.state for analysis in analyses] == ["success", "error", "success"]
    assert analyses[1].error_code == "ai_service_error"
    assert generator.get_analysis("g2").state == "error"


def test_unknown_gap_analysis_is_not_found(make_generator) -> None:
    generator, _ = make_generator()

    with pytest.raises(NotFoundError):
        generator.get_analysis("nope")


def test_candidates_move_from_proposed_to_rejected_once(make_generator, add_task) -> None:
    _seed(add_task)
    generator, _ = make_generator()
    analysis = generator.start(_gap(), manual_examples=[EXAMPLE])
    candidate = analysis.candidates[0]
    assert candidate.status == "proposed"

    rejected = generator.reject_candidate("gap-1", candidate.candidate_id)

    assert rejected.status == "rejected"
    assert generator.find_candidate("gap-1", task_text=candidate.task_text) is None
    with pytest.raises(InvalidInputError):
        generator.reject_candidate("gap-1", candidate.candidate_id)
    with pytest.raises(InvalidInputError):
        generator.set_candidate_status("gap-1", candidate.candidate_id, "accepted")


def test_accepted_candidate_is_terminal(make_generator, add_task) -> None:
    _seed(add_task)
    generator, _ = make_generator()
    analysis = generator.start(_gap(), manual_examples=[EXAMPLE])
    candidate = analysis.candidates[0]

    assert generator.find_candidate("gap-1", task_text=f"  {candidate.task_text.upper()} ") is candidate
    generator.set_candidate_status("gap-1", candidate.candidate_id, "accepted")

    with pytest.raises(InvalidInputError):
        generator.reject_candidate("gap-1", candidate.candidate_id)
    with pytest.raises(NotFoundError):
        generator.reject_candidate("gap-1", "no-such-candidate")
    with pytest.raises(NotFoundError):
        generator.reject_candidate("no-such-gap", candidate.candidate_id)


def test_settled_analyses_expire_after_retention(make_generator, add_task) -> None:
    _seed(add_task)
    generator, _ = make_generator(retention_s=3600.0)
    generator.start(_gap(gap_id="old"), skip_examples=True)

    assert generator.prune() == 0
    assert generator.prune(now=datetime.now(UTC) + timedelta(hours=2)) == 1
    with pytest.raises(NotFoundError):
        generator.get_analysis("old")


def test_analysis_store_is_bounded(make_generator, add_task) -> None:
    _seed(add_task)
    generator, _ = make_generator(max_analyses=2)

    for gap_id in ("g1", "g2", "g3"):
        generator.start(_gap(gap_id=gap_id), skip_examples=True)

    with pytest.raises(NotFoundError):
        generator.get_analysis("g1")
    assert generator.get_analysis("g2").state == "success"
    assert generator.get_analysis("g3").state == "success"
