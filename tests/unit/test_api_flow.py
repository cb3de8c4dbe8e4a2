from __future__ import annotations

from datetime import UTC, datetime

import pytest
from fastapi.testclient import TestClient

from agent_planner.api.main import create_app
from agent_planner.planning.graph_store import CyclePolicy
from agent_planner.storage.models import RelationshipRecord

GOAL = {"outcome_text": "Smooth onboarding for new customers"}


@pytest.fixture
def client(build_planner) -> TestClient:
    app = create_app(runtime=build_planner())
    with TestClient(app) as test_client:
        yield test_client


def _register(client: TestClient) -> None:
    response = client.post(
        "/tasks",
        json={
            "tasks": [
                {"task_id": "research", "task_text": "Research customer onboarding pain points"},
                {"task_id": "deploy", "task_text": "Deploy onboarding checklist service", "estimated_hours": 8},
            ]
        },
    )
    assert response.status_code == 200
    assert [task["task_id"] for task in response.json()["tasks"]] == ["research", "deploy"]


def test_health_and_tools(client: TestClient) -> None:
    assert client.get("/health").json() == {"status": "ok", "service": "agent-planner"}
    assert client.get("/tools").json()["tools"] == [
        "cluster-by-similarity",
        "detect-dependencies",
        "get-document-context",
        "query-task-graph",
        "semantic-search",
    ]


def test_session_to_accepted_bridge(client: TestClient) -> None:
    _register(client)

    created = client.post("/sessions", json={"user_id": "u1", "goal": GOAL})
    assert created.status_code == 202
    session_id = created.json()["session_id"]
    assert "steps" not in created.json()

    session = client.get(f"/sessions/{session_id}").json()
    assert session["status"] == "completed"
    assert session["plan"]["ordered_task_ids"] == ["research", "deploy"]
    assert 1 <= session["execution_metadata"]["steps_taken"] <= 10

    trace = client.get(f"/sessions/{session_id}/trace").json()
    assert len(trace["steps"]) == session["execution_metadata"]["steps_taken"]
    assert client.get("/users/u1/sessions/current").json()["session_id"] == session_id

    generated = client.post("/gaps/generate", json={"session_id": session_id})
    assert generated.status_code == 200
    [analysis] = generated.json()["gaps"]
    assert analysis["state"] == "requires_manual_examples"
    assert analysis["error_code"] == "requires_manual_examples"
    gap_id = analysis["gap"]["gap_id"]

    resumed = client.post(
        f"/gaps/{gap_id}/examples",
        json={"examples": ["Pilot the onboarding checklist with two teams"]},
    )
    assert resumed.status_code == 200
    resumed_body = resumed.json()
    assert resumed_body["state"] == "success"
    candidate = resumed_body["candidates"][0]

    accepted = client.post(
        "/gaps/accept",
        json={
            "user_id": "u1",
            "session_id": session_id,
            "tasks": [
                {
                    "task_text": candidate["task_text"],
                    "estimated_hours": candidate["estimated_hours"],
                    "edited_task_text": "Pilot the onboarding checklist with two support teams",
                    "predecessor_id": "research",
                    "successor_id": "deploy",
                    "gap_id": gap_id,
                }
            ],
        },
    )
    assert accepted.status_code == 200
    body = accepted.json()
    [new_id] = body["inserted_task_ids"]
    assert body["cycle_detected"] is False
    assert body["plan"]["ordered_task_ids"] == ["research", new_id, "deploy"]
    assert client.get(f"/sessions/{session_id}").json()["plan"]["ordered_task_ids"] == ["research", new_id, "deploy"]
    assert body["accepted_candidate_ids"] == [candidate["candidate_id"]]
    statuses = {item["candidate_id"]: item["status"] for item in client.get(f"/gaps/{gap_id}").json()["candidates"]}
    assert statuses[candidate["candidate_id"]] == "accepted"


def test_examples_for_unknown_gap_is_not_found(client: TestClient) -> None:
    response = client.post("/gaps/unknown/examples", json={"examples": ["Pilot the onboarding checklist"]})

    assert response.status_code == 404
    assert response.json()["code"] == "not_found"


def test_single_task_dependency_detection_is_invalid(client: TestClient) -> None:
    _register(client)

    response = client.post("/dependencies/detect", json={"task_ids": ["research"]})

    assert response.status_code == 400
    assert response.json()["code"] == "invalid_input"


def test_search_reports_relaxation(client: TestClient) -> None:
    _register(client)

    response = client.post("/embeddings/search", json={"query": "Research customer onboarding pain points"})

    body = response.json()
    assert response.status_code == 200
    assert body["hits"][0]["task_id"] == "research"
    assert body["requested_threshold"] == 0.7
    assert body["count"] == len(body["hits"])


def test_gap_detection_by_task_ids(client: TestClient) -> None:
    _register(client)

    response = client.post("/gaps/detect", json={"task_ids": ["research", "deploy"]})

    body = response.json()
    assert response.status_code == 200
    assert body["metadata"]["total_pairs_analyzed"] == 1
    assert body["gaps"][0]["indicators"]["action_type_jump"] is True


def test_missing_session_gap_input_and_cleanup(client: TestClient) -> None:
    assert client.get("/sessions/nope").status_code == 404
    assert client.post("/gaps/detect", json={}).status_code == 400
    assert client.post("/maintenance/cleanup").json() == {"purged": 0, "gap_analyses_pruned": 0}


def test_detected_gap_ids_drive_generation(client: TestClient) -> None:
    _register(client)
    [gap] = client.post("/gaps/detect", json={"task_ids": ["research", "deploy"]}).json()["gaps"]

    with_examples = client.post(
        "/gaps/generate",
        json={
            "task_ids": ["research", "deploy"],
            "manual_examples": {gap["gap_id"]: ["Pilot the onboarding checklist with two teams"]},
        },
    ).json()["gaps"]
    skipped = client.post(
        "/gaps/generate",
        json={"task_ids": ["research", "deploy"], "skip_gap_ids": [gap["gap_id"]]},
    ).json()["gaps"]

    assert [analysis["gap"]["gap_id"] for analysis in with_examples] == [gap["gap_id"]]
    assert with_examples[0]["state"] == "success"
    assert with_examples[0]["manual_examples"] == ["Pilot the onboarding checklist with two teams"]
    assert skipped[0]["state"] == "success"
    assert skipped[0]["degraded"] is True


def test_rejecting_a_candidate(client: TestClient) -> None:
    _register(client)
    [analysis] = client.post(
        "/gaps/generate",
        json={"task_ids": ["research", "deploy"]},
    ).json()["gaps"]
    gap_id = analysis["gap"]["gap_id"]
    resumed = client.post(f"/gaps/{gap_id}/skip", json={}).json()
    candidate_id = resumed["candidates"][0]["candidate_id"]

    rejected = client.post(f"/gaps/{gap_id}/candidates/{candidate_id}/reject")
    again = client.post(f"/gaps/{gap_id}/candidates/{candidate_id}/reject")
    unknown = client.post(f"/gaps/{gap_id}/candidates/nope/reject")

    assert rejected.status_code == 200
    assert rejected.json()["status"] == "rejected"
    assert again.status_code == 400
    assert unknown.status_code == 404
    assert client.get(f"/gaps/{gap_id}").json()["candidates"][0]["status"] == "rejected"


def test_review_queue_routes(build_planner) -> None:
    runtime = build_planner()
    app = create_app(runtime=runtime)
    with TestClient(app) as client:
        client.post(
            "/tasks",
            json={
                "tasks": [
                    {"task_id": "a", "task_text": "Research customer onboarding pain points"},
                    {"task_id": "b", "task_text": "Deploy onboarding checklist service"},
                ]
            },
        )
        edges = [
            RelationshipRecord(
                source_task_id=source,
                target_task_id=target,
                relationship_type="prerequisite",
                confidence_score=0.8,
                detection_method="ai-inferred",
                created_at=datetime.now(UTC),
            )
            for source, target in (("a", "b"), ("b", "a"))
        ]
        runtime.graph_store.accept_edges(edges[:1], user_id="u1")
        runtime.graph_store.accept_edges(edges[1:], user_id="u1", policy=CyclePolicy.FLAG_FOR_REVIEW)

        [queued] = client.get("/graph/review-queue").json()["relationships"]
        assert (queued["source_task_id"], queued["target_task_id"]) == ("b", "a")

        resolve = {
            "user_id": "u1",
            "source_task_id": "b",
            "target_task_id": "a",
            "relationship_type": "prerequisite",
        }
        blocked = client.post("/graph/review-queue/resolve", json={**resolve, "approve": True})
        assert blocked.status_code == 409
        assert blocked.json()["code"] == "structural_conflict"

        dismissed = client.post("/graph/review-queue/resolve", json={**resolve, "approve": False})
        assert dismissed.json() == {"approved": False, "graph_mutation": None}
        assert client.get("/graph/review-queue").json() == {"relationships": []}
