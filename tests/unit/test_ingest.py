import pytest

from agent_planner.errors import InvalidInputError
from agent_planner.ingest import TaskInput, register_document, register_tasks, stable_task_id


def test_registration_embeds_and_derives_stable_ids(storage, hash_embedder) -> None:
    [record] = register_tasks(storage, hash_embedder, [TaskInput(task_text="  Draft hiring plan ", document_id="doc-1")])

    assert record.task_text == "Draft hiring plan"
    assert record.task_id == stable_task_id("Draft hiring plan", "doc-1")
    assert record.has_embedding
    assert len(record.embedding) == hash_embedder.dimension


def test_reregistering_same_text_keeps_identity(storage, hash_embedder) -> None:
    [first] = register_tasks(storage, hash_embedder, [TaskInput(task_id="t1", task_text="Draft hiring plan")])
    [second] = register_tasks(
        storage, hash_embedder, [TaskInput(task_id="t1", task_text="Draft hiring plan", estimated_hours=16)]
    )

    assert second.created_at == first.created_at
    assert second.embedding == first.embedding
    assert second.estimated_hours == 16


def test_task_text_is_immutable_once_embedded(storage, hash_embedder) -> None:
    register_tasks(storage, hash_embedder, [TaskInput(task_id="t1", task_text="Draft hiring plan")])

    with pytest.raises(InvalidInputError):
        register_tasks(storage, hash_embedder, [TaskInput(task_id="t1", task_text="Draft firing plan")])

    assert storage.get_task("t1").task_text == "Draft hiring plan"


def test_documents_are_stored(storage) -> None:
    document = register_document(storage, document_id="doc-1", filename="plan.md", markdown="# Plan")

    assert storage.get_document("doc-1") == document
