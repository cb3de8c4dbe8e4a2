"""Storage backends and models."""

from agent_planner.storage.base import PlannerStorage
from agent_planner.storage.memory import InMemoryPlannerStorage
from agent_planner.storage.models import (
    DocumentRecord,
    ReasoningStep,
    RelationshipRecord,
    SessionRecord,
    TaskRecord,
)
from agent_planner.storage.postgres import PostgresPlannerStorage

__all__ = [
    "DocumentRecord",
    "InMemoryPlannerStorage",
    "PlannerStorage",
    "PostgresPlannerStorage",
    "ReasoningStep",
    "RelationshipRecord",
    "SessionRecord",
    "TaskRecord",
]
