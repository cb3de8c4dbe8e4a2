"""Per-session collaborators handed to graph nodes."""

from __future__ import annotations

import time
from dataclasses import dataclass, field
from typing import Callable

from agent_planner.graph.policy import StepPolicy
from agent_planner.planning.assembler import PlanAssembler
from agent_planner.storage.base import PlannerStorage
from agent_planner.tools.gateway import ToolExecutor


@dataclass
class LoopContext:
    policy: StepPolicy
    executor: ToolExecutor
    storage: PlannerStorage
    assembler: PlanAssembler = field(default_factory=PlanAssembler)
    max_steps: int = 10
    budget_s: float = 30.0
    search_threshold: float = 0.7
    search_limit: int = 20
    cluster_threshold: float = 0.75
    clock: Callable[[], float] = time.perf_counter
