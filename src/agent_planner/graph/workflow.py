"""LangGraph assembly for the bounded reasoning loop."""

from langgraph.graph import END, StateGraph

from agent_planner.graph.context import LoopContext
from agent_planner.graph.nodes import act, assemble, decide
from agent_planner.graph.state import LoopState


def build_graph(ctx: LoopContext):
    def _decide(state: LoopState) -> LoopState:
        return decide.run(state, ctx)

    def _act(state: LoopState) -> LoopState:
        return act.run(state, ctx)

    def _assemble(state: LoopState) -> LoopState:
        return assemble.run(state, ctx)

    def _route(state: LoopState) -> str:
        if state.get("termination") or not state.get("pending_call"):
            return "assemble"
        return "act"

    graph = StateGraph(LoopState)

    graph.add_node("decide", _decide)
    graph.add_node("act", _act)
    graph.add_node("assemble", _assemble)

    graph.set_entry_point("decide")
    graph.add_conditional_edges("decide", _route, {"act": "act", "assemble": "assemble"})
    graph.add_edge("act", "decide")
    graph.add_edge("assemble", END)

    return graph.compile()


def recursion_limit(max_steps: int) -> int:
    # decide + act per step, a final decide and assemble
    return 2 * max_steps + 10
