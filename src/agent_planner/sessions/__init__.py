from agent_planner.sessions.manager import GoalContext, SessionManager

__all__ = ["GoalContext", "SessionManager"]
