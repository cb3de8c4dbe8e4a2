from agent_planner.gaps.bridging import BridgingTaskGenerator, GapAnalysis, ManualExamples
from agent_planner.gaps.detector import Gap, GapDetector

__all__ = ["BridgingTaskGenerator", "Gap", "GapAnalysis", "GapDetector", "ManualExamples"]
