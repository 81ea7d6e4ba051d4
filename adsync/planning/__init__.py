"""
Freshness and Update Planning Module
"""
from .freshness import FreshnessContext, FreshnessEvaluator, FreshnessHistory, FreshnessState
from .planner import DataPart, DifferentialUpdatePlanner, PlanContext, UpdatePlan

__all__ = [
    "FreshnessContext",
    "FreshnessEvaluator",
    "FreshnessHistory",
    "FreshnessState",
    "DataPart",
    "DifferentialUpdatePlanner",
    "PlanContext",
    "UpdatePlan",
]
