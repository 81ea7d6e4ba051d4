"""
Data Ingestion Module
"""
from .rate_budget import CallOutcome, RateBudgetTracker
from .insights_client import InsightsPage, InsightsSource, MetaInsightsClient

__all__ = [
    "CallOutcome",
    "RateBudgetTracker",
    "InsightsPage",
    "InsightsSource",
    "MetaInsightsClient",
]
