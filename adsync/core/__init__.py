"""
Core Domain Module
"""
from .models import (
    DateRange,
    TimelinePoint,
    RetrievalSession,
    DeliveryAnalysis,
    AnomalyRecord,
    GapRecord,
    CacheEntry,
    PerformanceSnapshot,
)

__all__ = [
    "DateRange",
    "TimelinePoint",
    "RetrievalSession",
    "DeliveryAnalysis",
    "AnomalyRecord",
    "GapRecord",
    "CacheEntry",
    "PerformanceSnapshot",
]
