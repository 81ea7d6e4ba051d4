"""
Serving Module
"""
from .cache import CachedSeries, MemoryCache
from .coordinator import CacheCoordinator, CacheResult
from .telemetry import PerformanceTelemetry

__all__ = [
    "CachedSeries",
    "MemoryCache",
    "CacheCoordinator",
    "CacheResult",
    "PerformanceTelemetry",
]
