"""
Ad Insights Synchronization Engine

Keeps per-ad daily performance data in sync with a rate-limited insights API,
serving it through a three-tier cache and flagging delivery gaps and anomalies.
"""

__version__ = "1.0.0"
