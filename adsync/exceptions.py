"""
Error taxonomy for the synchronization engine.

Upstream and validation errors are turned into failed retrieval sessions by the
orchestrator; callers normally see them only through session status.
"""

from typing import Optional


class AdSyncError(Exception):
    """Base class for all engine errors"""


class QuotaExceeded(AdSyncError):
    """Call budget exhausted; retry after ``retry_after`` seconds"""

    def __init__(self, key: str, retry_after: float):
        self.key = key
        self.retry_after = retry_after
        super().__init__(f"Call budget for '{key}' exhausted, retry in {retry_after:.1f}s")


class UpstreamError(AdSyncError):
    """Non-success response from the insights API"""

    def __init__(self, message: str, status_code: Optional[int] = None, error_code: Optional[int] = None):
        self.status_code = status_code
        self.error_code = error_code
        super().__init__(message)


class UpstreamRateLimited(UpstreamError):
    """Upstream rejected the call for throttling (HTTP 429 or a throttle error code)"""


class UpstreamTimeout(AdSyncError):
    """No response from the insights API within the deadline"""


class MalformedPage(AdSyncError):
    """A page failed validation and was not merged"""

    def __init__(self, reason: str, page_index: Optional[int] = None):
        self.reason = reason
        self.page_index = page_index
        super().__init__(f"Malformed page {page_index}: {reason}" if page_index is not None else reason)


class InvalidTimelineError(AdSyncError, ValueError):
    """Timeline contains duplicate or out-of-order dates"""


class StoreUnavailable(AdSyncError):
    """Persistent store could not be reached"""


class CacheWriteError(StoreUnavailable):
    """Persistent cache write failed; the entry lives in memory only"""


class NotFoundError(AdSyncError, LookupError):
    """Requested record does not exist"""
