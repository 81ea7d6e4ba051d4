"""
Prefect Workflow Orchestration - Cache Refresh

Scheduled maintenance of the insights cache:
- Refresh entries that are aging, stale or expired, most urgent first
- Purge expired cache entries
- Alert when refreshes fail
"""

from typing import Optional

from prefect import flow, get_run_logger, task

from adsync.config import get_settings
from adsync.core.models import SessionStatus
from adsync.engine import InsightsEngine

settings = get_settings()


# =============================================================================
# TASKS
# =============================================================================

@task(
    name="refresh_stale_entries",
    description="Re-plan and fetch cache entries that are no longer fresh",
    retries=2,
    retry_delay_seconds=120,
)
async def refresh_stale_entries(limit: Optional[int] = None) -> dict:
    """Refresh the most urgent stale entries within the call budget"""
    logger = get_run_logger()

    engine = await InsightsEngine.from_settings(settings)
    try:
        results = await engine.refresh_stale_entries(limit)
    finally:
        await engine.close()

    sessions = [r.session for r in results if r.session is not None]
    completed = sum(1 for s in sessions if s.status == SessionStatus.COMPLETED)
    failed = [s for s in sessions if s.status == SessionStatus.FAILED]
    deferred = sum(1 for r in results if r.deferred)
    skipped = len(results) - len(sessions)

    logger.info(
        f"Refresh sweep complete: {len(results)} entries, {completed} completed, "
        f"{len(failed)} failed, {deferred} deferred, {skipped} skipped"
    )

    return {
        "entries": len(results),
        "completed": completed,
        "failed": len(failed),
        "deferred": deferred,
        "skipped": skipped,
        "failures": [
            {
                "session_id": s.id,
                "account_id": s.account_id,
                "reason": s.failure_reason.value if s.failure_reason else None,
            }
            for s in failed
        ],
    }


@task(
    name="purge_expired_cache",
    description="Delete expired cache entries",
    retries=3,
    retry_delay_seconds=60,
)
async def purge_expired_cache() -> dict:
    logger = get_run_logger()

    engine = await InsightsEngine.from_settings(settings)
    try:
        purged = await engine.purge_expired_cache()
    finally:
        await engine.close()

    logger.info(f"Purged {purged} expired cache entries")
    return {"purged": purged}


@task(
    name="send_alert",
    description="Send alert notification",
)
async def send_alert(alert_type: str, message: str, severity: str = "info") -> None:
    logger = get_run_logger()
    logger.warning(f"[{severity.upper()}] {alert_type}: {message}")


# =============================================================================
# FLOWS
# =============================================================================

@flow(
    name="insights_cache_refresh",
    description="Refresh stale insights and purge expired cache entries",
    retries=1,
    retry_delay_seconds=300,
)
async def insights_cache_refresh(limit: Optional[int] = 50) -> dict:
    """
    Scheduled cache maintenance.

    Steps:
    1. Refresh stale entries, most urgent first
    2. Purge expired entries
    3. Alert on failed sessions
    """
    logger = get_run_logger()
    logger.info(f"Starting cache refresh sweep (limit={limit})")

    results = {"steps": {}}
    results["steps"]["refresh"] = await refresh_stale_entries(limit)
    results["steps"]["purge"] = await purge_expired_cache()

    failed = results["steps"]["refresh"]["failed"]
    if failed:
        await send_alert(
            alert_type="Refresh Failures",
            message=f"{failed} retrieval sessions failed during the refresh sweep",
            severity="warning",
        )

    results["status"] = "success" if not failed else "partial"
    return results


@flow(
    name="insights_cache_purge",
    description="Purge expired cache entries only",
)
async def insights_cache_purge() -> dict:
    return await purge_expired_cache()


# =============================================================================
# DEPLOYMENT CONFIGURATION
# =============================================================================

if __name__ == "__main__":
    import asyncio

    asyncio.run(insights_cache_refresh())
