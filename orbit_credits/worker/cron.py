"""Cron: monthly credit refresh for users whose refresh date has passed."""

from orbit_credits.core.audit import log_event
from orbit_credits.core.logging import get_logger
from orbit_credits.services import credits as credits_service

log = get_logger(__name__)


async def run_monthly_refresh() -> dict:
    """Refresh one batch of due users. Per-user failures are in the report, not raised."""
    report = await credits_service.monthly_refresh()
    failed = [r for r in report["results"] if "error" in r]
    if failed:
        log.warning("monthly_refresh_partial_failure", failed=len(failed), failed_user_ids=[r["user_id"] for r in failed])
    await log_event(
        None,
        "monthly_refresh_run",
        "credits",
        None,
        {"refreshed_count": report["refreshed_count"], "total_found": report["total_found"], "failed": len(failed)},
    )
    return report
