"""ARQ job definitions."""

import uuid
from typing import Any

from arq.connections import RedisSettings

from orbit_credits.core.config import get_settings
from orbit_credits.core.logging import get_logger

log = get_logger(__name__)


async def _run_with_dlq(
    job_name: str,
    job_id: str | None,
    args: list[Any],
    kwargs: dict[str, Any],
    coro,
) -> Any:
    """Run coroutine; on exception persist to FailedJob then re-raise."""
    try:
        return await coro
    except Exception as e:
        from orbit_credits.models.failed_job import FailedJob
        fid = job_id or str(uuid.uuid4())
        await FailedJob(
            job_name=job_name,
            job_id=fid,
            args=args,
            kwargs=kwargs,
            reason=str(e)[:2000],
            retries=0,
        ).insert()
        log.exception("job_failed", job=job_name, job_id=fid, reason=str(e))
        raise


async def monthly_credit_refresh(ctx: dict[str, Any]) -> dict:
    """Cron job: replace due users' balances with their plan allowance."""
    job_id = ctx.get("job_id") if isinstance(ctx.get("job_id"), str) else None
    from orbit_credits.worker.cron import run_monthly_refresh
    log.info("job_start", job="monthly_credit_refresh")
    report = await _run_with_dlq("monthly_credit_refresh", job_id, [], {}, run_monthly_refresh())
    log.info("job_done", job="monthly_credit_refresh", refreshed_count=report["refreshed_count"])
    return {"refreshed_count": report["refreshed_count"], "total_found": report["total_found"]}


async def startup(ctx: dict) -> None:
    from orbit_credits.core.logging import configure_logging
    from orbit_credits.db.init import init_db
    configure_logging(debug=get_settings().debug)
    await init_db()


async def shutdown(ctx: dict) -> None:
    pass


def get_redis_settings() -> RedisSettings:
    from urllib.parse import urlparse
    s = get_settings()
    u = urlparse(s.redis_url)
    return RedisSettings(
        host=u.hostname or "localhost",
        port=u.port or 6379,
        password=u.password,
        database=int(u.path.lstrip("/")) if u.path.lstrip("/") else 0,
    )
