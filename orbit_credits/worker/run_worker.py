"""Run ARQ worker. Usage: python -m orbit_credits.worker.run_worker"""

from arq import run_worker
from arq.cron import cron

from orbit_credits.worker.tasks import get_redis_settings, monthly_credit_refresh, shutdown, startup


class WorkerSettings:
    redis_settings = get_redis_settings()
    functions = []
    job_timeout = 600
    # Hourly: each run takes at most REFRESH_BATCH_LIMIT due users, later runs pick up the rest
    cron_jobs = [cron(monthly_credit_refresh, minute=5, unique=True)]
    on_startup = startup
    on_shutdown = shutdown


if __name__ == "__main__":
    run_worker(WorkerSettings)
