"""Run ARQ worker. Usage: python -m app.worker.run_worker (or: arq app.worker.run_worker.WorkerSettings)"""

from urllib.parse import urlparse

from arq import run_worker
from arq.connections import RedisSettings
from arq.cron import cron

from app.core.config import get_settings
from app.core.logging import configure_logging
from app.worker.tasks import poll_processing_payouts, reconcile_accounts, shutdown, startup


def get_redis_settings() -> RedisSettings:
    s = get_settings()
    u = urlparse(s.redis_url)
    return RedisSettings(
        host=u.hostname or "localhost",
        port=u.port or 6379,
        password=u.password,
        database=int(u.path.lstrip("/")) if u.path.strip("/") else 0,
    )


class WorkerSettings:
    redis_settings = get_redis_settings()
    functions = [reconcile_accounts, poll_processing_payouts]
    cron_jobs = [
        cron(reconcile_accounts, minute=0, second=0),  # hourly
        cron(poll_processing_payouts, minute=set(range(0, 60, 5)), second=30),
    ]
    on_startup = startup
    on_shutdown = shutdown


if __name__ == "__main__":
    configure_logging(debug=get_settings().debug)
    run_worker(WorkerSettings)
