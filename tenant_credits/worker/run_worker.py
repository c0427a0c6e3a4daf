"""Run ARQ worker. Usage: python -m tenant_credits.worker.run_worker"""

from arq import run_worker
from arq.cron import cron

from tenant_credits.core.config import get_settings
from tenant_credits.core.logging import configure_logging
from tenant_credits.worker.tasks import audit_balances, get_redis_settings, shutdown, startup


class WorkerSettings:
    functions = [audit_balances]
    cron_jobs = [cron(audit_balances, hour=3, minute=0)]  # daily 03:00
    on_startup = startup
    on_shutdown = shutdown
    redis_settings = get_redis_settings()


def main() -> None:
    configure_logging(debug=get_settings().debug)
    run_worker(WorkerSettings)


if __name__ == "__main__":
    main()
