"""ARQ job definitions."""

from typing import Any

from arq.connections import RedisSettings

from tenant_credits.core.config import get_settings
from tenant_credits.core.logging import get_logger
from tenant_credits.services.credits import CreditService
from tenant_credits.storage.base import get_store

log = get_logger(__name__)


async def audit_balances(ctx: dict[str, Any]) -> int:
    """Recompute each account's ledger total and log drift. Detect only; nothing is rewritten."""
    credits: CreditService = ctx["credits"]
    log.info("job_start", job="audit_balances")
    drifts = await credits.audit_balances()
    log.info("job_done", job="audit_balances", drift_count=len(drifts))
    return len(drifts)


async def startup(ctx: dict[str, Any]) -> None:
    if get_settings().storage_backend == "mongo":
        from tenant_credits.db.init import init_db
        await init_db()
    ctx["credits"] = CreditService(get_store())


async def shutdown(ctx: dict[str, Any]) -> None:
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
