"""ARQ job definitions."""

import uuid
from typing import Any

from arq.connections import RedisSettings

from tryon_api.core.config import get_settings
from tryon_api.core.logging import get_logger

log = get_logger(__name__)


async def _run_with_dlq(job_name: str, job_id: str | None, args: list[Any], coro) -> None:
    """Run coroutine; on exception persist to FailedJob then re-raise."""
    try:
        await coro
    except Exception as e:
        from tryon_api.models.failed_job import FailedJob
        fid = job_id or str(uuid.uuid4())
        await FailedJob(job_name=job_name, job_id=fid, args=args, reason=str(e)[:2000]).insert()
        log.exception("job_failed", job=job_name, job_id=fid, reason=str(e))
        raise


async def reconcile_generation_job(ctx: dict[str, Any], job_id: str) -> None:
    """Poll one generation job to a terminal state and apply the outcome."""
    from tryon_api.services.reconcile import run_reconciliation
    arq_job_id = ctx.get("job_id") if isinstance(ctx.get("job_id"), str) else None

    async def _run() -> None:
        log.info("job_start", job="reconcile_generation_job", generation_job_id=job_id)
        await run_reconciliation(job_id)
        log.info("job_done", job="reconcile_generation_job", generation_job_id=job_id)

    await _run_with_dlq("reconcile_generation_job", arq_job_id, [job_id], _run())


async def reap_stale_jobs(ctx: dict[str, Any]) -> None:
    """Cron job: resume or fail generation jobs stuck in processing."""
    from tryon_api.services import jobs as jobs_service
    from tryon_api.worker.dispatch import ArqDispatcher
    arq_job_id = ctx.get("job_id") if isinstance(ctx.get("job_id"), str) else None
    dispatcher = ArqDispatcher(ctx["redis"])
    await _run_with_dlq("reap_stale_jobs", arq_job_id, [], jobs_service.reap_stale_jobs(dispatcher=dispatcher))


async def startup(ctx: dict) -> None:
    from tryon_api.core.logging import configure_logging
    from tryon_api.db.init import init_db
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
