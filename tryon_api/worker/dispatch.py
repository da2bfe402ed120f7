"""Detached reconciliation: in-process asyncio tasks or ARQ jobs in Redis."""

import asyncio
from abc import ABC, abstractmethod
from functools import lru_cache

from arq import ArqRedis, create_pool

from tryon_api.core.config import get_settings
from tryon_api.core.logging import get_logger

log = get_logger(__name__)

RECONCILE_JOB_NAME = "reconcile_generation_job"


class Dispatcher(ABC):
    @abstractmethod
    async def dispatch(self, job_id: str, attempt: int = 1) -> None:
        """Start reconciliation for job_id without waiting for it."""
        ...

    async def drain(self) -> None:
        """Wait for in-flight work this dispatcher owns (no-op when work lives elsewhere)."""
        return None


class LocalDispatcher(Dispatcher):
    """Runs reconciliation as asyncio tasks in this process.

    Tasks are kept in a set until done so they are not garbage collected mid-poll.
    Work is lost if the process dies; the stale-job reaper picks it up again.
    """

    def __init__(self) -> None:
        self._tasks: set[asyncio.Task] = set()

    async def dispatch(self, job_id: str, attempt: int = 1) -> None:
        from tryon_api.services.reconcile import run_reconciliation
        task = asyncio.create_task(run_reconciliation(job_id), name=f"reconcile:{job_id}:{attempt}")
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        log.info("reconcile_dispatched", backend="local", job_id=job_id, attempt=attempt)

    @property
    def pending(self) -> int:
        return len(self._tasks)

    async def drain(self) -> None:
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)


class ArqDispatcher(Dispatcher):
    """Enqueues reconcile_generation_job in Redis for the ARQ worker."""

    def __init__(self, pool: ArqRedis | None = None) -> None:
        self._pool = pool

    async def _get_pool(self) -> ArqRedis:
        if self._pool is None:
            from tryon_api.worker.tasks import get_redis_settings
            self._pool = await create_pool(get_redis_settings())
        return self._pool

    async def dispatch(self, job_id: str, attempt: int = 1) -> None:
        pool = await self._get_pool()
        # ARQ dedupes on _job_id, so each dispatch attempt gets its own
        await pool.enqueue_job(RECONCILE_JOB_NAME, job_id, _job_id=f"reconcile:{job_id}:{attempt}")
        log.info("reconcile_dispatched", backend="arq", job_id=job_id, attempt=attempt)

    async def close(self) -> None:
        if self._pool is not None:
            await self._pool.aclose()
            self._pool = None


@lru_cache
def get_dispatcher() -> Dispatcher:
    if get_settings().dispatch_backend == "arq":
        return ArqDispatcher()
    return LocalDispatcher()
