"""Run ARQ worker. Usage: python -m tryon_api.worker.run_worker"""

import asyncio

from arq.cron import cron
from arq.worker import Worker

from tryon_api.worker.tasks import get_redis_settings, reap_stale_jobs, reconcile_generation_job, shutdown, startup


def build_worker() -> Worker:
    return Worker(
        functions=[reconcile_generation_job],
        cron_jobs=[
            cron(reap_stale_jobs, minute=set(range(0, 60, 5)), second=0),  # every 5 minutes
        ],
        redis_settings=get_redis_settings(),
        on_startup=startup,
        on_shutdown=shutdown,
        # a reconcile polls for up to poll_max_attempts * poll_max_delay
        job_timeout=1800,
    )


async def main():
    worker = build_worker()
    try:
        await worker.async_run()
    finally:
        await worker.close()


if __name__ == "__main__":
    asyncio.run(main())
