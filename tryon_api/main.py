import asyncio
import time
import uuid

from fastapi import FastAPI
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import ORJSONResponse
from fastapi.staticfiles import StaticFiles

from tryon_api.core.config import get_settings
from tryon_api.core.exceptions import (
    AppError,
    app_exception_handler,
    generic_exception_handler,
    validation_exception_handler,
)
from tryon_api.core.logging import bind_request_id, configure_logging, get_logger
from tryon_api.db.init import init_db
from tryon_api.routers import credits, generations, jobs, tryon
from tryon_api.services import jobs as jobs_service
from tryon_api.worker.dispatch import ArqDispatcher, get_dispatcher

settings = get_settings()
configure_logging(debug=settings.debug)
log = get_logger(__name__)

app = FastAPI(
    title="Try-On API",
    version="1.0.0",
    default_response_class=ORJSONResponse,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.middleware("http")
async def request_id_middleware(request, call_next):
    request_id = request.headers.get("X-Request-ID") or str(uuid.uuid4())
    request.state.request_id = request_id
    bind_request_id(request_id)
    start = time.perf_counter()
    response = await call_next(request)
    duration_ms = (time.perf_counter() - start) * 1000
    log.info(
        "request",
        method=request.method,
        path=request.url.path,
        status_code=response.status_code,
        duration_ms=round(duration_ms, 2),
    )
    response.headers["X-Request-ID"] = request_id
    return response


app.add_exception_handler(AppError, app_exception_handler)
app.add_exception_handler(RequestValidationError, validation_exception_handler)
app.add_exception_handler(Exception, generic_exception_handler)

# Routers
app.include_router(tryon.router, prefix="/v1/tryon", tags=["tryon"])
app.include_router(generations.router, prefix="/v1", tags=["generations"])
app.include_router(jobs.router, prefix="/v1/jobs", tags=["jobs"])
app.include_router(credits.router, prefix="/v1/credits", tags=["credits"])

if settings.storage_backend == "local":
    app.mount(
        settings.storage_public_prefix,
        StaticFiles(directory=settings.storage_local_path, check_dir=False),
        name="uploads",
    )

_reaper_task: asyncio.Task | None = None


async def _reaper_loop() -> None:
    """In-process stale-job reaper for the local dispatch backend (the ARQ worker runs it as cron)."""
    while True:
        await asyncio.sleep(settings.reaper_interval_seconds)
        try:
            await jobs_service.reap_stale_jobs()
        except Exception:
            log.exception("reaper_failed")


@app.on_event("startup")
async def startup():
    global _reaper_task
    if settings.sentry_dsn:
        import sentry_sdk
        sentry_sdk.init(dsn=settings.sentry_dsn, environment=settings.env, traces_sample_rate=0.1)
        log.info("startup", msg="Sentry enabled")
    await init_db()
    log.info("startup", msg="DB connected", dispatch_backend=settings.dispatch_backend)
    if settings.dispatch_backend == "local":
        _reaper_task = asyncio.create_task(_reaper_loop(), name="stale-job-reaper")


@app.on_event("shutdown")
async def shutdown():
    if _reaper_task is not None:
        _reaper_task.cancel()
    dispatcher = get_dispatcher()
    await dispatcher.drain()
    if isinstance(dispatcher, ArqDispatcher):
        await dispatcher.close()
    log.info("shutdown", msg="Dispatcher drained")


@app.get("/health")
async def health():
    """Health check for load balancers and monitoring."""
    return {"status": "ok"}
