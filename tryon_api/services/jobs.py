"""Job orchestration: prechecks, submission, debit, detached reconciliation, status checks."""

from datetime import datetime, timedelta
from typing import Any

from beanie import PydanticObjectId

from tryon_api.core.config import get_settings
from tryon_api.core.exceptions import (
    ForbiddenError,
    GenerationServiceError,
    InsufficientCreditsError,
    NotFoundError,
    PersistenceError,
    ServiceUnavailableError,
)
from tryon_api.core.logging import get_logger, job_context
from tryon_api.models.assets import Garment, ModelImage, Scene
from tryon_api.models.generation_job import GenerationJob, JobStatus
from tryon_api.services import bfl
from tryon_api.services import credits as credits_service
from tryon_api.services import reconcile
from tryon_api.services.assets import parse_object_id, resolve_asset
from tryon_api.services.bfl import BFLClient
from tryon_api.services.operations import (
    MODEL_GENERATION,
    SCENE_GENERATION,
    TRYON,
    Operation,
    redact_payload,
)
from tryon_api.worker import dispatch
from tryon_api.worker.dispatch import Dispatcher

log = get_logger(__name__)


async def _ensure_balance(user_id: PydanticObjectId, operation: Operation) -> int:
    cost = operation.cost()
    balance = await credits_service.get_balance(user_id)
    if balance < cost:
        raise InsufficientCreditsError(
            f"Insufficient credits for {operation.name.replace('_', ' ')}",
            required=cost,
            balance=balance,
        )
    return cost


async def _launch(
    user_id: PydanticObjectId,
    operation: Operation,
    payload: dict[str, Any],
    cost: int,
    *,
    client: BFLClient,
    dispatcher: Dispatcher,
    prompt: str | None = None,
    refs: dict[str, PydanticObjectId | None] | None = None,
    metadata: dict[str, Any] | None = None,
) -> GenerationJob:
    """Submit remotely, persist the job, debit, then dispatch reconciliation.

    Nothing local is written until the remote submission has succeeded. The job
    is refundable only once it is marked charged; a job whose debit did not apply
    is failed here without a refund.
    """
    submitted = await client.submit(operation.endpoint(), payload)

    job = GenerationJob(
        user_id=user_id,
        operation=operation.name,
        external_job_id=submitted.external_job_id,
        polling_url=submitted.polling_url,
        status=JobStatus.PROCESSING,
        prompt=prompt if prompt is not None else payload.get("prompt"),
        parameters=redact_payload(payload),
        metadata=metadata or {},
        cost=cost,
        **(refs or {}),
    )
    await job.insert()

    with job_context(str(job.id), operation=operation.name):
        try:
            debited = await credits_service.debit(user_id, cost)
        except PersistenceError:
            log.exception("job_debit_failed", cost=cost)
            await reconcile.fail_job_without_refund(job, "Credit debit failed")
            raise
        if not debited:
            # balance was spent concurrently between the precheck and now
            await reconcile.fail_job_without_refund(job, "Insufficient credits")
            balance = await credits_service.get_balance(user_id)
            raise InsufficientCreditsError(
                f"Insufficient credits for {operation.name.replace('_', ' ')}",
                required=cost,
                balance=balance,
            )
        if not await reconcile.mark_charged(job):
            # only a delete can move a job out of processing this early
            await credits_service.refund(user_id, cost)
            raise NotFoundError("Job not found")
        job.charged = True
        await credits_service.append_usage_log(
            user_id,
            operation.action,
            cost,
            job_id=submitted.external_job_id,
            details={"generation_job_id": str(job.id), **{k: str(v) for k, v in (refs or {}).items() if v}},
        )
        log.info("job_submitted", external_job_id=submitted.external_job_id, cost=cost)
        try:
            await dispatcher.dispatch(str(job.id))
        except Exception:
            # the job stays processing; the stale-job reaper dispatches it again
            log.exception("reconcile_dispatch_failed")
    return job


async def submit_tryon(
    user_id: PydanticObjectId,
    model_id: str,
    garment_id: str,
    scene_id: str | None = None,
    prompt: str | None = None,
    *,
    client: BFLClient | None = None,
    dispatcher: Dispatcher | None = None,
) -> GenerationJob:
    client = client or bfl.get_bfl_client()
    dispatcher = dispatcher or dispatch.get_dispatcher()
    model = await resolve_asset(ModelImage, model_id, user_id)
    garment = await resolve_asset(Garment, garment_id, user_id)
    scene = await resolve_asset(Scene, scene_id, user_id) if scene_id else None
    cost = await _ensure_balance(user_id, TRYON)
    payload = await TRYON.build_payload(client, model=model, garment=garment, scene=scene, prompt=prompt)
    return await _launch(
        user_id,
        TRYON,
        payload,
        cost,
        client=client,
        dispatcher=dispatcher,
        prompt=prompt,
        refs={
            "model_id": model.id,
            "garment_id": garment.id,
            "scene_id": scene.id if scene else None,
        },
    )


async def submit_model_generation(
    user_id: PydanticObjectId,
    prompt: str | None = None,
    *,
    name: str | None = None,
    width: int = 1024,
    height: int = 1024,
    seed: int | None = None,
    prompt_upsampling: bool = True,
    safety_tolerance: int = 2,
    garment_image: str | None = None,
    client: BFLClient | None = None,
    dispatcher: Dispatcher | None = None,
) -> GenerationJob:
    client = client or bfl.get_bfl_client()
    dispatcher = dispatcher or dispatch.get_dispatcher()
    cost = await _ensure_balance(user_id, MODEL_GENERATION)
    payload = await MODEL_GENERATION.build_payload(
        client,
        prompt=prompt,
        width=width,
        height=height,
        seed=seed,
        prompt_upsampling=prompt_upsampling,
        safety_tolerance=safety_tolerance,
        garment_image=garment_image,
    )
    return await _launch(
        user_id,
        MODEL_GENERATION,
        payload,
        cost,
        client=client,
        dispatcher=dispatcher,
        metadata={"name": name} if name else None,
    )


async def submit_scene_generation(
    user_id: PydanticObjectId,
    prompt: str,
    name: str,
    *,
    domain: str = "fashion",
    width: int = 1024,
    height: int = 1024,
    seed: int | None = None,
    client: BFLClient | None = None,
    dispatcher: Dispatcher | None = None,
) -> GenerationJob:
    client = client or bfl.get_bfl_client()
    dispatcher = dispatcher or dispatch.get_dispatcher()
    cost = await _ensure_balance(user_id, SCENE_GENERATION)
    payload = await SCENE_GENERATION.build_payload(client, prompt=prompt, width=width, height=height, seed=seed)
    return await _launch(
        user_id,
        SCENE_GENERATION,
        payload,
        cost,
        client=client,
        dispatcher=dispatcher,
        prompt=prompt,
        metadata={"name": name, "domain": domain},
    )


async def get_job(job_id: str | PydanticObjectId, user_id: PydanticObjectId) -> GenerationJob:
    job = await GenerationJob.get(parse_object_id(job_id, "Job"))
    if job is None:
        raise NotFoundError("Job not found")
    if job.user_id != user_id:
        raise ForbiddenError("You do not have permission to access this job")
    return job


async def list_jobs(
    user_id: PydanticObjectId,
    operation: str | None = None,
    status: str | None = None,
    limit: int = 10,
    offset: int = 0,
) -> tuple[list[GenerationJob], int]:
    query = GenerationJob.find(GenerationJob.user_id == user_id)
    if operation:
        query = query.find(GenerationJob.operation == operation)
    if status in {s.value for s in JobStatus}:
        query = query.find(GenerationJob.status == status)
    total = await query.count()
    jobs = await query.sort(-GenerationJob.created_at).skip(offset).limit(limit).to_list()
    return jobs, total


async def check_status(
    job_id: str | PydanticObjectId,
    user_id: PydanticObjectId,
    *,
    client: BFLClient | None = None,
) -> GenerationJob:
    """Return the job, first polling the remote service once if it is still processing.

    Terminal jobs are returned untouched. Transient remote errors and database
    write failures leave the job processing for a later check.
    """
    job = await get_job(job_id, user_id)
    if job.is_terminal or not job.polling_url:
        return job
    client = client or bfl.get_bfl_client()
    with job_context(str(job.id), operation=job.operation):
        try:
            outcome = await client.fetch_status(job.polling_url)
        except ServiceUnavailableError as e:
            log.warning("status_check_transient_error", error=e.message)
            return job
        except GenerationServiceError as e:
            outcome = e
        try:
            updated = await reconcile.reconcile_outcome(job, outcome, client)
        except PersistenceError:
            log.exception("status_check_reconcile_failed")
            return job
    # deleted while we were reconciling
    return updated or job


async def delete_job(job_id: str | PydanticObjectId, user_id: PydanticObjectId) -> None:
    """Remove the local record only. Remote work is not cancelled and ledger history stays."""
    job = await get_job(job_id, user_id)
    await job.delete()
    log.info("job_deleted", job_id=str(job.id), status=job.status)


async def reap_stale_jobs(*, dispatcher: Dispatcher | None = None, now: datetime | None = None) -> dict[str, int]:
    """Resume or fail jobs stranded in processing (e.g. the poller died with its process).

    Jobs idle longer than reaper_stale_after_seconds are dispatched again; after
    reaper_max_dispatches dispatches they are failed with a refund.
    """
    settings = get_settings()
    dispatcher = dispatcher or dispatch.get_dispatcher()
    now = now or datetime.utcnow()
    cutoff = now - timedelta(seconds=settings.reaper_stale_after_seconds)
    stale = await GenerationJob.find(
        GenerationJob.status == JobStatus.PROCESSING,
        GenerationJob.updated_at < cutoff,
    ).limit(100).to_list()
    resumed = failed = 0
    for job in stale:
        with job_context(str(job.id), operation=job.operation):
            if job.dispatch_count >= settings.reaper_max_dispatches:
                if await reconcile.fail_job(job, reconcile.MSG_TIMEOUT, detail=f"abandoned after {job.dispatch_count} dispatches"):
                    failed += 1
                continue
            result = await GenerationJob.get_motor_collection().update_one(
                {"_id": job.id, "status": JobStatus.PROCESSING.value, "dispatch_count": job.dispatch_count},
                {"$inc": {"dispatch_count": 1}, "$set": {"updated_at": now}},
            )
            if result.modified_count == 1:
                await dispatcher.dispatch(str(job.id), attempt=job.dispatch_count + 1)
                resumed += 1
    if stale:
        log.info("reaper_pass", stale=len(stale), resumed=resumed, failed=failed)
    return {"resumed": resumed, "failed": failed}
