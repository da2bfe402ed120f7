"""Reconciliation: apply a remote outcome to a job, refunding exactly once on failure.

Both the background poller and the user-triggered status check land here. Each
transition is a conditional update on status == processing, so when the two race
exactly one of them wins and the other becomes a no-op.
"""

from datetime import datetime
from typing import Any

from beanie import PydanticObjectId
from pymongo import ReturnDocument
from pymongo.errors import PyMongoError

from tryon_api.core.config import get_settings
from tryon_api.core.exceptions import (
    AppError,
    InvalidRequestError,
    PersistenceError,
    PollTimeoutError,
    ProtocolError,
    RemoteJobFailed,
    ServiceUnavailableError,
)
from tryon_api.core.logging import get_logger, job_context
from tryon_api.models.generation_job import GenerationJob, JobStatus
from tryon_api.services import bfl
from tryon_api.services import credits as credits_service
from tryon_api.services.bfl import BFLClient, RemoteState, RemoteStatus
from tryon_api.services.operations import StoredResult, discard_result, get_operation

log = get_logger(__name__)

# Stable, user-facing summaries. Raw remote detail goes to the refund ledger entry.
MSG_REMOTE_FAILED = "Generation failed at the remote service"
MSG_NO_RESULT = "Remote service returned no result"
MSG_STORE_FAILED = "Failed to store the generated image"
MSG_TIMEOUT = "Timed out waiting for the remote service"
MSG_PROTOCOL = "Unexpected response from the remote service"
MSG_REJECTED = "The remote service rejected the request"
MSG_UNAVAILABLE = "The remote service was unavailable"
MSG_INTERNAL = "Processing error"

_EXCEPTION_MESSAGES: list[tuple[type[Exception], str]] = [
    (RemoteJobFailed, MSG_REMOTE_FAILED),
    (PollTimeoutError, MSG_TIMEOUT),
    (ProtocolError, MSG_PROTOCOL),
    (InvalidRequestError, MSG_REJECTED),
    (ServiceUnavailableError, MSG_UNAVAILABLE),
]


def failure_message(exc: BaseException) -> str:
    for exc_type, message in _EXCEPTION_MESSAGES:
        if isinstance(exc, exc_type):
            return message
    return MSG_INTERNAL


def _diagnostic(exc: BaseException) -> str:
    text = exc.message if isinstance(exc, AppError) else str(exc)
    return f"{type(exc).__name__}: {text}"[:2000]


async def _transition(job_id: PydanticObjectId, fields: dict[str, Any]) -> dict[str, Any] | None:
    """Set fields iff the job is still processing.

    Returns the job document as it was before the update when this call made the
    transition, None when another writer got there first.
    """
    try:
        return await GenerationJob.get_motor_collection().find_one_and_update(
            {"_id": job_id, "status": JobStatus.PROCESSING.value},
            {"$set": fields},
            return_document=ReturnDocument.BEFORE,
        )
    except PyMongoError as e:
        raise PersistenceError("Job status update failed", details={"job_id": str(job_id)}) from e


async def mark_charged(job: GenerationJob) -> bool:
    """Record that job.cost has been debited. False if the job already left processing."""
    return await _transition(job.id, {"charged": True, "updated_at": datetime.utcnow()}) is not None


async def complete_job(job: GenerationJob, stored: StoredResult) -> bool:
    now = datetime.utcnow()
    try:
        won = await _transition(
            job.id,
            {
                "status": JobStatus.COMPLETED.value,
                "result_url": stored.result_url,
                "asset_id": stored.asset_id,
                "error_message": None,
                "completed_at": now,
                "updated_at": now,
            },
        ) is not None
    except PersistenceError:
        # the job stays processing and a retry stores a fresh result
        await discard_result(get_operation(job.operation), stored)
        raise
    if won:
        log.info("job_completed", operation=job.operation, result_url=stored.result_url)
    else:
        log.info("job_transition_lost", target="completed")
        await discard_result(get_operation(job.operation), stored)
    return won


async def fail_job(job: GenerationJob, message: str, detail: Any = None) -> bool:
    """processing -> failed; if the job was charged the winner refunds job.cost and appends the refund entry."""
    before = await _transition(
        job.id,
        {
            "status": JobStatus.FAILED.value,
            "error_message": message,
            "result_url": None,
            "updated_at": datetime.utcnow(),
        },
    )
    if before is None:
        log.info("job_transition_lost", target="failed")
        return False
    if not before.get("charged"):
        log.warning("job_failed", operation=job.operation, error_message=message, detail=detail, refunded=False)
        return True
    log.warning("job_failed", operation=job.operation, error_message=message, detail=detail)
    try:
        await credits_service.refund(job.user_id, job.cost)
    except PersistenceError:
        # job is already failed; an operator has to apply this refund by hand
        log.exception("refund_failed", user_id=str(job.user_id), cost=job.cost)
        return True
    await credits_service.append_usage_log(
        job.user_id,
        "refund",
        -job.cost,
        job_id=job.external_job_id,
        details={
            "reason": "refund",
            "operation": job.operation,
            "generation_job_id": str(job.id),
            "error": message if detail is None else detail,
        },
    )
    log.info("job_refunded", user_id=str(job.user_id), credits=job.cost)
    return True


async def fail_job_without_refund(job: GenerationJob, message: str) -> bool:
    """processing -> failed for a job whose debit never applied."""
    won = await _transition(
        job.id,
        {"status": JobStatus.FAILED.value, "error_message": message, "updated_at": datetime.utcnow()},
    ) is not None
    if won:
        log.warning("job_failed", operation=job.operation, error_message=message, refunded=False)
    return won


async def reconcile_outcome(
    job: GenerationJob,
    outcome: RemoteStatus | BaseException,
    client: BFLClient | None = None,
) -> GenerationJob | None:
    """Apply a poll result or a polling/processing exception to a job.

    Returns the stored job after reconciliation, or None when it was deleted meanwhile.
    Raises PersistenceError when the transition itself cannot be written; the job then
    stays processing and a later status check or the reaper retries.
    """
    client = client or bfl.get_bfl_client()
    if isinstance(outcome, BaseException):
        await fail_job(job, failure_message(outcome), detail=_diagnostic(outcome))
    elif outcome.status is RemoteState.FAILED:
        await fail_job(job, MSG_REMOTE_FAILED, detail=outcome.error_detail or outcome.raw)
    elif outcome.status is RemoteState.SUCCEEDED:
        if not outcome.result_url:
            await fail_job(job, MSG_NO_RESULT, detail=outcome.raw)
        else:
            operation = get_operation(job.operation)
            try:
                stored = await operation.store_result(job, outcome, client)
            except Exception as e:
                log.exception("job_result_store_failed", operation=job.operation)
                await fail_job(job, MSG_STORE_FAILED, detail=_diagnostic(e))
            else:
                await complete_job(job, stored)
    return await GenerationJob.get(job.id)


async def run_reconciliation(job_id: str | PydanticObjectId, client: BFLClient | None = None) -> None:
    """Background unit of work: poll to a terminal state and reconcile. Never raises."""
    with job_context(str(job_id)):
        try:
            job = await GenerationJob.get(PydanticObjectId(job_id))
            if job is None:
                log.info("reconcile_job_missing")
                return
            if job.status != JobStatus.PROCESSING:
                log.info("reconcile_skipped", status=job.status)
                return
            client = client or bfl.get_bfl_client()
            settings = get_settings()
            log.info("reconcile_started", operation=job.operation, external_job_id=job.external_job_id)
            try:
                outcome: RemoteStatus | BaseException = await client.poll_until_terminal(
                    job.polling_url,
                    max_attempts=settings.poll_max_attempts,
                    initial_delay=settings.poll_initial_delay,
                )
            except Exception as e:
                outcome = e
            await reconcile_outcome(job, outcome, client)
        except Exception:
            log.exception("reconcile_crashed")
