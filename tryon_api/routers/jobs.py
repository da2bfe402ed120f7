from fastapi import APIRouter, Depends, Query

from tryon_api.deps import get_current_user
from tryon_api.models.generation_job import GenerationJob
from tryon_api.models.user import User
from tryon_api.services import jobs as jobs_service

router = APIRouter()


def submitted_out(job: GenerationJob) -> dict:
    return {"jobId": str(job.id), "status": job.status.value, "externalJobId": job.external_job_id}


def status_out(job: GenerationJob) -> dict:
    return {"status": job.status.value, "resultUrl": job.result_url, "errorMessage": job.error_message}


def job_out(job: GenerationJob) -> dict:
    return {
        "id": str(job.id),
        "operation": job.operation,
        "status": job.status.value,
        "externalJobId": job.external_job_id,
        "modelId": str(job.model_id) if job.model_id else None,
        "garmentId": str(job.garment_id) if job.garment_id else None,
        "sceneId": str(job.scene_id) if job.scene_id else None,
        "assetId": str(job.asset_id) if job.asset_id else None,
        "resultUrl": job.result_url,
        "errorMessage": job.error_message,
        "prompt": job.prompt,
        "parameters": job.parameters,
        "cost": job.cost,
        "createdAt": job.created_at.isoformat(),
        "updatedAt": job.updated_at.isoformat(),
        "completedAt": job.completed_at.isoformat() if job.completed_at else None,
    }


@router.get("")
async def jobs_list(
    user: User = Depends(get_current_user),
    operation: str | None = Query(None),
    status: str | None = Query(None),
    limit: int = Query(10, ge=1, le=100),
    offset: int = Query(0, ge=0),
):
    """List the current user's jobs, newest first."""
    items, total = await jobs_service.list_jobs(user.id, operation=operation, status=status, limit=limit, offset=offset)
    return {"jobs": [job_out(j) for j in items], "total": total, "limit": limit, "offset": offset}


@router.get("/{job_id}")
async def job_get(job_id: str, user: User = Depends(get_current_user)):
    job = await jobs_service.get_job(job_id, user.id)
    return job_out(job)


@router.get("/{job_id}/status")
async def job_status(job_id: str, user: User = Depends(get_current_user)):
    """Check a job once against the remote service if it is still processing."""
    job = await jobs_service.check_status(job_id, user.id)
    return status_out(job)


@router.delete("/{job_id}")
async def job_delete(job_id: str, user: User = Depends(get_current_user)):
    await jobs_service.delete_job(job_id, user.id)
    return {"deleted": True}
