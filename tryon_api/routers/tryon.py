from fastapi import APIRouter, Depends, status
from pydantic import BaseModel, ConfigDict, Field

from tryon_api.deps import get_current_user
from tryon_api.models.user import User
from tryon_api.routers.jobs import submitted_out
from tryon_api.services import jobs as jobs_service

router = APIRouter()


class TryOnRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True, protected_namespaces=())

    model_id: str = Field(alias="modelId")
    garment_id: str = Field(alias="garmentId")
    scene_id: str | None = Field(default=None, alias="sceneId")
    prompt: str | None = None


@router.post("", status_code=status.HTTP_202_ACCEPTED)
async def tryon_submit(body: TryOnRequest, user: User = Depends(get_current_user)):
    """Start a try-on job. Poll /v1/jobs/{jobId}/status for the result."""
    job = await jobs_service.submit_tryon(
        user.id,
        body.model_id,
        body.garment_id,
        scene_id=body.scene_id,
        prompt=body.prompt,
    )
    return submitted_out(job)
