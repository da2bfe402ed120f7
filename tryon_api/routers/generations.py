from fastapi import APIRouter, Depends, status
from pydantic import BaseModel, ConfigDict, Field

from tryon_api.deps import get_current_user
from tryon_api.models.user import User
from tryon_api.routers.jobs import submitted_out
from tryon_api.services import jobs as jobs_service

router = APIRouter()


class ModelGenerateRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    prompt: str | None = None
    name: str | None = None
    width: int = Field(default=1024, ge=256, le=2048)
    height: int = Field(default=1024, ge=256, le=2048)
    seed: int | None = None
    prompt_upsampling: bool = Field(default=True, alias="promptUpsampling")
    safety_tolerance: int = Field(default=2, ge=0, le=6, alias="safetyTolerance")
    garment_image: str | None = Field(default=None, alias="garmentImage")


class SceneGenerateRequest(BaseModel):
    prompt: str = Field(min_length=1)
    name: str = Field(min_length=1)
    domain: str = "fashion"
    width: int = Field(default=1024, ge=256, le=2048)
    height: int = Field(default=1024, ge=256, le=2048)
    seed: int | None = None


@router.post("/models/generate", status_code=status.HTTP_202_ACCEPTED)
async def model_generate(body: ModelGenerateRequest, user: User = Depends(get_current_user)):
    """Generate a model image. The stored image becomes a model asset when the job completes."""
    job = await jobs_service.submit_model_generation(
        user.id,
        body.prompt,
        name=body.name,
        width=body.width,
        height=body.height,
        seed=body.seed,
        prompt_upsampling=body.prompt_upsampling,
        safety_tolerance=body.safety_tolerance,
        garment_image=body.garment_image,
    )
    return submitted_out(job)


@router.post("/scenes/generate", status_code=status.HTTP_202_ACCEPTED)
async def scene_generate(body: SceneGenerateRequest, user: User = Depends(get_current_user)):
    job = await jobs_service.submit_scene_generation(
        user.id,
        body.prompt,
        body.name,
        domain=body.domain,
        width=body.width,
        height=body.height,
        seed=body.seed,
    )
    return submitted_out(job)
