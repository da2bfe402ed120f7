"""Operation descriptors: what differs between model generation, scene generation and try-on.

Every job shares one state machine (services.jobs, services.reconcile). An
Operation supplies the cost, ledger action, remote endpoint, payload builder and
the success-path result handler.
"""

import mimetypes
import uuid
from dataclasses import dataclass
from typing import Any, Awaitable, Callable

from beanie import PydanticObjectId

from tryon_api.core.config import Settings, get_settings
from tryon_api.core.exceptions import BadRequestError, ProtocolError
from tryon_api.models.assets import Garment, ModelImage, Scene
from tryon_api.models.generation_job import GenerationJob
from tryon_api.services.assets import inline_image
from tryon_api.services.bfl import BFLClient, RemoteStatus
from tryon_api.storage.base import get_storage

DEFAULT_MODEL_PROMPT = (
    "studio portrait of Indian female model, medium shot, plain white background, "
    "ecommerce lighting, realistic skin texture, high quality, detailed features"
)
DEFAULT_TRYON_PROMPT = "the person wearing the provided garment, realistic fabric texture and draping"
OUTPUT_FORMAT = "jpeg"


@dataclass
class StoredResult:
    result_url: str
    asset_id: PydanticObjectId | None = None
    storage_key: str | None = None


@dataclass(frozen=True)
class Operation:
    name: str
    action: str  # usage log action for the debit
    cost_setting: str
    endpoint_setting: str
    build_payload: Callable[..., Awaitable[dict[str, Any]]]
    store_result: Callable[[GenerationJob, RemoteStatus, Any], Awaitable[StoredResult]]
    asset_model: type | None = None

    def cost(self, settings: Settings | None = None) -> int:
        return getattr(settings or get_settings(), self.cost_setting)

    def endpoint(self, settings: Settings | None = None) -> str:
        return getattr(settings or get_settings(), self.endpoint_setting)


def redact_payload(payload: dict[str, Any]) -> dict[str, Any]:
    """Copy of a payload safe to persist: inline images replaced by a size marker."""
    out = {}
    for key, value in payload.items():
        if isinstance(value, str) and value.startswith("data:"):
            out[key] = f"<inline image, {len(value)} chars>"
        else:
            out[key] = value
    return out


# Payload builders


async def build_model_generation_payload(
    client: BFLClient,
    prompt: str | None = None,
    width: int = 1024,
    height: int = 1024,
    seed: int | None = None,
    prompt_upsampling: bool = True,
    safety_tolerance: int = 2,
    garment_image: str | None = None,
) -> dict[str, Any]:
    text = prompt or DEFAULT_MODEL_PROMPT
    payload: dict[str, Any] = {
        "width": width,
        "height": height,
        "prompt_upsampling": prompt_upsampling,
        "safety_tolerance": safety_tolerance,
        "output_format": OUTPUT_FORMAT,
    }
    if garment_image:
        if not garment_image.startswith(("data:", "http://", "https://")):
            garment_image = f"data:image/jpeg;base64,{garment_image}"
        payload["garment"] = await inline_image(garment_image, client)
        lowered = text.lower()
        if "wearing" not in lowered and "dress" not in lowered:
            text = f"{text}, wearing the provided garment"
    payload["prompt"] = text
    if seed is not None:
        payload["seed"] = seed
    return payload


async def build_scene_generation_payload(
    client: BFLClient,
    prompt: str,
    width: int = 1024,
    height: int = 1024,
    seed: int | None = None,
) -> dict[str, Any]:
    if not prompt:
        raise BadRequestError("Prompt is required for scene generation")
    payload: dict[str, Any] = {
        "prompt": prompt,
        "width": width,
        "height": height,
        "prompt_upsampling": True,
        "output_format": OUTPUT_FORMAT,
    }
    if seed is not None:
        payload["seed"] = seed
    return payload


async def build_tryon_payload(
    client: BFLClient,
    model: ModelImage,
    garment: Garment,
    scene: Scene | None = None,
    prompt: str | None = None,
) -> dict[str, Any]:
    payload: dict[str, Any] = {
        "prompt": prompt or DEFAULT_TRYON_PROMPT,
        "image": await inline_image(model.url, client),
        "garment": await inline_image(garment.url, client),
        "output_format": OUTPUT_FORMAT,
    }
    if scene is not None:
        payload["background"] = await inline_image(scene.url, client)
    return payload


# Result handlers (success path; any exception here fails the job with a refund)


async def keep_remote_result(job: GenerationJob, remote: RemoteStatus, client: BFLClient) -> StoredResult:
    return StoredResult(result_url=remote.result_url)


async def _download_and_store(job: GenerationJob, remote: RemoteStatus, client: BFLClient) -> tuple[str, str]:
    content, content_type = await client.download(remote.result_url)
    if not content_type.startswith("image/"):
        raise ProtocolError(f"Downloaded result is not an image: {content_type}")
    ext = mimetypes.guess_extension(content_type) or ".jpg"
    # one key per attempt
    key = f"generated/{job.operation}/{job.id}_{uuid.uuid4().hex[:8]}{ext}"
    url = await get_storage().put(key, content, content_type=content_type)
    return key, url


async def store_generated_model(job: GenerationJob, remote: RemoteStatus, client: BFLClient) -> StoredResult:
    key, url = await _download_and_store(job, remote, client)
    asset = ModelImage(
        user_id=job.user_id,
        name=job.metadata.get("name") or "Generated Model",
        type="generated",
        url=url,
        metadata={
            "width": job.parameters.get("width"),
            "height": job.parameters.get("height"),
            "format": OUTPUT_FORMAT,
            "prompt": job.prompt,
            "generation_params": job.parameters,
            "job_id": str(job.id),
        },
    )
    await asset.insert()
    return StoredResult(result_url=url, asset_id=asset.id, storage_key=key)


async def store_generated_scene(job: GenerationJob, remote: RemoteStatus, client: BFLClient) -> StoredResult:
    key, url = await _download_and_store(job, remote, client)
    asset = Scene(
        user_id=job.user_id,
        name=job.metadata.get("name") or "Generated Scene",
        domain=job.metadata.get("domain") or "fashion",
        type="generated",
        url=url,
        metadata={
            "width": job.parameters.get("width"),
            "height": job.parameters.get("height"),
            "format": OUTPUT_FORMAT,
            "prompt": job.prompt,
            "generation_params": job.parameters,
            "job_id": str(job.id),
        },
    )
    await asset.insert()
    return StoredResult(result_url=url, asset_id=asset.id, storage_key=key)


MODEL_GENERATION = Operation(
    name="model_generation",
    action="model_generation",
    cost_setting="credits_per_model_generation",
    endpoint_setting="bfl_generate_endpoint",
    build_payload=build_model_generation_payload,
    store_result=store_generated_model,
    asset_model=ModelImage,
)

SCENE_GENERATION = Operation(
    name="scene_generation",
    action="scene_change",
    cost_setting="credits_per_scene_generation",
    endpoint_setting="bfl_generate_endpoint",
    build_payload=build_scene_generation_payload,
    store_result=store_generated_scene,
    asset_model=Scene,
)

TRYON = Operation(
    name="tryon",
    action="tryon",
    cost_setting="credits_per_tryon",
    endpoint_setting="bfl_edit_endpoint",
    build_payload=build_tryon_payload,
    store_result=keep_remote_result,
)

OPERATIONS = {op.name: op for op in (MODEL_GENERATION, SCENE_GENERATION, TRYON)}


def get_operation(name: str) -> Operation:
    try:
        return OPERATIONS[name]
    except KeyError:
        raise BadRequestError(f"Unknown operation: {name}")


async def discard_result(operation: Operation, stored: StoredResult) -> None:
    """Undo a result handler's side effects when the completion did not apply."""
    if stored.asset_id is not None and operation.asset_model is not None:
        asset = await operation.asset_model.get(stored.asset_id)
        if asset is not None:
            await asset.delete()
    if stored.storage_key:
        await get_storage().delete(stored.storage_key)
