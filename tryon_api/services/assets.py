"""Asset lookup with ownership checks, and image inlining for remote payloads."""

import base64
import mimetypes
from typing import TypeVar

from beanie import PydanticObjectId
from bson.errors import InvalidId

from tryon_api.core.exceptions import (
    ForbiddenError,
    GenerationServiceError,
    NotFoundError,
)
from tryon_api.core.logging import get_logger
from tryon_api.models.assets import Garment, ModelImage, Scene
from tryon_api.services.bfl import BFLClient
from tryon_api.storage.base import get_storage

log = get_logger(__name__)

AssetT = TypeVar("AssetT", ModelImage, Garment, Scene)

LABELS = {ModelImage: "Model", Garment: "Garment", Scene: "Scene"}


def parse_object_id(value: str | PydanticObjectId, label: str) -> PydanticObjectId:
    try:
        return PydanticObjectId(value)
    except (InvalidId, TypeError):
        raise NotFoundError(f"{label} not found")


async def resolve_asset(model: type[AssetT], asset_id: str | PydanticObjectId, user_id: PydanticObjectId) -> AssetT:
    """Load an asset the user may use: owned by them or public."""
    label = LABELS.get(model, model.__name__)
    asset = await model.get(parse_object_id(asset_id, label))
    if asset is None:
        raise NotFoundError(f"{label} not found")
    if asset.user_id != user_id and not asset.is_public:
        raise ForbiddenError(f"You do not have permission to use this {label.lower()}")
    return asset


def to_data_url(content: bytes, content_type: str) -> str:
    return f"data:{content_type};base64,{base64.b64encode(content).decode('ascii')}"


async def inline_image(url: str, client: BFLClient) -> str:
    """Return a base64 data URL for an asset image.

    Stored assets are read from storage; remote URLs are downloaded, falling back
    to the plain URL when the download fails.
    """
    if url.startswith("data:"):
        return url
    storage = get_storage()
    key = storage.key_from_url(url)
    if key is not None:
        try:
            content = await storage.get(key)
        except FileNotFoundError:
            raise NotFoundError("Image file not found")
        content_type = mimetypes.guess_type(key)[0] or "image/jpeg"
        return to_data_url(content, content_type)
    try:
        content, content_type = await client.download(url)
    except GenerationServiceError as e:
        log.warning("inline_image_fallback", url=url, error=e.message)
        return url
    return to_data_url(content, content_type)
