"""Image assets referenced by jobs: people (models), garments and scenes."""

from datetime import datetime
from typing import Any, Literal

from beanie import Document, PydanticObjectId
from pydantic import Field

AssetType = Literal["uploaded", "generated"]


class ModelImage(Document):
    user_id: PydanticObjectId
    name: str = ""
    type: AssetType = "uploaded"
    url: str
    is_public: bool = False
    metadata: dict[str, Any] = Field(default_factory=dict)
    created_at: datetime = Field(default_factory=datetime.utcnow)
    updated_at: datetime = Field(default_factory=datetime.utcnow)

    class Settings:
        name = "models"
        indexes = [[("user_id", 1), ("created_at", -1)]]


class Garment(Document):
    user_id: PydanticObjectId
    name: str
    url: str
    category: Literal["shirt", "tshirt", "pants", "dress", "jacket", "sweater", "skirt", "other"] = "other"
    is_public: bool = False
    metadata: dict[str, Any] = Field(default_factory=dict)
    created_at: datetime = Field(default_factory=datetime.utcnow)
    updated_at: datetime = Field(default_factory=datetime.utcnow)

    class Settings:
        name = "garments"
        indexes = [[("user_id", 1), ("created_at", -1)]]


class Scene(Document):
    user_id: PydanticObjectId
    name: str
    url: str
    domain: str = "fashion"
    type: AssetType = "uploaded"
    is_public: bool = False
    metadata: dict[str, Any] = Field(default_factory=dict)
    created_at: datetime = Field(default_factory=datetime.utcnow)
    updated_at: datetime = Field(default_factory=datetime.utcnow)

    class Settings:
        name = "scenes"
        indexes = [[("user_id", 1), ("created_at", -1)]]
