from datetime import datetime
from typing import Any, Literal

from beanie import Document, PydanticObjectId
from pydantic import Field

UsageAction = Literal["model_generation", "tryon", "scene_change", "other", "refund"]


class UsageLog(Document):
    """Append-only credit ledger. Never updated or deleted."""
    user_id: PydanticObjectId
    action: UsageAction
    credits_used: int  # positive = debit, negative = refund or credit addition
    job_id: str | None = None  # external job handle; correlates debit and refund
    details: dict[str, Any] = Field(default_factory=dict)
    timestamp: datetime = Field(default_factory=datetime.utcnow)

    class Settings:
        name = "usage_logs"
        indexes = [
            [("user_id", 1), ("timestamp", -1)],
            [("job_id", 1)],
        ]
