from datetime import datetime
from enum import Enum
from typing import Any

from beanie import Document, PydanticObjectId
from pydantic import ConfigDict, Field


class JobStatus(str, Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"


TERMINAL_STATUSES = (JobStatus.COMPLETED, JobStatus.FAILED)


class GenerationJob(Document):
    """One generation or try-on request, tracked from submission to terminal outcome.

    Status only moves processing -> completed or processing -> failed, always through
    a conditional update on the current status (services.reconcile). completed_at,
    result_url and error_message follow the status.
    """

    model_config = ConfigDict(protected_namespaces=())

    user_id: PydanticObjectId
    operation: str  # model_generation | scene_generation | tryon
    model_id: PydanticObjectId | None = None
    garment_id: PydanticObjectId | None = None
    scene_id: PydanticObjectId | None = None
    external_job_id: str
    polling_url: str
    status: JobStatus = JobStatus.PENDING
    result_url: str | None = None
    asset_id: PydanticObjectId | None = None
    error_message: str | None = None
    prompt: str | None = None
    parameters: dict[str, Any] = Field(default_factory=dict)
    metadata: dict[str, Any] = Field(default_factory=dict)
    cost: int
    charged: bool = False  # set once the debit for cost has applied; only charged jobs are refunded
    dispatch_count: int = 1
    created_at: datetime = Field(default_factory=datetime.utcnow)
    updated_at: datetime = Field(default_factory=datetime.utcnow)
    completed_at: datetime | None = None

    class Settings:
        name = "generation_jobs"
        indexes = [
            [("user_id", 1), ("created_at", -1)],
            [("status", 1), ("updated_at", 1)],
            [("external_job_id", 1)],
        ]

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES
