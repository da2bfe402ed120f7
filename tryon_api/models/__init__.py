from tryon_api.models.user import User
from tryon_api.models.usage_log import UsageLog
from tryon_api.models.generation_job import GenerationJob, JobStatus
from tryon_api.models.assets import Garment, ModelImage, Scene
from tryon_api.models.failed_job import FailedJob

__all__ = [
    "User",
    "UsageLog",
    "GenerationJob",
    "JobStatus",
    "ModelImage",
    "Garment",
    "Scene",
    "FailedJob",
]
