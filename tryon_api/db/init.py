import certifi
from beanie import init_beanie
from motor.motor_asyncio import AsyncIOMotorClient

from tryon_api.core.config import get_settings
from tryon_api.models.assets import Garment, ModelImage, Scene
from tryon_api.models.failed_job import FailedJob
from tryon_api.models.generation_job import GenerationJob
from tryon_api.models.usage_log import UsageLog
from tryon_api.models.user import User

DOCUMENT_MODELS = [
    User,
    UsageLog,
    GenerationJob,
    ModelImage,
    Garment,
    Scene,
    FailedJob,
]


def _use_tls(uri: str) -> bool:
    """True if URI uses TLS (Atlas or explicit tls=true). Avoids TLS for plain mongodb:// in CI."""
    return "mongodb+srv://" in uri or "tls=true" in uri.lower()


async def init_db() -> None:
    settings = get_settings()
    kwargs = {}
    if _use_tls(settings.mongodb_uri):
        kwargs["tlsCAFile"] = certifi.where()
        kwargs["tlsDisableOCSPEndpointCheck"] = True
    client = AsyncIOMotorClient(settings.mongodb_uri, **kwargs)
    database = client[settings.mongodb_db_name]
    await init_beanie(database=database, document_models=DOCUMENT_MODELS)
