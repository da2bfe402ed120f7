from abc import ABC, abstractmethod
from functools import lru_cache
from typing import BinaryIO

from tryon_api.core.config import get_settings


class StorageBackend(ABC):
    @abstractmethod
    async def put(self, key: str, body: BinaryIO | bytes, content_type: str | None = None) -> str:
        """Store file; return the URL it is served from."""
        ...

    @abstractmethod
    async def get(self, key: str) -> bytes:
        """Retrieve file bytes. Raises FileNotFoundError."""
        ...

    @abstractmethod
    async def delete(self, key: str) -> None:
        """Delete file."""
        ...

    @abstractmethod
    def key_from_url(self, url: str) -> str | None:
        """Inverse of put(): storage key for a URL this backend returned, else None."""
        ...


@lru_cache
def get_storage() -> StorageBackend:
    settings = get_settings()
    if settings.storage_backend == "gcs":
        from tryon_api.storage.gcs import GCSStorage
        return GCSStorage()
    from tryon_api.storage.local import LocalStorage
    return LocalStorage()
