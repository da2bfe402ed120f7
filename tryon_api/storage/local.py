from pathlib import Path
from typing import BinaryIO

from tryon_api.core.config import get_settings
from tryon_api.storage.base import StorageBackend


class LocalStorage(StorageBackend):
    """Files under STORAGE_LOCAL_PATH, served by the app at storage_public_prefix."""

    def __init__(self, root: str | Path | None = None) -> None:
        settings = get_settings()
        self.root = Path(root or settings.storage_local_path)
        self.root.mkdir(parents=True, exist_ok=True)
        self.prefix = settings.storage_public_prefix.rstrip("/")

    def _path(self, key: str) -> Path:
        path = (self.root / key).resolve()
        if self.root.resolve() not in path.parents:
            raise ValueError(f"Key escapes storage root: {key}")
        return path

    async def put(self, key: str, body: BinaryIO | bytes, content_type: str | None = None) -> str:
        path = self._path(key)
        path.parent.mkdir(parents=True, exist_ok=True)
        if isinstance(body, bytes):
            path.write_bytes(body)
        else:
            path.write_bytes(body.read())
        return f"{self.prefix}/{key}"

    async def get(self, key: str) -> bytes:
        path = self._path(key)
        if not path.exists():
            raise FileNotFoundError(key)
        return path.read_bytes()

    async def delete(self, key: str) -> None:
        path = self._path(key)
        if path.exists():
            path.unlink()

    def key_from_url(self, url: str) -> str | None:
        marker = f"{self.prefix}/"
        if url.startswith(marker):
            return url[len(marker):]
        return None
