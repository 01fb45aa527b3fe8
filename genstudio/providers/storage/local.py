from __future__ import annotations

import asyncio
from pathlib import Path

from genstudio.core.config import get_settings
from genstudio.core.errors import StorageError
from genstudio.providers.storage.base import (
    FetchedObject,
    fetch_remote,
    new_media_key,
    resolve_media_type,
)


LOCAL_MEDIA_MOUNT = "/files"


class LocalObjectStore:
    def __init__(self, root: str | None = None, base_url: str | None = None) -> None:
        settings = get_settings()
        self._root = Path(root or settings.local_media_dir)
        public = base_url or settings.object_store_public_base_url
        # Local files are served by the API under the static mount.
        self._base_url = (public or f"{settings.public_base_url}{LOCAL_MEDIA_MOUNT}").rstrip("/")
        self._fetch_timeout_s = float(settings.artifact_fetch_timeout_s)

    @property
    def root(self) -> Path:
        return self._root

    def _key(self, url: str) -> str | None:
        prefix = f"{self._base_url}/"
        if url.startswith(prefix):
            return url[len(prefix):]
        return None

    def _path(self, key: str) -> Path:
        path = (self._root / key).resolve()
        if self._root.resolve() not in path.parents:
            raise StorageError(f"Invalid object key: {key}")
        return path

    def is_durable(self, url: str) -> bool:
        return self._key(url) is not None

    async def get(self, url: str) -> FetchedObject:
        key = self._key(url)
        if key is None:
            return await fetch_remote(url, timeout_s=self._fetch_timeout_s)
        path = self._path(key)
        try:
            data = await asyncio.to_thread(path.read_bytes)
        except OSError as exc:
            raise StorageError(f"Object not found: {key}") from exc
        _, content_type = resolve_media_type(None, key)
        return FetchedObject(data=data, content_type=content_type)

    async def put(self, data: bytes, content_type: str, *, key: str | None = None) -> str:
        if key is None:
            extension, content_type = resolve_media_type(content_type, "")
            key = new_media_key(extension)
        path = self._path(key)

        def _write() -> None:
            path.parent.mkdir(parents=True, exist_ok=True)
            path.write_bytes(data)

        try:
            await asyncio.to_thread(_write)
        except OSError as exc:
            raise StorageError(f"Failed to write {key}") from exc
        return f"{self._base_url}/{key}"

    async def delete(self, url: str) -> bool:
        key = self._key(url)
        if key is None:
            return False
        path = self._path(key)
        try:
            await asyncio.to_thread(path.unlink)
        except FileNotFoundError:
            return False
        except OSError as exc:
            raise StorageError(f"Failed to delete {key}") from exc
        return True
