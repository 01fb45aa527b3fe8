from __future__ import annotations

from genstudio.core.errors import StorageError
from genstudio.providers.storage.base import FetchedObject, new_media_key, resolve_media_type


class MemoryObjectStore:
    def __init__(self, base_url: str = "https://media.test") -> None:
        # In-process store for tests; remote fetches are served from registered fixtures.
        self.base_url = base_url.rstrip("/")
        self.objects: dict[str, FetchedObject] = {}
        self.remote: dict[str, FetchedObject] = {}
        self.failing_urls: set[str] = set()
        self.fail_uploads = False
        self.uploads = 0

    def _key(self, url: str) -> str | None:
        prefix = f"{self.base_url}/"
        if url.startswith(prefix):
            return url[len(prefix):]
        return None

    def is_durable(self, url: str) -> bool:
        return self._key(url) is not None

    async def get(self, url: str) -> FetchedObject:
        key = self._key(url)
        if key is not None:
            if key not in self.objects:
                raise StorageError(f"Object not found: {key}")
            return self.objects[key]
        if url in self.failing_urls:
            raise StorageError(f"Failed to fetch {url}")
        if url in self.remote:
            return self.remote[url]
        _, content_type = resolve_media_type(None, url)
        return FetchedObject(data=f"bytes:{url}".encode("utf-8"), content_type=content_type)

    async def put(self, data: bytes, content_type: str, *, key: str | None = None) -> str:
        if self.fail_uploads:
            raise StorageError("Upload failed")
        if key is None:
            extension, content_type = resolve_media_type(content_type, "")
            key = new_media_key(extension)
        self.objects[key] = FetchedObject(data=data, content_type=content_type)
        self.uploads += 1
        return f"{self.base_url}/{key}"

    async def delete(self, url: str) -> bool:
        key = self._key(url)
        if key is None:
            return False
        return self.objects.pop(key, None) is not None
