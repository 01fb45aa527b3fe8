from __future__ import annotations

from dataclasses import dataclass
import re
import time
from typing import Protocol
from uuid import uuid4

import httpx

from genstudio.core.errors import StorageError
from genstudio.services.telemetry import record_external_call


_VIDEO_EXTENSIONS = ("mp4", "webm", "mov", "avi", "mkv")
_URL_EXTENSION = re.compile(r"\.(jpg|jpeg|png|webp|gif|mp4|webm|mov|avi|mkv)", re.IGNORECASE)
_URL_VIDEO_EXTENSION = re.compile(r"\.(mp4|webm|mov|avi|mkv)", re.IGNORECASE)


@dataclass(frozen=True)
class FetchedObject:
    data: bytes
    content_type: str


class ObjectStore(Protocol):
    def is_durable(self, url: str) -> bool:
        ...

    async def get(self, url: str) -> FetchedObject:
        ...

    async def put(self, data: bytes, content_type: str, *, key: str | None = None) -> str:
        ...

    async def delete(self, url: str) -> bool:
        ...


def _extension_content_type(extension: str) -> str:
    if extension in _VIDEO_EXTENSIONS:
        return "video/quicktime" if extension == "mov" else f"video/{extension}"
    return "image/jpeg" if extension in {"jpg", "jpeg"} else f"image/{extension}"


def resolve_media_type(content_type: str | None, url: str) -> tuple[str, str]:
    # Content type wins; the URL suffix is only consulted when the header is vague.
    content_type = (content_type or "").lower()
    if "video/mp4" in content_type:
        return "mp4", "video/mp4"
    if "video/webm" in content_type:
        return "webm", "video/webm"
    if "video/quicktime" in content_type or "video/mov" in content_type:
        return "mov", "video/quicktime"
    if "video" in content_type:
        match = _URL_VIDEO_EXTENSION.search(url)
        if match:
            extension = match.group(1).lower()
            return extension, _extension_content_type(extension)
        return "mp4", "video/mp4"
    if "jpeg" in content_type or "jpg" in content_type:
        return "jpg", "image/jpeg"
    if "png" in content_type:
        return "png", "image/png"
    if "webp" in content_type:
        return "webp", "image/webp"
    if "gif" in content_type:
        return "gif", "image/gif"
    match = _URL_EXTENSION.search(url)
    if match:
        extension = match.group(1).lower()
        return extension, _extension_content_type(extension)
    return "png", content_type or "image/png"


def new_media_key(extension: str) -> str:
    return f"media/{uuid4().hex}.{extension}"


async def fetch_remote(
    url: str,
    *,
    timeout_s: float,
    client: httpx.AsyncClient | None = None,
) -> FetchedObject:
    # Non-owned URLs are fetched with a plain GET.
    start = time.monotonic()
    owns_client = client is None
    http = client or httpx.AsyncClient(timeout=timeout_s, follow_redirects=True)
    try:
        response = await http.get(url)
        response.raise_for_status()
    except (httpx.HTTPError, httpx.InvalidURL) as exc:
        # InvalidURL is raised while building the request and is not an HTTPError.
        record_external_call(
            integration="storage.fetch",
            latency_ms=(time.monotonic() - start) * 1000.0,
            success=False,
        )
        raise StorageError(f"Failed to fetch {url}") from exc
    finally:
        if owns_client:
            await http.aclose()
    record_external_call(
        integration="storage.fetch",
        latency_ms=(time.monotonic() - start) * 1000.0,
        success=True,
    )
    return FetchedObject(data=response.content, content_type=response.headers.get("content-type", ""))
