from __future__ import annotations

import asyncio
import logging
from typing import Any

import boto3
from botocore.exceptions import BotoCoreError, ClientError

from genstudio.core.config import get_settings
from genstudio.core.errors import IntegrationUnavailableError, ProviderConfigError, StorageError
from genstudio.providers.storage.base import (
    FetchedObject,
    fetch_remote,
    new_media_key,
    resolve_media_type,
)
from genstudio.services.resilience import guarded_call


logger = logging.getLogger(__name__)

_INTEGRATION = "storage.s3"


def _retryable(exc: Exception) -> bool:
    if isinstance(exc, (asyncio.TimeoutError, ConnectionError, TimeoutError)):
        return True
    if isinstance(exc, ClientError):
        status = exc.response.get("ResponseMetadata", {}).get("HTTPStatusCode")
        return isinstance(status, int) and status >= 500
    return isinstance(exc, BotoCoreError)


class S3ObjectStore:
    def __init__(
        self,
        bucket: str | None = None,
        region: str | None = None,
        client: Any | None = None,
    ) -> None:
        settings = get_settings()
        self._bucket = bucket or settings.object_store_bucket
        self._region = region or settings.object_store_region
        if not self._bucket:
            raise ProviderConfigError("OBJECT_STORE_BUCKET is required for the s3 object store")
        public = settings.object_store_public_base_url
        self._base_url = (public or f"https://{self._bucket}.s3.{self._region}.amazonaws.com").rstrip("/")
        self._fetch_timeout_s = float(settings.artifact_fetch_timeout_s)
        self._client = client

    def _get_client(self) -> Any:
        if self._client is None:
            self._client = boto3.client("s3", region_name=self._region)
        return self._client

    def _key(self, url: str) -> str | None:
        prefix = f"{self._base_url}/"
        if url.startswith(prefix):
            return url[len(prefix):]
        return None

    def is_durable(self, url: str) -> bool:
        return self._key(url) is not None

    async def _call(self, operation: str, **kwargs: Any) -> Any:
        client = self._get_client()

        async def _invoke() -> Any:
            return await asyncio.to_thread(getattr(client, operation), **kwargs)

        try:
            return await guarded_call(
                _INTEGRATION,
                _invoke,
                failures=(BotoCoreError, ClientError),
                retryable=_retryable,
            )
        except IntegrationUnavailableError as exc:
            logger.warning("s3_call_failed operation=%s bucket=%s", operation, self._bucket)
            raise StorageError(f"S3 {operation} failed") from exc

    async def get(self, url: str) -> FetchedObject:
        key = self._key(url)
        if key is None:
            return await fetch_remote(url, timeout_s=self._fetch_timeout_s)
        response = await self._call("get_object", Bucket=self._bucket, Key=key)
        body = await asyncio.to_thread(response["Body"].read)
        return FetchedObject(data=body, content_type=response.get("ContentType", ""))

    async def put(self, data: bytes, content_type: str, *, key: str | None = None) -> str:
        if key is None:
            extension, content_type = resolve_media_type(content_type, "")
            key = new_media_key(extension)
        await self._call(
            "put_object",
            Bucket=self._bucket,
            Key=key,
            Body=data,
            ContentType=content_type,
        )
        return f"{self._base_url}/{key}"

    async def delete(self, url: str) -> bool:
        key = self._key(url)
        if key is None:
            return False
        await self._call("delete_object", Bucket=self._bucket, Key=key)
        return True
