from __future__ import annotations

from genstudio.core.config import get_settings
from genstudio.core.errors import ProviderConfigError
from genstudio.providers.storage.base import ObjectStore
from genstudio.providers.storage.local import LocalObjectStore
from genstudio.providers.storage.memory import MemoryObjectStore
from genstudio.providers.storage.s3 import S3ObjectStore


_instances: dict[str, ObjectStore] = {}


def get_object_store() -> ObjectStore:
    settings = get_settings()
    provider = (settings.object_store_provider or "local").lower()
    if provider in _instances:
        return _instances[provider]

    if provider == "memory":
        instance: ObjectStore = MemoryObjectStore()
    elif provider == "local":
        instance = LocalObjectStore()
    elif provider == "s3":
        instance = S3ObjectStore()
    else:
        raise ProviderConfigError(f"Unsupported object store provider: {provider}")
    _instances[provider] = instance
    return instance


def reset_object_store() -> None:
    _instances.clear()
