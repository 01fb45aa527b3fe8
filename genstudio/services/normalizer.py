from __future__ import annotations

from collections.abc import Mapping, Sequence
from dataclasses import dataclass
import inspect
import logging
from typing import Any, Callable, Union

import httpx

from genstudio.core.errors import UnrecognizedOutputShapeError
from genstudio.providers.inference.base import ProviderFile


logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class UrlAccessorOutput:
    # Lazy handle whose URL is produced by calling (and possibly awaiting) an accessor.
    accessor: Callable[[], Any]


@dataclass(frozen=True)
class UrlFieldOutput:
    url: str


@dataclass(frozen=True)
class SequenceOutput:
    # Only the first element of a multi-output response is kept.
    first: Union[UrlAccessorOutput, UrlFieldOutput, "StringOutput"]


@dataclass(frozen=True)
class StringOutput:
    url: str


OutputVariant = Union[UrlAccessorOutput, UrlFieldOutput, SequenceOutput, StringOutput]


@dataclass(frozen=True)
class NormalizedOutput:
    artifact_url: str
    raw_output: Any


def _as_url_string(value: Any) -> str | None:
    if isinstance(value, httpx.URL):
        value = str(value)
    if isinstance(value, str) and value.strip():
        return value.strip()
    return None


def _decode_single(raw: Any) -> UrlAccessorOutput | UrlFieldOutput | StringOutput | None:
    if isinstance(raw, ProviderFile):
        return UrlAccessorOutput(raw.url)
    if isinstance(raw, Mapping):
        field = raw.get("url")
        if callable(field):
            return UrlAccessorOutput(field)
        url = _as_url_string(field)
        if url is not None:
            return UrlFieldOutput(url)
        return None
    url = _as_url_string(raw)
    if url is not None:
        return StringOutput(url)
    return None


def decode_output(raw: Any) -> OutputVariant:
    # Cases are tried in priority order; anything else is an integration bug.
    single = _decode_single(raw)
    if single is not None:
        return single
    if isinstance(raw, Sequence) and not isinstance(raw, (str, bytes, bytearray)):
        if raw:
            first = _decode_single(raw[0])
            if first is not None:
                return SequenceOutput(first)
    raise UnrecognizedOutputShapeError(raw)


async def _resolve(variant: OutputVariant, raw: Any) -> str:
    if isinstance(variant, SequenceOutput):
        return await _resolve(variant.first, raw)
    if isinstance(variant, UrlAccessorOutput):
        value = variant.accessor()
        if inspect.isawaitable(value):
            value = await value
        url = _as_url_string(value)
        if url is None:
            raise UnrecognizedOutputShapeError(raw)
        return url
    return variant.url


async def normalize(raw: Any) -> NormalizedOutput:
    try:
        variant = decode_output(raw)
        url = await _resolve(variant, raw)
    except UnrecognizedOutputShapeError as exc:
        logger.error("provider_output_unrecognized raw=%s", exc.raw_repr)
        raise
    return NormalizedOutput(artifact_url=url, raw_output=raw)


def jsonable_output(raw: Any) -> Any:
    # Reduce provider output to JSON-safe values for the job record.
    if raw is None or isinstance(raw, (str, int, float, bool)):
        return raw
    if isinstance(raw, httpx.URL):
        return str(raw)
    if isinstance(raw, ProviderFile):
        return {"file": raw.name}
    if isinstance(raw, Mapping):
        return {
            str(key): jsonable_output(value)
            for key, value in raw.items()
            if not callable(value)
        }
    if isinstance(raw, Sequence) and not isinstance(raw, (bytes, bytearray)):
        return [jsonable_output(item) for item in raw]
    return repr(raw)
