from __future__ import annotations

import httpx
import pytest

from genstudio.core.errors import UnrecognizedOutputShapeError
from genstudio.providers.inference.base import ProviderFile
from genstudio.services.normalizer import (
    SequenceOutput,
    StringOutput,
    UrlAccessorOutput,
    UrlFieldOutput,
    decode_output,
    jsonable_output,
    normalize,
)


def _file(url: str) -> ProviderFile:
    async def _resolve() -> str:
        return url

    return ProviderFile("output.png", _resolve)


@pytest.mark.asyncio
async def test_url_field_mapping_yields_its_url() -> None:
    result = await normalize({"url": "p"})
    assert result.artifact_url == "p"
    assert result.raw_output == {"url": "p"}
    assert isinstance(decode_output({"url": "p"}), UrlFieldOutput)


@pytest.mark.asyncio
async def test_plain_string_is_the_url() -> None:
    result = await normalize("https://replicate.delivery/out.webp")
    assert result.artifact_url == "https://replicate.delivery/out.webp"
    assert isinstance(decode_output("https://replicate.delivery/out.webp"), StringOutput)


@pytest.mark.asyncio
async def test_sequence_keeps_only_first_element() -> None:
    raw = ["https://a.test/1.png", "https://a.test/2.png"]
    result = await normalize(raw)
    assert result.artifact_url == "https://a.test/1.png"
    assert isinstance(decode_output(raw), SequenceOutput)


@pytest.mark.asyncio
async def test_lazy_file_handle_is_awaited() -> None:
    handle = _file("https://files.test/lazy.png")
    assert isinstance(decode_output(handle), UrlAccessorOutput)
    result = await normalize(handle)
    assert result.artifact_url == "https://files.test/lazy.png"


@pytest.mark.asyncio
async def test_sequence_of_file_handles() -> None:
    result = await normalize([_file("https://files.test/first.mp4"), _file("https://files.test/second.mp4")])
    assert result.artifact_url == "https://files.test/first.mp4"


@pytest.mark.asyncio
async def test_sync_url_accessor_on_mapping() -> None:
    result = await normalize({"url": lambda: httpx.URL("https://files.test/sync.png")})
    assert result.artifact_url == "https://files.test/sync.png"


@pytest.mark.asyncio
@pytest.mark.parametrize("raw", [None, 42, {}, [], {"image": "https://x.test"}, "   ", [None]])
async def test_unrecognized_shapes_raise(raw) -> None:
    with pytest.raises(UnrecognizedOutputShapeError):
        await normalize(raw)


@pytest.mark.asyncio
async def test_accessor_returning_non_url_raises() -> None:
    with pytest.raises(UnrecognizedOutputShapeError):
        await normalize({"url": lambda: None})


def test_jsonable_output_drops_callables_and_file_handles() -> None:
    raw = {"url": lambda: "x", "files": [_file("https://f.test/a.png")], "seed": 7}
    assert jsonable_output(raw) == {"files": [{"file": "output.png"}], "seed": 7}
