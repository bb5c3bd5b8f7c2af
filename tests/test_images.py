import httpx
import pytest

from reviewdesk.errors import UpstreamServiceError, ValidationError
from reviewdesk.services.images import (
    ImageHostClient,
    ImageHostConfig,
    ImageLimits,
    ImageUpload,
    upload_batch,
    validate_batch,
)

from conftest import ImgbbStub, png


def _host(stub: ImgbbStub, api_key: str | None = "test-key") -> ImageHostClient:
    return ImageHostClient(ImageHostConfig(api_key=api_key), transport=httpx.MockTransport(stub))


@pytest.mark.asyncio
async def test_upload_batch_returns_urls_in_input_order() -> None:
    stub = ImgbbStub()
    urls = await upload_batch(_host(stub), [png("a.png"), png("b.png")])

    assert len(urls) == 2
    assert all(url.startswith("https://i.ibb.co/") for url in urls)
    assert stub.calls == 2


@pytest.mark.asyncio
async def test_five_images_fail_before_any_upload() -> None:
    stub = ImgbbStub()
    with pytest.raises(ValidationError, match="Cannot exceed 4 images"):
        await upload_batch(_host(stub), [png(f"{i}.png") for i in range(5)])
    assert stub.calls == 0


@pytest.mark.asyncio
async def test_existing_images_count_towards_limit() -> None:
    stub = ImgbbStub()
    with pytest.raises(ValidationError):
        await upload_batch(_host(stub), [png("a.png"), png("b.png")], existing_count=3)
    assert stub.calls == 0


@pytest.mark.asyncio
async def test_oversized_file_fails_without_upload() -> None:
    stub = ImgbbStub()
    big = png("big.png", size=6 * 1024 * 1024)
    with pytest.raises(ValidationError, match="exceeds 5MB"):
        await upload_batch(_host(stub), [big])
    assert stub.calls == 0


@pytest.mark.asyncio
async def test_gif_fails_without_upload() -> None:
    stub = ImgbbStub()
    gif = ImageUpload(filename="anim.gif", content_type="image/gif", data=b"GIF89a")
    with pytest.raises(ValidationError, match="invalid type"):
        await upload_batch(_host(stub), [gif])
    assert stub.calls == 0


def test_validate_batch_drops_empty_files() -> None:
    empty = ImageUpload(filename="", content_type="application/octet-stream", data=b"")
    assert validate_batch([empty, png("a.png")], limits=ImageLimits()) == [png("a.png")]


@pytest.mark.asyncio
async def test_rejected_upload_fails_the_whole_batch() -> None:
    stub = ImgbbStub(fail_filenames={"bad.png"})
    with pytest.raises(UpstreamServiceError, match="bad.png"):
        await upload_batch(_host(stub), [png("good.png"), png("bad.png")])
    assert stub.calls == 2


@pytest.mark.asyncio
async def test_missing_api_key_is_an_upstream_error() -> None:
    stub = ImgbbStub()
    with pytest.raises(UpstreamServiceError, match="not configured"):
        await upload_batch(_host(stub, api_key=None), [png()])
    assert stub.calls == 0


@pytest.mark.asyncio
async def test_invalid_host_response_is_an_upstream_error() -> None:
    host = ImageHostClient(
        ImageHostConfig(api_key="k"),
        transport=httpx.MockTransport(lambda request: httpx.Response(200, json={"data": {}})),
    )
    with pytest.raises(UpstreamServiceError, match="Invalid response"):
        await host.upload(b"x", "a.png", "image/png")


@pytest.mark.asyncio
async def test_upload_sends_key_and_image_field() -> None:
    seen: list[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        return httpx.Response(200, json={"data": {"url": "https://i.ibb.co/x.png"}})

    host = ImageHostClient(
        ImageHostConfig(api_key="secret-key", upload_url="https://imgbb.test/1/upload"),
        transport=httpx.MockTransport(handler),
    )
    assert await host.upload(b"data", "a.png", "image/png") == "https://i.ibb.co/x.png"
    assert seen[0].url.params["key"] == "secret-key"
    assert b'name="image"' in seen[0].content
