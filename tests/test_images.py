import base64
import io

import httpx
import pytest
import respx
from httpx import Response
from PIL import Image

from xhs_recipe.cancellation import CancelToken
from xhs_recipe.config import LimitsConfig
from xhs_recipe.errors import RequestAborted
from xhs_recipe.images import (
    DownloadedImage,
    PreviewService,
    bytes_to_data_url,
    data_url_to_bytes,
    download_image,
    preprocess_for_model,
)
from xhs_recipe.schemas import DataUrlSource, PostImage, UrlSource


def png_bytes(size) -> bytes:
    buffer = io.BytesIO()
    Image.new("RGBA", size, (10, 200, 10, 255)).save(buffer, format="PNG")
    return buffer.getvalue()


def decode(data_url: str) -> Image.Image:
    data, _ = data_url_to_bytes(data_url)
    return Image.open(io.BytesIO(data))


def test_preprocess_downsizes_to_jpeg():
    out = preprocess_for_model(DownloadedImage(png_bytes((2000, 1000)), "image/png"))
    assert out.startswith("data:image/jpeg;base64,")
    img = decode(out)
    assert img.size == (1280, 640)
    assert img.format == "JPEG"


def test_preprocess_passes_through_undecodable_bytes():
    out = preprocess_for_model(DownloadedImage(b"not an image", "image/heic; charset=binary"))
    assert out == bytes_to_data_url(b"not an image", "image/heic")


def test_data_url_round_trip_rejects_non_base64():
    assert data_url_to_bytes("data:image/png;base64,QUJD") == (b"ABC", "image/png")
    with pytest.raises(ValueError):
        data_url_to_bytes("https://img.test/a.png")


@pytest.mark.asyncio
async def test_download_rejects_non_image_content_then_fallback_succeeds():
    async with httpx.AsyncClient() as client:
        with respx.mock() as respx_mock:
            route = respx_mock.get("https://img.test/a").mock(
                side_effect=[
                    Response(200, headers={"content-type": "text/html"}, content=b"<html>"),
                    Response(200, headers={"content-type": "image/png"}, content=b"PNGDATA"),
                ]
            )
            downloaded = await download_image(client, "https://img.test/a")
            assert downloaded.data == b"PNGDATA"
            assert route.call_count == 2
            assert route.calls[0].request.headers["referer"] == "https://www.xiaohongshu.com/"


@pytest.mark.asyncio
async def test_fallback_follows_redirects_manually():
    async with httpx.AsyncClient() as client:
        with respx.mock() as respx_mock:
            respx_mock.get("https://img.test/start").mock(
                side_effect=[
                    Response(500),
                    Response(302, headers={"location": "/final.png"}),
                ]
            )
            respx_mock.get("https://img.test/final.png").mock(
                return_value=Response(200, headers={"content-type": "image/png"}, content=b"IMG")
            )
            downloaded = await download_image(client, "https://img.test/start")
            assert downloaded.content_type == "image/png"


@pytest.mark.asyncio
async def test_streamed_body_over_ceiling_fails():
    limits = LimitsConfig(image_max_bytes=10)

    async def chunks():
        for _ in range(4):
            yield b"12345"

    async with httpx.AsyncClient() as client:
        with respx.mock() as respx_mock:
            respx_mock.get("https://img.test/stream").mock(
                side_effect=lambda request: Response(200, headers={"content-type": "image/jpeg"}, content=chunks())
            )
            assert await download_image(client, "https://img.test/stream", limits=limits) is None


@pytest.mark.asyncio
async def test_cancelled_download_raises_aborted():
    token = CancelToken()
    token.cancel()
    async with httpx.AsyncClient() as client:
        with respx.mock(assert_all_called=False) as respx_mock:
            route = respx_mock.get("https://img.test/a").mock(return_value=Response(200, content=b"x"))
            with pytest.raises(RequestAborted):
                await download_image(client, "https://img.test/a", token=token)
            assert route.call_count == 0


@pytest.mark.asyncio
async def test_previews_cache_and_failure_reasons():
    limits = LimitsConfig(preview_cache_max=1)
    inline = "data:image/png;base64," + base64.b64encode(png_bytes((800, 400))).decode("ascii")
    images = [
        PostImage(id="img_1", source=UrlSource(url="https://img.test/ok.png"), preview_url="https://img.test/ok.png"),
        PostImage(id="img_2", source=UrlSource(url="https://img.test/bad.png"), preview_url="https://img.test/bad.png"),
        PostImage(id="img_3", source=UrlSource(url="https://img.test/gone.png"), preview_url="https://img.test/gone.png"),
        PostImage(id="img_4", source=DataUrlSource(data_url=inline), preview_url=inline),
    ]
    async with httpx.AsyncClient() as client:
        service = PreviewService(client, limits)
        with respx.mock() as respx_mock:
            ok = respx_mock.get("https://img.test/ok.png").mock(
                return_value=Response(200, headers={"content-type": "image/png"}, content=png_bytes((720, 720)))
            )
            respx_mock.get("https://img.test/bad.png").mock(
                return_value=Response(200, headers={"content-type": "image/png"}, content=b"garbage")
            )
            respx_mock.get("https://img.test/gone.png").mock(return_value=Response(404))

            result = await service.previews(images)
            again = await service.previews(images[:1])
            assert ok.call_count == 1

    by_id = {p["id"]: p["data_url"] for p in result["previews"]}
    assert set(by_id) == {"img_1", "img_4"}
    assert decode(by_id["img_1"]).size == (360, 360)
    assert decode(by_id["img_4"]).size == (360, 180)
    assert {e["id"]: e["reason"] for e in result["errors"]} == {"img_2": "decode_failed", "img_3": "download_failed"}
    assert again["previews"][0]["data_url"] == by_id["img_1"]
    assert len(service.cache) == 1


@pytest.mark.asyncio
async def test_expired_preview_is_downloaded_again():
    limits = LimitsConfig(preview_cache_ttl_s=60)
    images = [PostImage(id="img_1", source=UrlSource(url="https://img.test/ok.png"), preview_url="https://img.test/ok.png")]
    async with httpx.AsyncClient() as client:
        service = PreviewService(client, limits)
        with respx.mock() as respx_mock:
            ok = respx_mock.get("https://img.test/ok.png").mock(
                return_value=Response(200, headers={"content-type": "image/png"}, content=png_bytes((64, 64)))
            )
            await service.previews(images)
            await service.previews(images)
            assert ok.call_count == 1

            stamp, data_url = service.cache["url:https://img.test/ok.png"]
            service.cache["url:https://img.test/ok.png"] = (stamp - 61, data_url)
            result = await service.previews(images)
            assert ok.call_count == 2
    assert [p["id"] for p in result["previews"]] == ["img_1"]
