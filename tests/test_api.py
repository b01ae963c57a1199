import asyncio
import json

import pytest
from asgi_lifespan import LifespanManager
from httpx import ASGITransport, AsyncClient

from xhs_recipe.main import stream_status_events
from xhs_recipe.schemas import ConnectionState
from tests.fakes import tool_result


@pytest.mark.asyncio
async def test_fetch_post_route_returns_normalized_post(client, connector):
    connector.handler = lambda name, args: tool_result(
        {"title": "x", "caption": "红烧肉", "images": ["https://img.test/1.jpg", "data:image/png;base64,QUJD"]}
    )
    res = await client.post("/api/posts/fetch", json={"url": "https://www.xiaohongshu.com/explore/abc"})
    assert res.status_code == 200
    data = res.json()
    assert data["caption"] == "红烧肉"
    assert [img["id"] for img in data["images"]] == ["img_1", "img_2"]
    assert data["images"][1]["source"] == {"kind": "dataUrl", "dataUrl": "data:image/png;base64,QUJD"}


@pytest.mark.asyncio
async def test_fetch_post_validates_url(client):
    res = await client.post("/api/posts/fetch", json={"url": "ftp://example.com/x"})
    assert res.status_code == 422


@pytest.mark.asyncio
async def test_tool_error_maps_to_bad_gateway_with_hint(client, connector):
    connector.handler = lambda name, args: tool_result("note not found", is_error=True)
    res = await client.post("/api/posts/fetch", json={"url": "https://www.xiaohongshu.com/explore/abc"})
    assert res.status_code == 502
    error = res.json()["error"]
    assert error["code"] == "tool_error"
    assert error["message"] == "note not found"
    assert "xsec_token" in error["hint"]


@pytest.mark.asyncio
async def test_generate_recipe_route(client, completions):
    res = await client.post(
        "/api/recipes/generate",
        json={"source_url": "https://www.xiaohongshu.com/explore/abc", "caption": "红烧肉", "images": []},
    )
    assert res.status_code == 200
    data = res.json()
    assert data["markdown"].startswith("## 中文")
    assert data["meta"]["images"] == {"requested": 0, "attached": 0, "failures": []}
    assert "红烧肉" in completions.calls[0]["user"]


@pytest.mark.asyncio
async def test_generate_without_api_key_is_configuration_error(app_factory):
    app, _ = app_factory(api_key=None)
    async with LifespanManager(app):
        async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as http_client:
            res = await http_client.post("/api/recipes/generate", json={"source_url": "https://x.test/p", "caption": "c"})
            assert res.status_code == 400
            assert res.json()["error"]["code"] == "config"


@pytest.mark.asyncio
async def test_generate_rejects_too_many_images(client):
    images = [{"kind": "url", "url": f"https://img.test/{i}.jpg"} for i in range(41)]
    res = await client.post("/api/recipes/generate", json={"source_url": "https://x.test/p", "images": images})
    assert res.status_code == 422


@pytest.mark.asyncio
async def test_abort_routes(client):
    res = await client.post("/api/requests/missing/abort")
    assert res.json() == {"ok": False, "notFound": True}
    res = await client.post("/api/requests/abort-all")
    assert res.json() == {"ok": True, "count": 0}
    res = await client.get("/api/requests")
    assert res.json() == {"requests": []}
    res = await client.post("/api/session/clear")
    assert res.json() == {"ok": True}


@pytest.mark.asyncio
async def test_extract_url_route(client):
    res = await client.post("/api/url/extract", json={"text": "看看 https://xhslink.com/abc，复制打开"})
    assert res.json() == {"url": "https://xhslink.com/abc"}


@pytest.mark.asyncio
async def test_settings_round_trip(client):
    res = await client.get("/settings")
    assert res.status_code == 200
    assert res.json()["settings"]["mcp"]["http_url"] == "http://mcp.test/mcp"

    res = await client.post("/settings", json={"mcp": {"http_url": "http://127.0.0.1:18061/mcp"}})
    assert res.status_code == 200
    saved = json.loads(client.config_path.read_text())
    assert saved["mcp"]["http_url"] == "http://127.0.0.1:18061/mcp"
    assert client.app.state.coordinator.settings_provider().mcp.http_url == "http://127.0.0.1:18061/mcp"

    res = await client.post("/settings", json={"mcp": {"http_url": "nope"}})
    assert res.status_code == 400


@pytest.mark.asyncio
async def test_status_and_logs_routes(client):
    await asyncio.gather(*client.app.state.background_tasks)
    res = await client.get("/api/mcp/status")
    assert res.json()["state"] == "needs_path"
    res = await client.get("/api/logs")
    messages = [entry["message"] for entry in res.json()["entries"]]
    assert "app start" in messages


@pytest.mark.asyncio
async def test_status_sse_stream_sends_current_then_updates(app_factory):
    app, _ = app_factory()
    async with LifespanManager(app):
        bus = app.state.bus
        coordinator = app.state.coordinator
        response = await stream_status_events(bus=bus, coordinator=coordinator)
        first = await asyncio.wait_for(response.body_iterator.__anext__(), timeout=1)
        assert json.loads(first.replace("data:", "").strip())["state"] in ("idle", "needs_path")

        bus.publish(ConnectionState(state="ready", message="MCP ready."))
        second = await asyncio.wait_for(response.body_iterator.__anext__(), timeout=1)
        while json.loads(second.replace("data:", "").strip())["state"] != "ready":
            second = await asyncio.wait_for(response.body_iterator.__anext__(), timeout=1)
        await response.body_iterator.aclose()
