from pathlib import Path

import httpx
import pytest
from asgi_lifespan import LifespanManager
from httpx import ASGITransport, AsyncClient

from xhs_recipe.config import AppSettings, LimitsConfig, McpConfig
from xhs_recipe.coordinator import RequestCoordinator
from xhs_recipe.launcher import McpLauncher
from xhs_recipe.main import create_app
from xhs_recipe.tool_client import ToolClient
from tests.fakes import FakeCompletionFactory, FakeConnector, identity_resolver, never_healthy, port_free


def make_settings(tmp_path: Path, **overrides) -> AppSettings:
    mcp = overrides.pop("mcp", None) or McpConfig(transport="http", http_url="http://mcp.test/mcp")
    settings = AppSettings(
        mcp=mcp,
        limits=LimitsConfig(image_max_bytes=1024 * 1024),
        data_dir=str(tmp_path / "data"),
        host="127.0.0.1",
        port=8765,
    )
    if overrides:
        settings = settings.model_copy(update=overrides)
    return settings


@pytest.fixture(autouse=True)
def _clean_env(monkeypatch):
    for name in (
        "OPENAI_MODEL",
        "OPENAI_BASE_URL",
        "XHS_MCP_TRANSPORT",
        "XHS_MCP_COMMAND",
        "XHS_MCP_ARGS",
        "XHS_MCP_URL",
        "XHS_MCP_HTTP_URL",
        "XHS_MCP_TOOL",
    ):
        monkeypatch.delenv(name, raising=False)


@pytest.fixture
def connector() -> FakeConnector:
    return FakeConnector()


@pytest.fixture
def completions() -> FakeCompletionFactory:
    return FakeCompletionFactory()


@pytest.fixture
def app_factory(tmp_path: Path, connector: FakeConnector, completions: FakeCompletionFactory):
    def _factory(*, config_path: Path | None = None, api_key: str | None = "sk-test", **settings_overrides):
        settings = make_settings(tmp_path, **settings_overrides)
        cfg_path = config_path or (tmp_path / "config.json")

        def coordinator_factory(settings_provider, bus):
            return RequestCoordinator(
                settings_provider=settings_provider,
                bus=bus,
                tool_client=ToolClient(
                    settings_provider=settings_provider,
                    connector=connector,
                    url_resolver=identity_resolver,
                ),
                launcher=McpLauncher(
                    settings_provider=settings_provider,
                    bus=bus,
                    health_check=never_healthy,
                    port_check=port_free,
                ),
                http_client=httpx.AsyncClient(),
                completion_factory=completions,
                api_key_provider=lambda: api_key,
            )

        app = create_app(settings, coordinator_factory=coordinator_factory, config_path=cfg_path)
        return app, cfg_path

    return _factory


@pytest.fixture
async def client(app_factory):
    app, config_path = app_factory()
    async with LifespanManager(app):
        transport = ASGITransport(app=app)
        async with AsyncClient(transport=transport, base_url="http://test") as http_client:
            http_client.app = app  # type: ignore[attr-defined]
            http_client.config_path = config_path  # type: ignore[attr-defined]
            yield http_client
