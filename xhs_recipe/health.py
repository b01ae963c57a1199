import asyncio
from urllib.parse import urlparse

from mcp import ClientSession, types
from mcp.client.streamable_http import streamablehttp_client

from .cancellation import with_timeout

HEALTHCHECK_TIMEOUT_S = 1.25
CLIENT_INFO = types.Implementation(name="mcp-healthcheck", version="0.0.0")


async def _list_tools_once(http_url: str) -> None:
    async with streamablehttp_client(http_url) as (read_stream, write_stream, _):
        async with ClientSession(read_stream, write_stream, client_info=CLIENT_INFO) as session:
            await session.initialize()
            await session.list_tools()


async def check_mcp_http(http_url: str, timeout_s: float = HEALTHCHECK_TIMEOUT_S) -> None:
    """Handshake with the endpoint and list its tools, then close the session.

    Raises on timeout, refused connection or protocol failure; the caller
    treats every failure the same way.
    """
    await with_timeout(_list_tools_once(http_url), timeout_s, "MCP health check")


def parse_host_port(http_url: str) -> tuple:
    parsed = urlparse(http_url)
    port = parsed.port or (443 if parsed.scheme == "https" else 80)
    return parsed.hostname or "localhost", port


async def is_tcp_port_open(host: str, port: int, timeout_s: float = 0.35) -> bool:
    try:
        _, writer = await asyncio.wait_for(asyncio.open_connection(host, port), timeout=timeout_s)
    except (OSError, asyncio.TimeoutError):
        return False
    writer.close()
    try:
        await writer.wait_closed()
    except OSError:
        pass
    return True
