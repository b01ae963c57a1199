import asyncio
import contextlib
from typing import Any, Dict, List, Optional

from mcp import ClientSession, StdioServerParameters, types
from mcp.client.stdio import stdio_client
from mcp.client.streamable_http import streamablehttp_client

from .config import McpConfig
from .logger import get_logger

CLOSE_TIMEOUT_S = 3.0
CLIENT_INFO = types.Implementation(name="xhs-recipe-extractor", version="0.1.0")

log = get_logger(__name__)


class McpConnection:
    """A live MCP session over stdio or streamable HTTP.

    The transport and session context managers are entered and exited by one
    background task; callers talk to the session and ask the task to stop.
    """

    def __init__(self, cfg: McpConfig) -> None:
        self.transport = cfg.transport
        self.key = cfg.connection_key()
        self._cfg = cfg
        self._session: Optional[ClientSession] = None
        self._ready: Optional[asyncio.Future] = None
        self._stop = asyncio.Event()
        self._task: Optional[asyncio.Task] = None

    @property
    def alive(self) -> bool:
        return self._task is not None and not self._task.done() and self._session is not None

    def _transport_context(self) -> Any:
        if self.transport == "http":
            return streamablehttp_client(self._cfg.http_url.strip())
        return stdio_client(StdioServerParameters(command=self._cfg.command, args=list(self._cfg.args)))

    async def _serve(self) -> None:
        assert self._ready is not None
        try:
            async with self._transport_context() as streams:
                read_stream, write_stream = streams[0], streams[1]
                async with ClientSession(read_stream, write_stream, client_info=CLIENT_INFO) as session:
                    await session.initialize()
                    self._session = session
                    if not self._ready.done():
                        self._ready.set_result(session)
                    await self._stop.wait()
        except Exception as exc:
            if not self._ready.done():
                self._ready.set_exception(exc)
            else:
                log.warning("mcp session ended", extra={"data": {"error": str(exc)}})
        finally:
            self._session = None
            if not self._ready.done():
                self._ready.cancel()

    async def start(self) -> "McpConnection":
        self._ready = asyncio.get_running_loop().create_future()
        self._task = asyncio.ensure_future(self._serve())
        try:
            await asyncio.shield(self._ready)
        except BaseException:
            await self.close()
            raise
        return self

    async def list_tool_names(self) -> List[str]:
        if self._session is None:
            raise ConnectionError("MCP session is closed")
        result = await self._session.list_tools()
        return [tool.name for tool in result.tools if tool.name]

    async def call_tool(self, name: str, arguments: Dict[str, Any]) -> types.CallToolResult:
        if self._session is None:
            raise ConnectionError("MCP session is closed")
        return await self._session.call_tool(name, arguments)

    async def close(self) -> None:
        self._stop.set()
        task = self._task
        if task is None or task.done():
            return
        try:
            await asyncio.wait_for(asyncio.shield(task), timeout=CLOSE_TIMEOUT_S)
        except asyncio.TimeoutError:
            log.warning("mcp session close timed out", extra={"data": {"key": self.key}})
            task.cancel()
            with contextlib.suppress(BaseException):
                await task


async def open_mcp_connection(cfg: McpConfig) -> McpConnection:
    return await McpConnection(cfg).start()
