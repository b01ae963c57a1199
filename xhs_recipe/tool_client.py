import asyncio
import json
import re
import time
from collections import OrderedDict
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, List, Optional, Sequence, Tuple
from urllib.parse import parse_qs, urlparse

import httpx

from .cancellation import with_timeout
from .config import AppSettings, McpConfig
from .errors import ConfigurationError, ConnectivityError, FeedArgsError, ToolCallError, ToolDetectionError
from .logger import get_logger, truncate
from .mcp_connection import open_mcp_connection
from .schemas import DataUrlSource, Post, PostImage, UrlSource

CACHE_TTL_S = 30 * 60
CACHE_MAX_ENTRIES = 60
CACHE_PRUNE_EVERY = 12
MCP_CONNECT_TIMEOUT_S = 12.0
MCP_TOOL_TIMEOUT_S = 20.0
MIN_ATTEMPT_TIMEOUT_S = 3.0
URL_RESOLVE_TIMEOUT_S = 12.0

FEED_DETAIL_TOOL = "get_feed_detail"
PREFERRED_TOOL_NAMES: Tuple[str, ...] = (
    FEED_DETAIL_TOOL,
    "getContent",
    "get_content",
    "get-content",
    "get_post",
    "getPost",
    "get_note",
    "getNote",
)
URL_ARG_KEYS: Tuple[str, ...] = ("url", "shareUrl", "link", "sourceUrl")
FEED_ID_PARAMS = ("feed_id", "feedId", "note_id", "noteId", "id")
XSEC_TOKEN_PARAMS = ("xsec_token", "xsecToken")
PATH_SKIP_SEGMENTS = {"explore", "discovery", "item", "items"}

BROWSER_HEADERS = {
    "User-Agent": (
        "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 "
        "(KHTML, like Gecko) Chrome/120 Safari/537.36"
    ),
    "Accept": "text/html,application/xhtml+xml,application/xml;q=0.9,*/*;q=0.8",
}
FETCH_HINT = (
    "Fetch failed. The post may be deleted/private, or the URL token is missing/expired.\n"
    "- Try opening the post in a browser and copying the full URL (with xsec_token).\n"
    "- If you used an xhslink short link, try pasting the expanded www.xiaohongshu.com URL."
)

_TOOL_HEURISTIC_VERB = re.compile(r"get", re.IGNORECASE)
_TOOL_HEURISTIC_NOUN = re.compile(r"(content|post|note|xhs)", re.IGNORECASE)
_FEED_ID_SEGMENT = re.compile(r"^[0-9a-zA-Z]{3,}$")
_HTTP_URL = re.compile(r"^https?://", re.IGNORECASE)
_DATA_IMAGE = re.compile(r"^data:image/", re.IGNORECASE)

log = get_logger(__name__)

Connector = Callable[[McpConfig], Awaitable[Any]]
UrlResolver = Callable[[str], Awaitable[str]]


@dataclass
class CacheEntry:
    timestamp: float
    post: Post


def _first_param(params: Dict[str, List[str]], names: Sequence[str]) -> Optional[str]:
    for name in names:
        values = params.get(name)
        if values and values[0]:
            return values[0]
    return None


def extract_feed_args(url: str) -> Optional[Tuple[str, str]]:
    """Pull (feed_id, xsec_token) from a post URL's query, fragment query or path."""
    try:
        parsed = urlparse(url)
    except ValueError:
        return None
    query = parse_qs(parsed.query)
    fragment = parsed.fragment
    fragment_query = parse_qs(fragment.split("?", 1)[1]) if "?" in fragment else {}

    token = _first_param(query, XSEC_TOKEN_PARAMS) or _first_param(fragment_query, XSEC_TOKEN_PARAMS)
    feed_id = _first_param(query, FEED_ID_PARAMS)
    if not feed_id:
        segments = [seg for seg in parsed.path.split("/") if seg]
        for seg in reversed(segments):
            if seg.lower() in PATH_SKIP_SEGMENTS:
                continue
            if _FEED_ID_SEGMENT.match(seg):
                feed_id = seg
                break
    if not feed_id or not token:
        return None
    return feed_id, token


def looks_like_not_found(message: str) -> bool:
    msg = str(message or "").lower()
    if not msg:
        return False
    return any(token in msg for token in ("not found", "notedetailmap", "404", "不存在"))


def _field(obj: Any, name: str) -> Any:
    if isinstance(obj, dict):
        return obj.get(name)
    return getattr(obj, name, None)


def is_error_result(result: Any) -> bool:
    return bool(_field(result, "isError"))


def extract_text(result: Any) -> str:
    content = _field(result, "content")
    if not isinstance(content, list):
        return ""
    parts = []
    for item in content:
        if _field(item, "type") == "text" and isinstance(_field(item, "text"), str):
            parts.append(_field(item, "text"))
    return "\n".join(parts).strip()


def _as_plain(result: Any) -> Any:
    dump = getattr(result, "model_dump", None)
    if callable(dump):
        return dump()
    return result


def _try_parse_json(text: str) -> Any:
    trimmed = (text or "").strip()
    if not trimmed:
        return None
    try:
        return json.loads(trimmed)
    except ValueError:
        return None


def normalize_images(items: Any) -> List[PostImage]:
    out: List[PostImage] = []
    for item in items if isinstance(items, list) else []:
        if not item:
            continue
        image_id = f"img_{len(out) + 1}"
        if isinstance(item, str):
            if _HTTP_URL.match(item):
                out.append(PostImage(id=image_id, source=UrlSource(url=item), preview_url=item))
            elif _DATA_IMAGE.match(item):
                out.append(PostImage(id=image_id, source=DataUrlSource(data_url=item), preview_url=item))
            continue
        if not isinstance(item, dict):
            continue
        url = None
        for key in ("url", "src", "urlDefault", "urlPre", "previewUrl", "preview", "link"):
            if isinstance(item.get(key), str) and item[key]:
                url = item[key]
                break
        if url and _HTTP_URL.match(url):
            pre = item.get("urlPre")
            preview = pre if isinstance(pre, str) and _HTTP_URL.match(pre) else url
            out.append(PostImage(id=image_id, source=UrlSource(url=url), preview_url=preview))
            continue
        data = item.get("data") or item.get("base64") or item.get("dataUrl")
        if isinstance(data, str) and data:
            mime = item.get("mimeType") or item.get("mime") or "image/jpeg"
            data_url = data if data.startswith("data:") else f"data:{mime};base64,{data}"
            out.append(PostImage(id=image_id, source=DataUrlSource(data_url=data_url), preview_url=data_url))
    return out


def normalize_post(source_url: str, raw: Any) -> Post:
    obj = raw if isinstance(raw, dict) else None
    note = None
    if obj is not None and isinstance(obj.get("data"), dict):
        note = obj["data"].get("note") if isinstance(obj["data"].get("note"), dict) else None

    caption: Any = ""
    if note is not None:
        caption = f"{str(note.get('title') or '').strip()}\n\n{str(note.get('desc') or '').strip()}".strip()
    if not caption and obj is not None:
        for key in ("caption", "text", "description", "desc", "content"):
            if obj.get(key):
                caption = obj[key]
                break
    if not caption and isinstance(raw, str):
        caption = raw

    images: Any = None
    if note is not None:
        images = note.get("imageList") or note.get("images")
    if not images and obj is not None:
        for key in ("images", "imageUrls", "pictures", "photos", "media", "imgs"):
            if obj.get(key):
                images = obj[key]
                break

    if not isinstance(caption, str):
        caption = json.dumps(caption, ensure_ascii=False)
    return Post(source_url=source_url, caption=caption.strip(), images=normalize_images(images), raw=raw)


def pick_tool_name(
    names: Sequence[str],
    preferred: Sequence[str],
    exclude: Optional[str] = None,
) -> Optional[str]:
    candidates = [n for n in names if n and n != exclude]
    for name in preferred:
        if name in candidates:
            return name
    for name in candidates:
        if _TOOL_HEURISTIC_VERB.search(name) and _TOOL_HEURISTIC_NOUN.search(name):
            return name
    return None


class ToolClient:
    """Fetches posts through the configured MCP tool server."""

    def __init__(
        self,
        *,
        settings_provider: Callable[[], AppSettings],
        connector: Optional[Connector] = None,
        url_resolver: Optional[UrlResolver] = None,
        http_client: Optional[httpx.AsyncClient] = None,
        preferred_tools: Sequence[str] = PREFERRED_TOOL_NAMES,
        url_arg_keys: Sequence[str] = URL_ARG_KEYS,
        cache_ttl_s: float = CACHE_TTL_S,
        cache_max_entries: int = CACHE_MAX_ENTRIES,
        connect_timeout_s: float = MCP_CONNECT_TIMEOUT_S,
        tool_timeout_s: float = MCP_TOOL_TIMEOUT_S,
    ) -> None:
        self.settings_provider = settings_provider
        self.connector = connector or open_mcp_connection
        self.client = http_client or httpx.AsyncClient(timeout=URL_RESOLVE_TIMEOUT_S)
        self.url_resolver = url_resolver or self.resolve_final_url
        self.preferred_tools = tuple(preferred_tools)
        self.url_tools = tuple(n for n in self.preferred_tools if n != FEED_DETAIL_TOOL)
        self.url_arg_keys = tuple(url_arg_keys)
        self.cache_ttl_s = cache_ttl_s
        self.cache_max_entries = cache_max_entries
        self.connect_timeout_s = connect_timeout_s
        self.tool_timeout_s = tool_timeout_s

        self.connected: Optional[Any] = None
        self.connected_key: Optional[str] = None
        self.detected_tool_name: Optional[str] = None
        self.connect_seq = 0
        self.connect_count = 0
        self.op_counter = 0
        self.cache: "OrderedDict[str, CacheEntry]" = OrderedDict()
        self._connecting: Optional[asyncio.Task] = None

    # -- cache -----------------------------------------------------------

    def _prune_cache(self, now: Optional[float] = None) -> None:
        now = time.monotonic() if now is None else now
        expired = [key for key, entry in self.cache.items() if now - entry.timestamp >= self.cache_ttl_s]
        for key in expired:
            self.cache.pop(key, None)
        while len(self.cache) > self.cache_max_entries:
            self.cache.popitem(last=False)

    def _cache_get(self, url: str) -> Optional[Post]:
        entry = self.cache.get(url)
        if entry is None:
            return None
        if time.monotonic() - entry.timestamp >= self.cache_ttl_s:
            self.cache.pop(url, None)
            return None
        return entry.post

    def _cache_put(self, url: str, post: Post) -> None:
        self.cache.pop(url, None)
        self.cache[url] = CacheEntry(timestamp=time.monotonic(), post=post)
        self._prune_cache()

    # -- connection ------------------------------------------------------

    async def resolve_final_url(self, url: str) -> str:
        try:
            async with self.client.stream(
                "GET", url, headers=BROWSER_HEADERS, follow_redirects=True, timeout=URL_RESOLVE_TIMEOUT_S
            ) as resp:
                return str(resp.url) or url
        except httpx.HTTPError as exc:
            log.warning("url resolve failed", extra={"data": {"url": url, "error": str(exc)}})
            return url

    async def _connect_new(self, cfg: McpConfig, key: str, seq: int) -> Any:
        if cfg.transport == "http" and not cfg.http_url.strip():
            raise ConfigurationError("Missing MCP HTTP URL. Open Settings and set MCP HTTP URL.")
        if cfg.transport == "stdio" and not cfg.command.strip():
            raise ConfigurationError(
                "Missing MCP command. Open Settings and set MCP Command/Args for your XHS MCP server."
            )
        try:
            conn = await with_timeout(self.connector(cfg), self.connect_timeout_s, "MCP connect")
        except (ConfigurationError, asyncio.CancelledError):
            raise
        except Exception as exc:
            raise ConnectivityError(f"MCP connect failed: {exc}") from exc
        if seq != self.connect_seq:
            await conn.close()
            raise ConnectivityError("MCP connection was reset during connect")
        self.connected = conn
        self.connected_key = key
        self.connect_count += 1
        log.info(
            "mcp connected",
            extra={
                "data": {
                    "transport": cfg.transport,
                    "http_url": cfg.http_url if cfg.transport == "http" else None,
                    "command": cfg.command if cfg.transport == "stdio" else None,
                }
            },
        )
        return conn

    def _connect_done(self, task: asyncio.Task) -> None:
        if self._connecting is task:
            self._connecting = None
        if not task.cancelled():
            task.exception()

    async def get_connection(self) -> Any:
        cfg = self.settings_provider().mcp
        want = cfg.connection_key()
        current = self.connected
        if current is not None and self.connected_key == want and getattr(current, "alive", True):
            return current
        if current is not None:
            await self.disconnect("config changed" if self.connected_key != want else "connection lost")
        if self._connecting is None:
            self._connecting = asyncio.ensure_future(self._connect_new(cfg, want, self.connect_seq))
            self._connecting.add_done_callback(self._connect_done)
        return await asyncio.shield(self._connecting)

    async def disconnect(self, reason: str = "manual") -> None:
        self.connect_seq += 1
        current = self.connected
        self.connected = None
        self.connected_key = None
        self.detected_tool_name = None
        self._connecting = None
        if current is None:
            return
        try:
            await current.close()
        except Exception as exc:
            log.warning("mcp transport close failed", extra={"data": {"reason": reason, "error": str(exc)}})

    async def reset_session(self) -> None:
        self.cache.clear()
        self.detected_tool_name = None
        self.op_counter = 0
        await self.disconnect("session reset")

    async def shutdown(self) -> None:
        await self.disconnect("shutdown")
        await self.client.aclose()

    # -- tools -----------------------------------------------------------

    async def _list_tool_names(self, conn: Any) -> List[str]:
        return await with_timeout(conn.list_tool_names(), self.tool_timeout_s, "MCP listTools")

    async def detect_tool_name(self, conn: Any) -> str:
        try:
            names = await self._list_tool_names(conn)
        except Exception as exc:
            raise ConnectivityError(f"MCP listTools failed: {exc}") from exc
        found = pick_tool_name(names, self.preferred_tools)
        if not found:
            raise ToolDetectionError(names)
        return found

    async def _detect_url_tool(self, conn: Any, exclude: str) -> Optional[str]:
        names = await self._list_tool_names(conn)
        return pick_tool_name(names, self.url_tools, exclude=exclude)

    async def call_with_url_args(self, conn: Any, tool_name: str, url: str) -> Any:
        per_attempt = max(MIN_ATTEMPT_TIMEOUT_S, self.tool_timeout_s / max(1, len(self.url_arg_keys)))
        last_err: Optional[BaseException] = None
        for key in self.url_arg_keys:
            try:
                return await with_timeout(conn.call_tool(tool_name, {key: url}), per_attempt, "MCP callTool")
            except Exception as exc:
                last_err = exc
                log.debug("mcp argument shape rejected", extra={"data": {"tool": tool_name, "key": key}})
        raise last_err or ToolCallError("MCP tool call failed")

    async def _invoke(self, conn: Any, tool_name: str, url: str, feed_args: Optional[Tuple[str, str]]) -> Any:
        if feed_args is not None:
            feed_id, xsec_token = feed_args
            return await with_timeout(
                conn.call_tool(tool_name, {"feed_id": feed_id, "xsec_token": xsec_token}),
                self.tool_timeout_s,
                f"MCP callTool({tool_name})",
            )
        return await self.call_with_url_args(conn, tool_name, url)

    async def _recover_tool_error(
        self,
        result: Any,
        *,
        tool_name: str,
        source_url: str,
        final_url: str,
        explicit: bool,
    ) -> Any:
        msg = extract_text(result) or "MCP tool returned an error"
        if tool_name != FEED_DETAIL_TOOL and final_url != source_url and looks_like_not_found(msg):
            log.warning(
                "mcp url-based tool failed with resolved URL; retrying with original URL",
                extra={"data": {"tool": tool_name}},
            )
            try:
                retry = await self.call_with_url_args(await self.get_connection(), tool_name, source_url)
                if not is_error_result(retry):
                    return retry
            except Exception as exc:
                log.warning("mcp retry with original URL failed", extra={"data": {"error": str(exc)}})

        if not explicit:
            try:
                conn = await self.get_connection()
                alt = await self._detect_url_tool(conn, exclude=tool_name)
                if alt:
                    log.warning("mcp tool failed; trying url-based tool fallback", extra={"data": {"tool": tool_name, "alt": alt}})
                    alt_result = await self.call_with_url_args(conn, alt, final_url)
                    if not is_error_result(alt_result):
                        self.detected_tool_name = alt
                        return alt_result
            except Exception as exc:
                log.warning("mcp fallback tool also failed", extra={"data": {"error": str(exc)}})

        raise ToolCallError(msg, hint=FETCH_HINT)

    async def get_post(self, source_url: str) -> Post:
        self.op_counter += 1
        if self.op_counter % CACHE_PRUNE_EVERY == 0:
            self._prune_cache()
        cached = self._cache_get(source_url)
        if cached is not None:
            return cached

        final_url = await self.url_resolver(source_url)
        conn = await self.get_connection()
        cfg = self.settings_provider().mcp
        explicit = cfg.tool_name.strip()
        tool_name = explicit or self.detected_tool_name or await self.detect_tool_name(conn)
        if not explicit:
            self.detected_tool_name = tool_name

        feed_args = None
        if tool_name == FEED_DETAIL_TOOL:
            feed_args = extract_feed_args(final_url)
            if feed_args is None:
                raise FeedArgsError(
                    "Could not extract feed_id/xsec_token from this URL. "
                    "Open the post in a browser and copy the full URL with xsec_token."
                )

        try:
            result = await self._invoke(conn, tool_name, final_url, feed_args)
        except Exception as exc:
            log.error("mcp tool call failed", extra={"data": {"tool": tool_name, "error": str(exc)}})
            try:
                await self.disconnect("tool call failed")
                retry_conn = await self.get_connection()
                result = await self._invoke(retry_conn, tool_name, final_url, feed_args)
            except Exception as exc2:
                raise ToolCallError(f'Fetch failed: MCP tool "{tool_name}" error: {exc2}') from exc2

        if is_error_result(result):
            result = await self._recover_tool_error(
                result,
                tool_name=tool_name,
                source_url=source_url,
                final_url=final_url,
                explicit=bool(explicit),
            )

        text = extract_text(result)
        parsed = _try_parse_json(text)
        raw = parsed if parsed is not None else ({"caption": text} if text else _as_plain(result))
        post = normalize_post(final_url, raw)
        if not post.caption and not post.images:
            log.warning(
                "mcp returned empty post",
                extra={"data": {"tool": tool_name, "result": truncate(json.dumps(_as_plain(result), default=str))}},
            )

        self._cache_put(source_url, post)
        return post
