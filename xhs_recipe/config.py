import json
import os
from pathlib import Path
from typing import Any, Dict, List, Literal, Optional
from urllib.parse import urlparse

from dotenv import load_dotenv
from pydantic import BaseModel, Field

from .logger import get_logger

CONFIG_PATH = Path("config.json")
DEFAULT_OPENAI_MODEL = "gpt-4o-mini"
DEFAULT_OPENAI_BASE_URL = "https://api.openai.com/v1"
DEFAULT_MCP_HTTP_URL = "http://localhost:18060/mcp"
DEFAULT_MCP_TRANSPORT = "http"
DEFAULT_OUTPUT_LANGUAGE = "zh-Hans"
RECENT_URLS_MAX = 20

log = get_logger("config")


class OpenAIConfig(BaseModel):
    model: str = DEFAULT_OPENAI_MODEL
    base_url: str = DEFAULT_OPENAI_BASE_URL

    model_config = {"protected_namespaces": ()}


class McpConfig(BaseModel):
    transport: Literal["stdio", "http"] = DEFAULT_MCP_TRANSPORT
    exe_path: str = ""
    command: str = ""
    args: List[str] = Field(default_factory=list)
    http_url: str = DEFAULT_MCP_HTTP_URL
    tool_name: str = ""

    def connection_key(self) -> str:
        if self.transport == "http":
            return f"http:{self.http_url}"
        return f"stdio:{self.command} {' '.join(self.args)}".strip()


class UIConfig(BaseModel):
    output_language: Literal["zh-Hans", "en"] = DEFAULT_OUTPUT_LANGUAGE


class LimitsConfig(BaseModel):
    image_max_bytes: int = 8 * 1024 * 1024
    image_max_dim: int = 1280
    image_jpeg_quality: int = 82
    image_download_timeout_s: float = 20.0
    preview_max_dim: int = 360
    preview_jpeg_quality: int = 75
    preview_cache_max: int = 120
    preview_cache_ttl_s: float = 30 * 60


class AppSettings(BaseModel):
    openai: OpenAIConfig = Field(default_factory=OpenAIConfig)
    mcp: McpConfig = Field(default_factory=McpConfig)
    ui: UIConfig = Field(default_factory=UIConfig)
    limits: LimitsConfig = Field(default_factory=LimitsConfig)
    recent_urls: List[str] = Field(default_factory=list)
    data_dir: str = ".xhs_recipe"
    host: str = "127.0.0.1"
    port: int = 8765

    model_config = {"protected_namespaces": ()}


def parse_args_string(value: Any) -> List[str]:
    """Split a command-line style string, honoring single and double quotes."""
    text = str(value or "").strip()
    if not text:
        return []
    out: List[str] = []
    current = ""
    quote: Optional[str] = None
    for ch in text:
        if quote:
            if ch == quote:
                quote = None
            else:
                current += ch
            continue
        if ch in ("'", '"'):
            quote = ch
            continue
        if ch.isspace():
            if current:
                out.append(current)
                current = ""
            continue
        current += ch
    if quote:
        raise ValueError("Unclosed quote in MCP Args")
    if current:
        out.append(current)
    return out


def _is_valid_url(value: str) -> bool:
    parsed = urlparse(value)
    return bool(parsed.scheme in ("http", "https") and parsed.netloc)


def apply_env_defaults(settings: AppSettings) -> AppSettings:
    """Layer environment values beneath explicit settings.

    An env var only fills a value that is still empty or at its default.
    """
    load_dotenv()
    out = settings.model_copy(deep=True)

    env_model = os.getenv("OPENAI_MODEL")
    if env_model and (not out.openai.model or out.openai.model == DEFAULT_OPENAI_MODEL):
        out.openai.model = env_model
    env_base = os.getenv("OPENAI_BASE_URL")
    if env_base and out.openai.base_url == DEFAULT_OPENAI_BASE_URL and _is_valid_url(env_base):
        out.openai.base_url = env_base

    env_transport = str(os.getenv("XHS_MCP_TRANSPORT") or "").strip().lower()
    if env_transport in ("http", "stdio") and out.mcp.transport == DEFAULT_MCP_TRANSPORT:
        out.mcp.transport = env_transport  # type: ignore[assignment]
    if not out.mcp.command and os.getenv("XHS_MCP_COMMAND"):
        out.mcp.command = str(os.getenv("XHS_MCP_COMMAND"))
    if not out.mcp.args and os.getenv("XHS_MCP_ARGS"):
        try:
            out.mcp.args = parse_args_string(os.getenv("XHS_MCP_ARGS"))
        except ValueError:
            log.warning("ignoring invalid XHS_MCP_ARGS")
    env_url = str(os.getenv("XHS_MCP_URL") or os.getenv("XHS_MCP_HTTP_URL") or "").strip()
    if env_url and (not out.mcp.http_url or out.mcp.http_url == DEFAULT_MCP_HTTP_URL):
        if _is_valid_url(env_url):
            out.mcp.http_url = env_url
    if not out.mcp.tool_name and os.getenv("XHS_MCP_TOOL"):
        out.mcp.tool_name = str(os.getenv("XHS_MCP_TOOL"))
    return out


def get_openai_api_key() -> Optional[str]:
    load_dotenv()
    key = os.getenv("OPENAI_API_KEY")
    return str(key) if key else None


def _normalize_file_data(data: Dict[str, Any]) -> Dict[str, Any]:
    mcp = data.get("mcp")
    # Older configs only carried a command, which implies the stdio transport.
    if isinstance(mcp, dict) and mcp.get("transport") is None and mcp.get("command"):
        mcp["transport"] = "stdio"
    return data


def load_settings(config_path: Optional[Path] = None) -> AppSettings:
    path = config_path or CONFIG_PATH
    file_data: Dict[str, Any] = {}
    loaded = False
    if path.exists():
        try:
            file_data = _normalize_file_data(json.loads(path.read_text(encoding="utf-8")))
            settings = AppSettings(**file_data)
            loaded = True
        except Exception as exc:
            log.warning("config load failed; using defaults", extra={"data": {"error": str(exc)}})
    if not loaded:
        settings = AppSettings()
        try:
            save_settings(settings, path)
        except OSError as exc:
            log.warning("config save failed", extra={"data": {"error": str(exc)}})
    return settings


def resolve_settings(settings: AppSettings) -> AppSettings:
    return apply_env_defaults(settings)


def save_settings(settings: AppSettings, config_path: Optional[Path] = None) -> None:
    path = config_path or CONFIG_PATH
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(settings.model_dump_json(indent=2), encoding="utf-8")


def apply_patch(settings: AppSettings, patch: Dict[str, Any]) -> AppSettings:
    data = settings.model_dump()
    openai = patch.get("openai") or {}
    if openai.get("model") is not None:
        data["openai"]["model"] = str(openai["model"])
    if openai.get("base_url") is not None:
        data["openai"]["base_url"] = str(openai["base_url"]).strip()
    ui = patch.get("ui") or {}
    if ui.get("output_language") is not None:
        data["ui"]["output_language"] = "en" if ui["output_language"] == "en" else "zh-Hans"
    mcp = patch.get("mcp") or {}
    if mcp.get("exe_path") is not None:
        data["mcp"]["exe_path"] = str(mcp["exe_path"]).strip()
    if mcp.get("command") is not None:
        data["mcp"]["command"] = str(mcp["command"])
    if mcp.get("args") is not None:
        args = mcp["args"]
        data["mcp"]["args"] = [str(a) for a in args] if isinstance(args, list) else parse_args_string(args)
    if mcp.get("transport") is not None:
        data["mcp"]["transport"] = "http" if mcp["transport"] == "http" else "stdio"
    if mcp.get("http_url") is not None:
        url = str(mcp["http_url"]).strip()
        if not _is_valid_url(url):
            raise ValueError(f"Invalid MCP HTTP URL: {url}")
        data["mcp"]["http_url"] = url
    if mcp.get("tool_name") is not None:
        data["mcp"]["tool_name"] = str(mcp["tool_name"])
    if patch.get("recent_urls") is not None and isinstance(patch["recent_urls"], list):
        seen: Dict[str, None] = {}
        for url in patch["recent_urls"]:
            seen.setdefault(str(url), None)
        data["recent_urls"] = list(seen)[:RECENT_URLS_MAX]
    return AppSettings(**data)


def public_config(settings: AppSettings) -> Dict[str, Any]:
    cfg = resolve_settings(settings)
    return {
        "openai": {"model": cfg.openai.model, "has_api_key": bool(get_openai_api_key())},
        "mcp": cfg.mcp.model_dump(),
        "ui": cfg.ui.model_dump(),
        "recent_urls": list(cfg.recent_urls),
    }
