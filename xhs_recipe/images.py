import base64
import binascii
import io
import time
from collections import OrderedDict
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Sequence, Tuple
from urllib.parse import urljoin

import httpx
from PIL import Image, UnidentifiedImageError

from .cancellation import CancelToken, race_cancellation, with_timeout
from .config import LimitsConfig
from .errors import ImageDownloadError, RequestAborted
from .logger import get_logger
from .schemas import DataUrlSource, PostImage, UrlSource

DEFAULT_REFERER = "https://www.xiaohongshu.com/"
ORIGIN = "https://www.xiaohongshu.com"
MAX_REDIRECTS = 5
REDIRECT_STATUSES = {301, 302, 303, 307, 308}
IMAGE_HEADERS = {
    "User-Agent": (
        "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 "
        "(KHTML, like Gecko) Chrome/120 Safari/537.36"
    ),
    "Accept": "image/jpeg,image/png,image/webp,image/apng,image/*;q=0.8,*/*;q=0.5",
    "Accept-Language": "zh-CN,zh;q=0.9,en;q=0.8",
    "Origin": ORIGIN,
}

log = get_logger(__name__)


@dataclass
class DownloadedImage:
    data: bytes
    content_type: str

    @property
    def mime(self) -> str:
        return self.content_type.split(";")[0].strip() or "application/octet-stream"


def bytes_to_data_url(data: bytes, mime: str) -> str:
    return f"data:{mime};base64,{base64.b64encode(data).decode('ascii')}"


def data_url_to_bytes(data_url: str) -> Tuple[bytes, str]:
    header, _, payload = data_url.partition(",")
    if not header.startswith("data:") or ";base64" not in header:
        raise ValueError("not a base64 data URL")
    mime = header[5:].split(";")[0] or "application/octet-stream"
    try:
        return base64.b64decode(payload, validate=False), mime
    except binascii.Error as exc:
        raise ValueError("invalid base64 payload") from exc


def _is_image_type(content_type: str) -> bool:
    ct = content_type.lower()
    return ct.startswith("image/") or ct.startswith("application/octet-stream")


async def _read_limited(resp: httpx.Response, max_bytes: int) -> bytes:
    declared = resp.headers.get("content-length")
    if declared and declared.isdigit() and int(declared) > max_bytes:
        raise ImageDownloadError(f"image too large ({declared} bytes)")
    chunks: List[bytes] = []
    total = 0
    async for chunk in resp.aiter_bytes():
        total += len(chunk)
        if total > max_bytes:
            raise ImageDownloadError(f"image too large (>{max_bytes} bytes)")
        chunks.append(chunk)
    return b"".join(chunks)


async def _fetch_direct(client: httpx.AsyncClient, url: str, headers: Dict[str, str], max_bytes: int) -> DownloadedImage:
    async with client.stream("GET", url, headers=headers, follow_redirects=True) as resp:
        if resp.status_code < 200 or resp.status_code >= 300:
            raise ImageDownloadError(f"image download failed: HTTP {resp.status_code}")
        content_type = resp.headers.get("content-type") or "application/octet-stream"
        if not _is_image_type(content_type):
            raise ImageDownloadError(f"unexpected content-type: {content_type}")
        data = await _read_limited(resp, max_bytes)
    return DownloadedImage(data=data, content_type=content_type)


async def _fetch_following_redirects(
    client: httpx.AsyncClient, url: str, headers: Dict[str, str], max_bytes: int
) -> DownloadedImage:
    target = url
    for _ in range(MAX_REDIRECTS + 1):
        async with client.stream("GET", target, headers=headers, follow_redirects=False) as resp:
            location = resp.headers.get("location")
            if resp.status_code in REDIRECT_STATUSES and location:
                target = urljoin(target, location)
                continue
            if resp.status_code < 200 or resp.status_code >= 300:
                raise ImageDownloadError(f"image download failed (fallback): HTTP {resp.status_code}")
            content_type = resp.headers.get("content-type") or "application/octet-stream"
            data = await _read_limited(resp, max_bytes)
            return DownloadedImage(data=data, content_type=content_type)
    raise ImageDownloadError("image download failed (fallback): too many redirects")


async def download_image(
    client: httpx.AsyncClient,
    url: str,
    referer: Optional[str] = None,
    token: Optional[CancelToken] = None,
    limits: Optional[LimitsConfig] = None,
) -> Optional[DownloadedImage]:
    """Download one image within the byte ceiling.

    Returns None when both the direct attempt and the redirect-following
    fallback fail. Raises RequestAborted when `token` fires first.
    """
    limits = limits or LimitsConfig()
    headers = dict(IMAGE_HEADERS, Referer=referer or DEFAULT_REFERER)
    timeout_s = limits.image_download_timeout_s

    attempts = (("direct", _fetch_direct), ("fallback", _fetch_following_redirects))
    for name, fetch in attempts:
        outcome = await race_cancellation(
            with_timeout(fetch(client, url, headers, limits.image_max_bytes), timeout_s, "image download"),
            token,
        )
        if outcome.cancelled:
            raise RequestAborted()
        if outcome.ok:
            return outcome.value
        log.warning("image download failed", extra={"data": {"url": url, "attempt": name, "error": str(outcome.error)}})
    return None


def _open_image(data: bytes) -> Optional[Image.Image]:
    try:
        img = Image.open(io.BytesIO(data))
        img.load()
    except (UnidentifiedImageError, OSError, ValueError):
        return None
    return img


def _to_jpeg_data_url(img: Image.Image, max_dim: int, quality: int) -> str:
    img = img.copy()
    if img.mode not in ("RGB", "L"):
        img = img.convert("RGB")
    if max_dim and max(img.size) > max_dim:
        img.thumbnail((max_dim, max_dim), Image.LANCZOS)
    buffer = io.BytesIO()
    img.save(buffer, format="JPEG", quality=quality)
    return bytes_to_data_url(buffer.getvalue(), "image/jpeg")


def preprocess_for_model(image: DownloadedImage, limits: Optional[LimitsConfig] = None) -> str:
    limits = limits or LimitsConfig()
    img = _open_image(image.data)
    if img is None:
        return bytes_to_data_url(image.data, image.mime)
    try:
        return _to_jpeg_data_url(img, limits.image_max_dim, limits.image_jpeg_quality)
    except (OSError, ValueError) as exc:
        log.warning("image preprocess failed; sending original", extra={"data": {"error": str(exc), "content_type": image.content_type}})
        return bytes_to_data_url(image.data, image.mime)
    finally:
        img.close()


def make_preview(data: bytes, max_dim: int, quality: int) -> Optional[str]:
    img = _open_image(data)
    if img is None:
        return None
    try:
        return _to_jpeg_data_url(img, max_dim, quality)
    except (OSError, ValueError):
        return None
    finally:
        img.close()


class PreviewService:
    """Small JPEG previews for post images, with a URL-keyed cache."""

    def __init__(self, client: httpx.AsyncClient, limits: Optional[LimitsConfig] = None):
        self.client = client
        self.limits = limits or LimitsConfig()
        self.cache: "OrderedDict[str, Tuple[float, str]]" = OrderedDict()

    def _cache_get(self, key: str) -> Optional[str]:
        entry = self.cache.get(key)
        if entry is None:
            return None
        if time.monotonic() - entry[0] > self.limits.preview_cache_ttl_s:
            del self.cache[key]
            return None
        self.cache.move_to_end(key)
        return entry[1]

    def _cache_set(self, key: str, data_url: str) -> None:
        self.cache[key] = (time.monotonic(), data_url)
        self.cache.move_to_end(key)
        while len(self.cache) > self.limits.preview_cache_max:
            self.cache.popitem(last=False)

    def _preview_from_data_url(self, data_url: str) -> str:
        try:
            data, _ = data_url_to_bytes(data_url)
        except ValueError:
            return data_url
        return make_preview(data, self.limits.preview_max_dim, self.limits.preview_jpeg_quality) or data_url

    async def previews(self, images: Sequence[PostImage]) -> Dict[str, Any]:
        out: List[Dict[str, str]] = []
        errors: List[Dict[str, str]] = []
        for image in images:
            source = image.source
            if isinstance(source, DataUrlSource):
                out.append({"id": image.id, "data_url": self._preview_from_data_url(source.data_url)})
                continue
            if not isinstance(source, UrlSource):
                continue
            key = f"url:{source.url}"
            cached = self._cache_get(key)
            if cached is not None:
                out.append({"id": image.id, "data_url": cached})
                continue
            downloaded = await download_image(self.client, source.url, limits=self.limits)
            if downloaded is None:
                errors.append({"id": image.id, "reason": "download_failed"})
                continue
            preview = make_preview(downloaded.data, self.limits.preview_max_dim, self.limits.preview_jpeg_quality)
            if preview is None:
                errors.append({"id": image.id, "reason": "decode_failed"})
                continue
            self._cache_set(key, preview)
            out.append({"id": image.id, "data_url": preview})
        if errors:
            log.warning("image previews incomplete", extra={"data": {"ok": len(out), "errors": errors[:8]}})
        return {"previews": out, "errors": errors}
