import uuid
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional, Sequence, Tuple

import httpx

from .cancellation import CancelToken, race_cancellation
from .config import AppSettings, LimitsConfig, get_openai_api_key
from .errors import ConfigurationError, EmptyCompletionError, RequestAborted
from .events import StatusBus
from .images import PreviewService, download_image, preprocess_for_model
from .launcher import McpLauncher
from .llm import FALLBACK_MODEL, CompletionClient, uses_responses_api
from .logger import get_logger
from .recipe import build_system_prompt, build_user_prompt, normalize_markdown_recipe
from .schemas import (
    ConnectionState,
    DataUrlSource,
    GenerateRecipeRequest,
    ImageFailure,
    ImageMeta,
    InFlightInfo,
    Post,
    PostImage,
    RecipeMeta,
    RecipeResult,
    RequestKind,
    UrlSource,
    utc_now,
)
from .tool_client import ToolClient

ABORT_ALL_REASON = "abort_all"
IMAGE_HTTP_TIMEOUT_S = 20.0

log = get_logger(__name__)

CompletionFactory = Callable[[str, str, str, httpx.AsyncClient], Any]


def _default_completion_factory(api_key: str, model: str, base_url: str, client: httpx.AsyncClient) -> Any:
    return CompletionClient(api_key, model, base_url=base_url, client=client)


@dataclass
class InFlight:
    request_id: str
    kind: RequestKind
    token: CancelToken = field(default_factory=CancelToken)
    started_at: str = field(default_factory=utc_now)


class RequestCoordinator:
    """Owns the tool client, launcher, completion factory and in-flight table.

    Constructed once per app and shared by every route.
    """

    def __init__(
        self,
        *,
        settings_provider: Callable[[], AppSettings],
        tool_client: Optional[ToolClient] = None,
        launcher: Optional[McpLauncher] = None,
        bus: Optional[StatusBus] = None,
        http_client: Optional[httpx.AsyncClient] = None,
        completion_factory: Optional[CompletionFactory] = None,
        api_key_provider: Callable[[], Optional[str]] = get_openai_api_key,
    ) -> None:
        self.settings_provider = settings_provider
        self.bus = bus or StatusBus()
        self.http = http_client or httpx.AsyncClient(timeout=IMAGE_HTTP_TIMEOUT_S)
        self.tool_client = tool_client or ToolClient(settings_provider=settings_provider)
        self.launcher = launcher or McpLauncher(settings_provider=settings_provider, bus=self.bus)
        self.completion_factory = completion_factory or _default_completion_factory
        self.api_key_provider = api_key_provider
        self.previews_service = PreviewService(self.http, settings_provider().limits)
        self.in_flight: Dict[str, InFlight] = {}

    # -- in-flight table -------------------------------------------------

    def _register(self, kind: RequestKind, request_id: Optional[str]) -> InFlight:
        entry = InFlight(request_id=request_id or str(uuid.uuid4()), kind=kind)
        self.in_flight[entry.request_id] = entry
        return entry

    def _release(self, entry: InFlight) -> None:
        if self.in_flight.get(entry.request_id) is entry:
            del self.in_flight[entry.request_id]

    def list_in_flight(self) -> List[InFlightInfo]:
        return [
            InFlightInfo(request_id=e.request_id, kind=e.kind, started_at=e.started_at)
            for e in self.in_flight.values()
        ]

    # -- operations ------------------------------------------------------

    async def fetch_post(self, url: str, request_id: Optional[str] = None) -> Post:
        entry = self._register("fetch", request_id)
        log.info("fetch start", extra={"data": {"url": url, "request_id": entry.request_id}})
        try:
            outcome = await race_cancellation(self.tool_client.get_post(url), entry.token)
            if outcome.cancelled:
                # The tool call itself cannot be interrupted on every transport.
                if entry.token.reason != ABORT_ALL_REASON:
                    await self.tool_client.disconnect("fetch aborted")
                log.info("fetch aborted", extra={"data": {"request_id": entry.request_id}})
                raise RequestAborted()
            post = outcome.unwrap()
            log.info(
                "fetch done",
                extra={"data": {"url": url, "images": len(post.images), "caption_len": len(post.caption)}},
            )
            return post
        finally:
            self._release(entry)

    async def _prepare_images(
        self,
        images: Sequence[Any],
        referer: str,
        token: CancelToken,
        limits: LimitsConfig,
    ) -> Tuple[List[str], List[ImageFailure]]:
        data_urls: List[str] = []
        failures: List[ImageFailure] = []
        for source in images:
            token.raise_if_cancelled()
            if isinstance(source, DataUrlSource):
                data_urls.append(source.data_url)
                continue
            if not isinstance(source, UrlSource):
                continue
            downloaded = await download_image(self.http, source.url, referer=referer, token=token, limits=limits)
            if downloaded is None:
                failures.append(ImageFailure(kind="url", url=source.url, reason="download_failed"))
                continue
            data_urls.append(preprocess_for_model(downloaded, limits))
        return data_urls, failures

    async def _run_model(
        self,
        model: str,
        api_key: str,
        settings: AppSettings,
        prompts: Tuple[str, str],
        image_urls: List[str],
        token: CancelToken,
    ) -> str:
        client = self.completion_factory(api_key, model, settings.openai.base_url, self.http)
        return await client.generate_recipe_markdown(prompts[0], prompts[1], image_urls, token=token)

    async def generate_recipe(self, request: GenerateRecipeRequest) -> RecipeResult:
        settings = self.settings_provider()
        api_key = self.api_key_provider()
        if not api_key:
            raise ConfigurationError("Missing OpenAI API key. Set OPENAI_API_KEY in .env.")

        entry = self._register("generate", request.request_id)
        model = settings.openai.model
        try:
            image_urls, failures = await self._prepare_images(
                request.images, request.source_url, entry.token, settings.limits
            )
            prompts = (
                build_system_prompt(settings.ui.output_language),
                build_user_prompt(request.source_url, request.caption),
            )
            log.info("openai generate start", extra={"data": {"model": model, "images": len(image_urls)}})
            try:
                markdown = await self._run_model(model, api_key, settings, prompts, image_urls, entry.token)
            except EmptyCompletionError:
                if not uses_responses_api(model):
                    raise
                log.warning(
                    "openai primary model returned empty; retrying with fallback model",
                    extra={"data": {"primary": model, "fallback": FALLBACK_MODEL}},
                )
                model = FALLBACK_MODEL
                markdown = await self._run_model(model, api_key, settings, prompts, image_urls, entry.token)

            normalized = normalize_markdown_recipe(markdown)
            log.info("openai generate done", extra={"data": {"chars": len(normalized), "model": model}})
            return RecipeResult(
                markdown=normalized,
                meta=RecipeMeta(
                    images=ImageMeta(
                        requested=len(request.images),
                        attached=len(image_urls),
                        failures=failures,
                    ),
                    model=model,
                ),
            )
        except RequestAborted:
            log.info("generate aborted", extra={"data": {"request_id": entry.request_id}})
            raise
        finally:
            self._release(entry)

    async def previews(self, images: Sequence[PostImage]) -> Dict[str, Any]:
        return await self.previews_service.previews(images)

    async def abort_request(self, request_id: str) -> Dict[str, Any]:
        entry = self.in_flight.get(request_id)
        if entry is None:
            return {"ok": False, "notFound": True}
        entry.token.cancel("user")
        log.info("request abort", extra={"data": {"request_id": request_id, "kind": entry.kind}})
        return {"ok": True}

    async def abort_all(self) -> int:
        entries = list(self.in_flight.values())
        count = sum(1 for entry in entries if entry.token.cancel(ABORT_ALL_REASON))
        await self.tool_client.disconnect("abort all")
        log.info("abort all", extra={"data": {"count": count}})
        return count

    async def clear_session(self) -> None:
        await self.tool_client.reset_session()
        log.info("session cleared")

    def get_connection_status(self) -> ConnectionState:
        return self.launcher.get_status()

    async def ensure_started(self, reason: str) -> ConnectionState:
        return await self.launcher.ensure_started(reason)

    async def shutdown(self) -> None:
        await self.tool_client.shutdown()
        self.launcher.shutdown()
        await self.http.aclose()
