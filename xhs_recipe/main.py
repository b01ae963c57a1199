import asyncio
import json
from contextlib import asynccontextmanager
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Set

from fastapi import APIRouter, Depends, FastAPI, HTTPException, Request
from fastapi.responses import JSONResponse, StreamingResponse

from .config import CONFIG_PATH, AppSettings, apply_patch, load_settings, public_config, resolve_settings, save_settings
from .coordinator import RequestCoordinator
from .errors import RecipeExtractorError
from .events import StatusBus
from .logger import get_entries, get_logger, init_logging, logs_folder
from .recipe import extract_first_https_url
from .schemas import ExtractUrlRequest, FetchPostRequest, GenerateRecipeRequest, PreviewRequest

log = get_logger(__name__)

CoordinatorFactory = Callable[[Callable[[], AppSettings], StatusBus], RequestCoordinator]


def default_coordinator_factory(settings_provider: Callable[[], AppSettings], bus: StatusBus) -> RequestCoordinator:
    return RequestCoordinator(settings_provider=settings_provider, bus=bus)


def get_settings(request: Request) -> AppSettings:
    return request.app.state.settings


def get_coordinator(request: Request) -> RequestCoordinator:
    return request.app.state.coordinator


def get_status_bus(request: Request) -> StatusBus:
    return request.app.state.bus


def get_config_path(request: Request) -> Path:
    return request.app.state.config_path


def sse_format(event: dict) -> str:
    return f"data: {json.dumps(event, ensure_ascii=False)}\n\n"


def _spawn_background(app: FastAPI, coro: Any) -> asyncio.Task:
    tasks: Set[asyncio.Task] = app.state.background_tasks
    task = asyncio.ensure_future(coro)
    tasks.add(task)
    task.add_done_callback(tasks.discard)
    return task


async def _ensure_started_logged(coordinator: RequestCoordinator, reason: str) -> None:
    try:
        await coordinator.ensure_started(reason)
    except Exception as exc:
        log.error("mcp ensure started failed", extra={"data": {"reason": reason, "error": str(exc)}})


router = APIRouter()


@router.get("/api/mcp/status")
async def mcp_status(coordinator: RequestCoordinator = Depends(get_coordinator)):
    return coordinator.get_connection_status()


@router.get("/api/mcp/events")
async def stream_status_events(
    bus: StatusBus = Depends(get_status_bus),
    coordinator: RequestCoordinator = Depends(get_coordinator),
):
    async def event_generator():
        queue = bus.subscribe()
        try:
            yield sse_format(coordinator.get_connection_status().model_dump())
            while True:
                status = await queue.get()
                yield sse_format(status.model_dump())
        except asyncio.CancelledError:
            pass
        finally:
            bus.unsubscribe(queue)

    return StreamingResponse(event_generator(), media_type="text/event-stream")


@router.post("/api/posts/fetch")
async def fetch_post(
    payload: FetchPostRequest,
    coordinator: RequestCoordinator = Depends(get_coordinator),
):
    return await coordinator.fetch_post(payload.url, request_id=payload.request_id)


@router.post("/api/images/previews")
async def image_previews(
    payload: PreviewRequest,
    coordinator: RequestCoordinator = Depends(get_coordinator),
):
    return await coordinator.previews(payload.images)


@router.post("/api/recipes/generate")
async def generate_recipe(
    payload: GenerateRecipeRequest,
    coordinator: RequestCoordinator = Depends(get_coordinator),
):
    return await coordinator.generate_recipe(payload)


@router.get("/api/requests")
async def list_requests(coordinator: RequestCoordinator = Depends(get_coordinator)):
    return {"requests": coordinator.list_in_flight()}


@router.post("/api/requests/abort-all")
async def abort_all_requests(coordinator: RequestCoordinator = Depends(get_coordinator)):
    count = await coordinator.abort_all()
    return {"ok": True, "count": count}


@router.post("/api/requests/{request_id}/abort")
async def abort_request(request_id: str, coordinator: RequestCoordinator = Depends(get_coordinator)):
    if not request_id or len(request_id) > 200:
        raise HTTPException(status_code=422, detail="Invalid request id.")
    return await coordinator.abort_request(request_id)


@router.post("/api/session/clear")
async def clear_session(coordinator: RequestCoordinator = Depends(get_coordinator)):
    await coordinator.clear_session()
    return {"ok": True}


@router.post("/api/url/extract")
async def extract_url(payload: ExtractUrlRequest):
    return {"url": extract_first_https_url(payload.text)}


@router.get("/api/logs")
async def recent_logs():
    folder = logs_folder()
    entries: List[Dict[str, Any]] = get_entries()
    return {"entries": entries, "folder": str(folder) if folder else None}


@router.get("/settings")
async def get_settings_route(settings: AppSettings = Depends(get_settings)):
    return {"settings": public_config(settings)}


@router.post("/settings")
async def update_settings_route(
    request: Request,
    settings: AppSettings = Depends(get_settings),
    coordinator: RequestCoordinator = Depends(get_coordinator),
    config_path: Path = Depends(get_config_path),
):
    body = await request.json()
    if not isinstance(body, dict):
        raise HTTPException(status_code=422, detail="Settings patch must be an object.")
    try:
        new_settings = apply_patch(settings, body)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    save_settings(new_settings, config_path=config_path)
    request.app.state.settings = new_settings
    log.info("config saved", extra={"data": {"path": str(config_path)}})
    _spawn_background(request.app, _ensure_started_logged(coordinator, "config_save"))
    return {"ok": True, "settings": public_config(new_settings)}


async def recipe_error_handler(request: Request, exc: RecipeExtractorError) -> JSONResponse:
    return JSONResponse(status_code=exc.http_status, content={"error": exc.to_dict()})


def create_app(
    settings: AppSettings,
    *,
    coordinator_factory: Optional[CoordinatorFactory] = None,
    config_path: Optional[Path] = None,
) -> FastAPI:
    @asynccontextmanager
    async def lifespan(app: FastAPI):
        init_logging(app.state.settings.data_dir)
        log.info("app start", extra={"data": {"config": str(app.state.config_path)}})
        _spawn_background(app, _ensure_started_logged(app.state.coordinator, "startup"))
        try:
            yield
        finally:
            for task in list(app.state.background_tasks):
                task.cancel()
            await app.state.coordinator.shutdown()

    app = FastAPI(title="XHS Recipe Extractor", lifespan=lifespan)
    app.state.settings = settings
    app.state.config_path = config_path or CONFIG_PATH
    app.state.bus = StatusBus()
    app.state.background_tasks = set()

    def settings_provider() -> AppSettings:
        return resolve_settings(app.state.settings)

    factory = coordinator_factory or default_coordinator_factory
    app.state.coordinator = factory(settings_provider, app.state.bus)
    app.add_exception_handler(RecipeExtractorError, recipe_error_handler)
    app.include_router(router)
    return app


def main() -> None:
    import uvicorn

    settings = load_settings()
    init_logging(settings.data_dir)
    try:
        uvicorn.run(create_app(settings), host=settings.host, port=settings.port)
    except KeyboardInterrupt:
        pass


if __name__ == "__main__":
    main()
