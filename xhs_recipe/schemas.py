from datetime import datetime, timezone
from typing import Annotated, Any, List, Literal, Optional, Union

from pydantic import BaseModel, Field, field_validator


ConnectionStateName = Literal["idle", "disabled", "needs_path", "starting", "ready", "error"]
RequestKind = Literal["fetch", "generate"]


def utc_now() -> str:
    return datetime.now(timezone.utc).isoformat().replace("+00:00", "Z")


class UrlSource(BaseModel):
    kind: Literal["url"] = "url"
    url: str = Field(min_length=1, max_length=5000)


class DataUrlSource(BaseModel):
    kind: Literal["dataUrl"] = "dataUrl"
    data_url: str = Field(min_length=1, max_length=5_000_000, alias="dataUrl")

    model_config = {"populate_by_name": True}


ImageSource = Annotated[Union[UrlSource, DataUrlSource], Field(discriminator="kind")]


class PostImage(BaseModel):
    id: str
    source: ImageSource
    preview_url: str

    model_config = {"frozen": True}


class Post(BaseModel):
    source_url: str
    caption: str = ""
    images: List[PostImage] = Field(default_factory=list)
    raw: Any = None

    model_config = {"frozen": True}


class Action(BaseModel):
    id: str
    label: str


class ConnectionState(BaseModel):
    state: ConnectionStateName = "idle"
    kind: Literal["info", "warn", "error"] = "info"
    message: str = "Idle"
    code: Optional[str] = None
    detail: Optional[str] = None
    actions: List[Action] = Field(default_factory=list)
    ts: str = Field(default_factory=utc_now)


OPEN_SETTINGS = Action(id="openSettings", label="Open Settings")


class FetchPostRequest(BaseModel):
    url: str = Field(min_length=1, max_length=5000)
    request_id: Optional[str] = Field(default=None, min_length=1, max_length=200)

    @field_validator("url")
    @classmethod
    def _http_only(cls, value: str) -> str:
        if not value.lower().startswith(("http://", "https://")):
            raise ValueError("URL must start with http(s)://")
        return value


class GenerateRecipeRequest(BaseModel):
    source_url: str = Field(min_length=1, max_length=5000)
    caption: str = Field(default="", max_length=200_000)
    images: List[ImageSource] = Field(default_factory=list, max_length=40)
    request_id: Optional[str] = Field(default=None, min_length=1, max_length=200)


class PreviewRequest(BaseModel):
    images: List[PostImage] = Field(default_factory=list)


class ImageFailure(BaseModel):
    kind: str = "url"
    url: Optional[str] = None
    reason: str


class ImageMeta(BaseModel):
    requested: int = 0
    attached: int = 0
    failures: List[ImageFailure] = Field(default_factory=list)


class RecipeMeta(BaseModel):
    images: ImageMeta = Field(default_factory=ImageMeta)
    model: Optional[str] = None


class RecipeResult(BaseModel):
    markdown: str
    meta: RecipeMeta = Field(default_factory=RecipeMeta)


class InFlightInfo(BaseModel):
    request_id: str
    kind: RequestKind
    started_at: str = Field(default_factory=utc_now)


class ExtractUrlRequest(BaseModel):
    text: str = Field(default="", max_length=200_000)
