from typing import Any, Dict, Optional


class RecipeExtractorError(Exception):
    """Base error for everything the fetch/generate pipeline surfaces."""

    code = "error"
    http_status = 500

    def __init__(self, message: str, *, hint: Optional[str] = None, code: Optional[str] = None) -> None:
        super().__init__(message)
        self.message = message
        self.hint = hint
        if code:
            self.code = code

    def __str__(self) -> str:
        if self.hint:
            return f"{self.message}\n\n{self.hint}"
        return self.message

    def to_dict(self) -> Dict[str, Any]:
        return {"code": self.code, "message": self.message, "hint": self.hint}


class ConfigurationError(RecipeExtractorError):
    code = "config"
    http_status = 400


class ConnectivityError(RecipeExtractorError):
    code = "connectivity"
    http_status = 502


class ToolCallError(RecipeExtractorError):
    code = "tool_error"
    http_status = 502


class ToolDetectionError(ToolCallError):
    code = "tool_not_detected"

    def __init__(self, available: list) -> None:
        names = ", ".join(available) or "(none)"
        super().__init__(f'Could not auto-detect a "get content" tool. Available tools: {names}')
        self.available = list(available)


class FeedArgsError(ToolCallError):
    code = "feed_args"
    http_status = 400


class CompletionError(RecipeExtractorError):
    code = "completion"
    http_status = 502

    def __init__(self, message: str, *, status_code: Optional[int] = None, **kwargs: Any) -> None:
        super().__init__(message, **kwargs)
        self.status_code = status_code

    @property
    def retryable(self) -> bool:
        status = self.status_code
        return status == 429 or (status is not None and 500 <= status <= 599)


class UnsupportedParameterError(CompletionError):
    code = "unsupported_parameter"


class ContentPolicyError(CompletionError):
    code = "content_policy"


class EmptyCompletionError(CompletionError):
    code = "empty_output"


class ImageDownloadError(RecipeExtractorError):
    code = "image_download"

    def __init__(self, message: str, *, reason: str = "download_failed") -> None:
        super().__init__(message)
        self.reason = reason


class RequestAborted(RecipeExtractorError):
    """Control outcome for a user-initiated abort. Not a failure."""

    code = "aborted"
    http_status = 499

    def __init__(self, message: str = "Request aborted") -> None:
        super().__init__(message)
