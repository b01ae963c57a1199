import asyncio
import json
import re
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Sequence, Tuple

import httpx

from .cancellation import CancelToken, race_cancellation
from .config import DEFAULT_OPENAI_BASE_URL
from .errors import (
    CompletionError,
    ContentPolicyError,
    EmptyCompletionError,
    UnsupportedParameterError,
)
from .logger import get_logger, truncate

MAX_OUTPUT_TOKENS = 1800
RETRIES = 2
RETRY_BASE_DELAY_S = 0.8
RETRY_MAX_DELAY_S = 1.5
REQUEST_TIMEOUT_S = 120.0
FALLBACK_MODEL = "gpt-4o-mini"

_RESPONSES_FAMILY = re.compile(r"^gpt-5", re.IGNORECASE)
_UNSUPPORTED_RE = re.compile(r"unsupported|unrecognized|unknown parameter|not supported", re.IGNORECASE)
_UNSUPPORTED_CODES = {"unsupported_parameter", "unsupported_value", "unknown_parameter", "invalid_type"}

log = get_logger(__name__)


@dataclass(frozen=True)
class Variant:
    """One request shape in a compatibility cascade."""

    name: str
    params: Dict[str, Any] = field(default_factory=dict)
    image_encoding: str = "string"


RESPONSES_PARAM_VARIANTS: Tuple[Tuple[str, Dict[str, Any]], ...] = (
    ("reasoning+max_output", {"reasoning": {"effort": "low"}, "max_output_tokens": MAX_OUTPUT_TOKENS}),
    ("reasoning", {"reasoning": {"effort": "low"}}),
    ("max_output", {"max_output_tokens": MAX_OUTPUT_TOKENS}),
    ("bare", {}),
)
IMAGE_ENCODINGS: Tuple[str, ...] = ("string", "object")

CHAT_VARIANTS: Tuple[Variant, ...] = (
    Variant("temp+max_completion", {"temperature": 0.2, "max_completion_tokens": MAX_OUTPUT_TOKENS}),
    Variant("max_completion", {"max_completion_tokens": MAX_OUTPUT_TOKENS}),
    Variant("temp+max_tokens", {"temperature": 0.2, "max_tokens": MAX_OUTPUT_TOKENS}),
    Variant("max_tokens", {"max_tokens": MAX_OUTPUT_TOKENS}),
    Variant("temp", {"temperature": 0.2}),
    Variant("bare", {}),
)


def uses_responses_api(model: str) -> bool:
    return bool(_RESPONSES_FAMILY.match(model or ""))


def responses_variants(has_images: bool) -> List[Variant]:
    encodings = IMAGE_ENCODINGS if has_images else IMAGE_ENCODINGS[:1]
    return [
        Variant(f"{name}/{encoding}", params, encoding)
        for name, params in RESPONSES_PARAM_VARIANTS
        for encoding in encodings
    ]


def is_unsupported_param(exc: BaseException) -> bool:
    """True when the error means "drop this parameter and try the next shape"."""
    return isinstance(exc, UnsupportedParameterError)


def retry_delay(attempt: int, base_delay_s: float = RETRY_BASE_DELAY_S) -> float:
    return min(base_delay_s * (2 ** (attempt - 1)), RETRY_MAX_DELAY_S)


def _error_fields(response: httpx.Response) -> Dict[str, Any]:
    try:
        data = response.json()
    except ValueError:
        return {"message": response.text}
    if isinstance(data, dict):
        err = data.get("error")
        if isinstance(err, dict):
            return err
        if isinstance(err, str):
            return {"message": err}
        if isinstance(data.get("message"), str):
            return {"message": data["message"]}
    return {"message": json.dumps(data, ensure_ascii=True)}


def error_from_response(response: httpx.Response) -> CompletionError:
    fields = _error_fields(response)
    status = response.status_code
    message = str(fields.get("message") or f"HTTP {status}")
    code = str(fields.get("code") or "")
    text = f"OpenAI error {status}: {message}"
    if status == 400 and (code in _UNSUPPORTED_CODES or _UNSUPPORTED_RE.search(message)):
        return UnsupportedParameterError(text, status_code=status)
    if code == "content_policy_violation" or fields.get("type") == "content_policy_violation":
        return ContentPolicyError(text, status_code=status)
    return CompletionError(text, status_code=status)


def extract_responses_text(data: Dict[str, Any]) -> str:
    out = data.get("output_text")
    if isinstance(out, str) and out.strip():
        return out
    parts: List[str] = []
    for item in data.get("output") or []:
        if not isinstance(item, dict) or item.get("type") != "message":
            continue
        for content in item.get("content") or []:
            if not isinstance(content, dict):
                continue
            refusal = content.get("refusal")
            if content.get("type") == "refusal" and isinstance(refusal, str) and refusal.strip():
                raise ContentPolicyError(f"OpenAI refusal: {refusal.strip()}")
            if content.get("type") == "output_text" and isinstance(content.get("text"), str):
                parts.append(content["text"])
    return "".join(parts)


def extract_chat_text(data: Dict[str, Any]) -> str:
    choices = data.get("choices") or []
    if not choices:
        return ""
    choice = choices[0] or {}
    if choice.get("finish_reason") == "content_filter":
        raise ContentPolicyError("OpenAI content filter blocked the response")
    message = choice.get("message") or {}
    refusal = message.get("refusal")
    if isinstance(refusal, str) and refusal.strip():
        raise ContentPolicyError(f"OpenAI refusal: {refusal.strip()}")
    content = message.get("content")
    if isinstance(content, list):
        return "".join(str(part.get("text") or "") for part in content if isinstance(part, dict))
    return content if isinstance(content, str) else ""


class CompletionClient:
    def __init__(
        self,
        api_key: str,
        model: str,
        base_url: str = DEFAULT_OPENAI_BASE_URL,
        client: Optional[httpx.AsyncClient] = None,
        retries: int = RETRIES,
        retry_base_delay_s: float = RETRY_BASE_DELAY_S,
    ):
        self.api_key = api_key
        self.model = model
        self.base_url = (base_url or DEFAULT_OPENAI_BASE_URL).rstrip("/")
        self._owns_client = client is None
        self.client = client or httpx.AsyncClient(timeout=REQUEST_TIMEOUT_S)
        self.retries = retries
        self.retry_base_delay_s = retry_base_delay_s

    async def _post(self, path: str, payload: Dict[str, Any]) -> Dict[str, Any]:
        try:
            resp = await self.client.post(
                f"{self.base_url}{path}",
                json=payload,
                headers={"Authorization": f"Bearer {self.api_key}"},
                timeout=REQUEST_TIMEOUT_S,
            )
        except httpx.RequestError as exc:
            raise CompletionError(f"OpenAI request failed: {exc}") from exc
        if resp.status_code >= 400:
            raise error_from_response(resp)
        try:
            data = resp.json()
        except ValueError as exc:
            raise CompletionError(
                f"OpenAI returned invalid JSON (HTTP {resp.status_code})", status_code=resp.status_code
            ) from exc
        return data if isinstance(data, dict) else {}

    def _responses_payload(
        self, system_prompt: str, user_prompt: str, image_urls: Sequence[str], variant: Variant
    ) -> Dict[str, Any]:
        content: List[Dict[str, Any]] = [{"type": "input_text", "text": user_prompt}]
        for url in image_urls:
            image_url: Any = url if variant.image_encoding == "string" else {"url": url}
            content.append({"type": "input_image", "image_url": image_url, "detail": "high"})
        return {
            "model": self.model,
            "instructions": system_prompt,
            "input": [{"role": "user", "content": content}],
            **variant.params,
        }

    def _chat_payload(
        self, system_prompt: str, user_prompt: str, image_urls: Sequence[str], variant: Variant
    ) -> Dict[str, Any]:
        content: List[Dict[str, Any]] = [{"type": "text", "text": user_prompt}]
        for url in image_urls:
            content.append({"type": "image_url", "image_url": {"url": url, "detail": "high"}})
        return {
            "model": self.model,
            "messages": [
                {"role": "system", "content": system_prompt},
                {"role": "user", "content": content},
            ],
            **variant.params,
        }

    async def generate_via_responses(
        self, system_prompt: str, user_prompt: str, image_urls: Sequence[str]
    ) -> str:
        saw_empty = False
        last_err: Optional[CompletionError] = None
        for variant in responses_variants(bool(image_urls)):
            payload = self._responses_payload(system_prompt, user_prompt, image_urls, variant)
            try:
                data = await self._post("/responses", payload)
            except CompletionError as exc:
                if not is_unsupported_param(exc):
                    raise
                last_err = exc
                log.info("responses variant rejected", extra={"data": {"variant": variant.name, "error": truncate(str(exc))}})
                continue
            text = extract_responses_text(data)
            if text.strip():
                return text
            saw_empty = True
            log.warning(
                "responses returned no text",
                extra={"data": {"variant": variant.name, "status": data.get("status"), "model": self.model}},
            )
        if saw_empty:
            log.warning("responses output empty; escalating to chat completions", extra={"data": {"model": self.model}})
            return await self.generate_via_chat(system_prompt, user_prompt, image_urls)
        raise last_err or CompletionError("OpenAI request failed")

    async def generate_via_chat(
        self, system_prompt: str, user_prompt: str, image_urls: Sequence[str]
    ) -> str:
        saw_empty = False
        last_err: Optional[CompletionError] = None
        for variant in CHAT_VARIANTS:
            payload = self._chat_payload(system_prompt, user_prompt, image_urls, variant)
            try:
                data = await self._post("/chat/completions", payload)
            except CompletionError as exc:
                if not is_unsupported_param(exc):
                    raise
                last_err = exc
                log.info("chat variant rejected", extra={"data": {"variant": variant.name, "error": truncate(str(exc))}})
                continue
            text = extract_chat_text(data)
            if text.strip():
                return text
            saw_empty = True
            log.warning("chat returned blank content", extra={"data": {"variant": variant.name, "model": self.model}})
        if saw_empty:
            raise EmptyCompletionError(f"OpenAI returned blank content (model {self.model})")
        raise last_err or CompletionError("OpenAI request failed")

    async def _generate_once(self, system_prompt: str, user_prompt: str, image_urls: Sequence[str]) -> str:
        if uses_responses_api(self.model):
            return await self.generate_via_responses(system_prompt, user_prompt, image_urls)
        return await self.generate_via_chat(system_prompt, user_prompt, image_urls)

    async def _with_retry(self, system_prompt: str, user_prompt: str, image_urls: Sequence[str]) -> str:
        attempt = 0
        while True:
            try:
                return await self._generate_once(system_prompt, user_prompt, image_urls)
            except CompletionError as exc:
                attempt += 1
                if not exc.retryable or attempt > self.retries:
                    raise
                delay = retry_delay(attempt, self.retry_base_delay_s)
                log.warning(
                    "openai retry",
                    extra={"data": {"attempt": attempt, "status": exc.status_code, "delay": delay}},
                )
                await asyncio.sleep(delay)

    async def generate_recipe_markdown(
        self,
        system_prompt: str,
        user_prompt: str,
        image_urls: Optional[Sequence[str]] = None,
        token: Optional[CancelToken] = None,
    ) -> str:
        urls = [u for u in image_urls or [] if u]
        outcome = await race_cancellation(self._with_retry(system_prompt, user_prompt, urls), token)
        return outcome.unwrap()

    async def close(self) -> None:
        if self._owns_client:
            await self.client.aclose()
