import asyncio
import contextlib
from dataclasses import dataclass
from typing import Any, Awaitable, Generic, Optional, TypeVar

from .errors import RequestAborted

T = TypeVar("T")


class CancelToken:
    """One-shot cancellation handle shared by every stage of a request."""

    def __init__(self) -> None:
        self._event = asyncio.Event()
        self.reason: Optional[str] = None

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def cancel(self, reason: str = "user") -> bool:
        if self._event.is_set():
            return False
        self.reason = reason
        self._event.set()
        return True

    async def wait(self) -> None:
        await self._event.wait()

    def raise_if_cancelled(self) -> None:
        if self._event.is_set():
            raise RequestAborted()


@dataclass
class Outcome(Generic[T]):
    kind: str
    value: Optional[T] = None
    error: Optional[BaseException] = None

    @property
    def ok(self) -> bool:
        return self.kind == "value"

    @property
    def cancelled(self) -> bool:
        return self.kind == "cancelled"

    def unwrap(self) -> T:
        if self.kind == "cancelled":
            raise RequestAborted()
        if self.kind == "error" and self.error is not None:
            raise self.error
        return self.value  # type: ignore[return-value]


async def race_cancellation(awaitable: Awaitable[T], token: Optional[CancelToken]) -> Outcome[T]:
    """Run `awaitable` until it finishes or `token` fires, whichever is first.

    When the token wins the operation task is cancelled and awaited, so
    any sockets it opened are closed before this returns.
    """
    op_task: asyncio.Task = asyncio.ensure_future(awaitable)
    if token is None:
        return await _settle(op_task)
    if token.cancelled:
        op_task.cancel()
        with contextlib.suppress(BaseException):
            await op_task
        return Outcome("cancelled")
    cancel_task = asyncio.ensure_future(token.wait())
    try:
        done, _ = await asyncio.wait({op_task, cancel_task}, return_when=asyncio.FIRST_COMPLETED)
    except asyncio.CancelledError:
        op_task.cancel()
        cancel_task.cancel()
        raise
    if op_task in done:
        cancel_task.cancel()
        return await _settle(op_task)
    op_task.cancel()
    with contextlib.suppress(BaseException):
        await op_task
    return Outcome("cancelled")


async def _settle(task: "asyncio.Task[Any]") -> Outcome:
    try:
        value = await task
    except asyncio.CancelledError:
        return Outcome("cancelled")
    except RequestAborted:
        return Outcome("cancelled")
    except Exception as exc:
        return Outcome("error", error=exc)
    return Outcome("value", value=value)


async def with_timeout(awaitable: Awaitable[T], seconds: float, label: str) -> T:
    try:
        return await asyncio.wait_for(awaitable, timeout=seconds)
    except asyncio.TimeoutError as exc:
        raise TimeoutError(f"{label} timed out after {int(seconds * 1000)}ms") from exc
