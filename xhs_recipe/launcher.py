import asyncio
import contextlib
import os
import subprocess
import time
from pathlib import Path
from typing import Any, Awaitable, Callable, Optional

import psutil

from .config import AppSettings
from .events import StatusBus
from .health import check_mcp_http, is_tcp_port_open, parse_host_port
from .logger import get_logger, truncate
from .schemas import OPEN_SETTINGS, ConnectionState

READY_POLL_INTERVAL_S = 0.25
STARTUP_TIMEOUT_S = 5.0
PORT_BUSY_GRACE_S = 1.25

log = get_logger(__name__)

SettingsProvider = Callable[[], AppSettings]
HealthCheck = Callable[[str], Awaitable[None]]
PortCheck = Callable[[str, int], Awaitable[bool]]
Spawner = Callable[[str], Awaitable[Any]]


def classify_spawn_error(exc: BaseException) -> str:
    if isinstance(exc, FileNotFoundError):
        return "file_not_found"
    if isinstance(exc, PermissionError):
        return "permission"
    return "spawn_failed"


async def spawn_detached(exe_path: str) -> asyncio.subprocess.Process:
    return await asyncio.create_subprocess_exec(
        exe_path,
        cwd=os.path.dirname(exe_path) or None,
        stdin=subprocess.DEVNULL,
        stdout=subprocess.DEVNULL,
        stderr=subprocess.DEVNULL,
        start_new_session=True,
        creationflags=getattr(subprocess, "CREATE_NO_WINDOW", 0),
    )


def terminate_process_tree(proc: Any) -> None:
    if getattr(proc, "returncode", None) is not None:
        return
    pid = getattr(proc, "pid", None)
    children = []
    if pid:
        try:
            children = psutil.Process(pid).children(recursive=True)
        except psutil.Error:
            children = []
    for child in children:
        with contextlib.suppress(psutil.Error):
            child.terminate()
    with contextlib.suppress(ProcessLookupError):
        proc.terminate()


class McpLauncher:
    """Starts the local MCP executable on demand and tracks its ConnectionState."""

    def __init__(
        self,
        *,
        settings_provider: SettingsProvider,
        bus: Optional[StatusBus] = None,
        health_check: Optional[HealthCheck] = None,
        port_check: Optional[PortCheck] = None,
        spawn: Optional[Spawner] = None,
        poll_interval_s: float = READY_POLL_INTERVAL_S,
        startup_timeout_s: float = STARTUP_TIMEOUT_S,
        port_grace_s: float = PORT_BUSY_GRACE_S,
    ) -> None:
        self.settings_provider = settings_provider
        self.bus = bus or StatusBus()
        self.health_check = health_check or check_mcp_http
        self.port_check = port_check or is_tcp_port_open
        self.spawn = spawn or spawn_detached
        self.poll_interval_s = poll_interval_s
        self.startup_timeout_s = startup_timeout_s
        self.port_grace_s = port_grace_s
        self.status = ConnectionState()
        self.spawn_count = 0
        self._child: Optional[Any] = None
        self._child_exe: Optional[str] = None
        self._watcher: Optional[asyncio.Task] = None
        self._ensure_task: Optional[asyncio.Task] = None

    def get_status(self) -> ConnectionState:
        return self.status

    def _set_status(self, state: str, message: str, **fields: Any) -> ConnectionState:
        kind = fields.pop("kind", "error" if state == "error" else "info")
        self.status = ConnectionState(state=state, kind=kind, message=message, **fields)
        level = log.warning if state == "error" else log.info
        level("mcp status", extra={"data": self.status.model_dump(exclude={"actions", "ts"})})
        self.bus.publish(self.status)
        return self.status

    async def _is_ready(self, http_url: str) -> Optional[BaseException]:
        try:
            await self.health_check(http_url)
        except Exception as exc:
            return exc
        return None

    def _stop_child(self, reason: str) -> None:
        child = self._child
        if child is None:
            return
        self._child = None
        self._child_exe = None
        if self._watcher is not None:
            self._watcher.cancel()
            self._watcher = None
        terminate_process_tree(child)
        log.info("mcp stopped", extra={"data": {"reason": reason}})

    async def _watch_child(self, child: Any) -> None:
        code = await child.wait()
        if child is not self._child:
            return
        self._child = None
        self._child_exe = None
        if self.status.state == "ready":
            log.warning("mcp exited", extra={"data": {"code": code}})
            return
        signal = -code if isinstance(code, int) and code < 0 else None
        self._set_status(
            "error",
            "MCP exited before becoming ready.",
            detail=f"Exit code: {code if code is not None else '?'} Signal: {signal or '?'}",
            actions=[OPEN_SETTINGS],
        )

    async def ensure_started(self, reason: str = "") -> ConnectionState:
        """Bring the tool server to `ready`, coalescing concurrent callers."""
        if self._ensure_task is None or self._ensure_task.done():
            self._ensure_task = asyncio.ensure_future(self._ensure_started(reason))
        return await asyncio.shield(self._ensure_task)

    async def _ensure_started(self, reason: str) -> ConnectionState:
        cfg = self.settings_provider().mcp
        if cfg.transport != "http":
            return self._set_status("disabled", "MCP auto-start disabled (Transport is Stdio).")

        exe_path = cfg.exe_path.strip()
        if not exe_path:
            self._stop_child("no exe path")
            return self._set_status(
                "needs_path", "Set MCP path to enable fetching.", kind="warn", actions=[OPEN_SETTINGS]
            )

        http_url = cfg.http_url.strip()
        if not http_url:
            return self._set_status(
                "error",
                "Missing MCP HTTP URL. Open Settings and set MCP HTTP URL.",
                code="config",
                actions=[OPEN_SETTINGS],
            )

        if not Path(exe_path).is_file():
            self._stop_child("exe missing")
            return self._set_status(
                "error",
                "MCP executable not found.",
                code="file_not_found",
                detail=exe_path,
                actions=[OPEN_SETTINGS],
            )

        err = await self._is_ready(http_url)
        if err is None:
            return self._set_status("ready", "MCP ready.")
        log.info("mcp not ready yet", extra={"data": {"reason": reason, "error": truncate(str(err))}})

        host, port = parse_host_port(http_url)
        if self._child is None and await self.port_check(host, port):
            deadline = time.monotonic() + self.port_grace_s
            while time.monotonic() < deadline:
                if await self._is_ready(http_url) is None:
                    return self._set_status("ready", "MCP ready.")
                await asyncio.sleep(self.poll_interval_s)
            self._stop_child("port already in use")
            return self._set_status(
                "error",
                "Port is in use (or MCP HTTP URL is incorrect).",
                code="port_in_use",
                detail=f"Update MCP HTTP URL/port in Settings (currently {host}:{port}).",
                actions=[OPEN_SETTINGS],
            )

        if self._child is not None and self._child_exe != exe_path:
            self._stop_child("exe path changed")

        self._set_status("starting", "Starting MCP…")
        if self._child is None:
            try:
                child = await self.spawn(exe_path)
            except Exception as exc:
                code = classify_spawn_error(exc)
                message = "Failed to launch MCP."
                detail = truncate(str(exc))
                if code == "permission":
                    message = "Permission error starting MCP."
                    detail = "Check the file is executable and not blocked by security software, or move it to a user folder."
                return self._set_status("error", message, code=code, detail=detail, actions=[OPEN_SETTINGS])
            self.spawn_count += 1
            self._child = child
            self._child_exe = exe_path
            self._watcher = asyncio.ensure_future(self._watch_child(child))
            log.info("mcp spawned", extra={"data": {"exe": exe_path, "pid": getattr(child, "pid", None)}})

        deadline = time.monotonic() + self.startup_timeout_s
        last_err: Optional[BaseException] = None
        while time.monotonic() < deadline:
            if self._child is None and self.status.state == "error":
                return self.status
            last_err = await self._is_ready(http_url)
            if last_err is None:
                return self._set_status("ready", "MCP ready.")
            await asyncio.sleep(self.poll_interval_s)

        return self._set_status(
            "error",
            "MCP failed to start.",
            code="startup_timeout",
            detail=truncate(str(last_err)) if last_err else "Timed out waiting for MCP.",
            actions=[OPEN_SETTINGS],
        )

    def shutdown(self) -> None:
        self._stop_child("app shutdown")
