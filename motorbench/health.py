"""Health reporting for a running bench.

Components report whether they are usable (BLE link, safety watchdog,
sequencer) and the reporter folds them into a single verdict served over
HTTP. A bench with a dropped link or a failed run reports ``degraded``.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, Iterable, List, Optional

from aiohttp import web

LOGGER = logging.getLogger(__name__)

COMPONENTS = ("ble", "watchdog", "sequencer")


@dataclass(slots=True)
class ComponentStatus:
    name: str
    healthy: bool
    detail: Optional[str] = None
    data: Dict[str, Any] = field(default_factory=dict)
    updated_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    def as_dict(self) -> Dict[str, object]:
        payload: Dict[str, object] = {
            "name": self.name,
            "healthy": self.healthy,
            "detail": self.detail,
            "updatedAt": self.updated_at.isoformat(timespec="seconds"),
        }
        if self.data:
            payload["data"] = dict(self.data)
        return payload


def _component_order(name: str) -> tuple:
    try:
        return (0, COMPONENTS.index(name), name)
    except ValueError:
        return (1, 0, name)


class HealthReporter:
    """Tracks component statuses and the device session state."""

    def __init__(self, components: Iterable[str] = ()) -> None:
        self._status: Dict[str, ComponentStatus] = {
            name: ComponentStatus(name=name, healthy=False, detail="pending")
            for name in components
        }
        self._session_state: Optional[str] = None
        self._lock = asyncio.Lock()

    async def update(
        self,
        name: str,
        healthy: bool,
        detail: Optional[str] = None,
        *,
        data: Optional[Dict[str, Any]] = None,
    ) -> None:
        async with self._lock:
            previous = self._status.get(name)
            self._status[name] = ComponentStatus(
                name=name, healthy=healthy, detail=detail, data=dict(data or {})
            )
        if previous is not None and previous.healthy and not healthy:
            LOGGER.warning("Component %s degraded: %s", name, detail or "no detail")

    async def set_session_state(self, state: str) -> None:
        async with self._lock:
            self._session_state = state

    async def component(self, name: str) -> Optional[Dict[str, object]]:
        async with self._lock:
            status = self._status.get(name)
        return status.as_dict() if status is not None else None

    async def snapshot(self) -> Dict[str, object]:
        async with self._lock:
            entries = sorted(self._status.values(), key=lambda item: _component_order(item.name))
            session_state = self._session_state

        components: List[Dict[str, object]] = [status.as_dict() for status in entries]
        degraded = [item["name"] for item in components if not item["healthy"]]

        payload: Dict[str, object] = {
            "status": "degraded" if degraded else "ok",
            "components": components,
        }
        if session_state is not None:
            payload["session"] = session_state
        return payload


class HealthServer:
    """HTTP server exposing ``/healthz`` and ``/healthz/{component}``."""

    def __init__(self, reporter: HealthReporter, host: str, port: int) -> None:
        self._reporter = reporter
        self._host = host
        self._port = port
        self._runner: Optional[web.AppRunner] = None
        self._site: Optional[web.TCPSite] = None

    @property
    def url(self) -> str:
        return f"http://{self._host}:{self._port}/healthz"

    def build_app(self) -> web.Application:
        app = web.Application()
        app.router.add_get("/healthz", self._handle_health)
        app.router.add_get("/healthz/{component}", self._handle_component)
        return app

    async def start(self) -> None:
        self._runner = web.AppRunner(self.build_app(), access_log=None)
        await self._runner.setup()
        self._site = web.TCPSite(self._runner, self._host, self._port)
        await self._site.start()
        LOGGER.info("Health endpoint listening on %s", self.url)

    async def stop(self) -> None:
        with contextlib.suppress(Exception):
            if self._site is not None:
                await self._site.stop()
        if self._runner is not None:
            await self._runner.cleanup()
        self._site = None
        self._runner = None

    async def _handle_health(self, request: web.Request) -> web.Response:
        snapshot = await self._reporter.snapshot()
        status = 200 if snapshot["status"] == "ok" else 503
        return web.json_response(snapshot, status=status)

    async def _handle_component(self, request: web.Request) -> web.Response:
        name = request.match_info["component"]
        payload = await self._reporter.component(name)
        if payload is None:
            return web.json_response({"error": f"unknown component {name!r}"}, status=404)
        return web.json_response(payload, status=200 if payload["healthy"] else 503)
