"""App-wide Starlette middleware for the bot trap.

Besides running the admission pipeline on every request, the middleware
owns two reserved endpoints that must work before any check runs:

* ``GET /health``: loopback-only store round trip;
* ``POST /automation-report``: receives client automation reports.
"""

import logging
from typing import TYPE_CHECKING, Collection, Optional

from fastapi import Request, Response, status
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.responses import JSONResponse, PlainTextResponse
from starlette.types import ASGIApp

from fastapi_bot_trap.exceptions import StoreError
from fastapi_bot_trap.pipeline import RequestContext
from fastapi_bot_trap.utils import extract_client_ip

if TYPE_CHECKING:
    from fastapi_bot_trap.trap import BotTrap

logger = logging.getLogger(__name__)

HEALTH_CHECK_KEY = "health:test"
LOOPBACK_ADDRESSES = frozenset({"127.0.0.1", "::1"})


class BotTrapMiddleware(BaseHTTPMiddleware):
    """Runs every request through a ``BotTrap`` before the application sees it."""

    def __init__(
        self,
        app: ASGIApp,
        trap: "BotTrap",
        site_id: str = "default",
        health_path: Optional[str] = "/health",
        health_allowed_ips: Collection[str] = LOOPBACK_ADDRESSES,
    ):
        super().__init__(app)
        self.trap = trap
        self.site_id = site_id
        self.health_path = health_path
        self.health_allowed_ips = frozenset(health_allowed_ips)

    async def dispatch(self, request: Request, call_next) -> Response:
        path = request.url.path

        if self.health_path and path == self.health_path:
            return await self._health(request)

        if path == self.trap.report_path and request.method == "POST":
            return await self._automation_report(request)

        decision = await self.trap.pipeline.evaluate(
            RequestContext.from_request(request, self.site_id)
        )
        if not decision.passes_through:
            return decision.to_response()

        response = await call_next(request)
        return decision.apply_headers(response)

    async def _health(self, request: Request) -> Response:
        if extract_client_ip(request) not in self.health_allowed_ips:
            return PlainTextResponse("Forbidden", status_code=status.HTTP_403_FORBIDDEN)
        store = self.trap.store
        try:
            await store.set(HEALTH_CHECK_KEY, b"ok")
            value = await store.get(HEALTH_CHECK_KEY)
            await store.delete(HEALTH_CHECK_KEY)
        except StoreError as e:
            logger.error(f"Health check failed: {e}")
            return PlainTextResponse(
                "Key-value store error", status_code=status.HTTP_500_INTERNAL_SERVER_ERROR
            )
        if value != b"ok":
            return PlainTextResponse(
                "Key-value store error", status_code=status.HTTP_500_INTERNAL_SERVER_ERROR
            )
        return PlainTextResponse("OK")

    async def _automation_report(self, request: Request) -> Response:
        ip = extract_client_ip(request)
        try:
            config = await self.trap.config_store.load(self.site_id)
        except StoreError as e:
            logger.warning(f"Dropping automation report from {ip}, store unavailable: {e}")
            return JSONResponse({"status": "store unavailable"})

        body = await request.body()
        result = await self.trap.aggregator.handle_report(self.site_id, ip, body, config)
        return JSONResponse(
            {"status": result.message, "banned": result.banned},
            status_code=result.status_code,
        )
