"""Admin HTTP API for the Echo Chamber daemon.

JSON endpoints for monitoring and operating identities. Every request
that touches an identity is executed as a job on that identity's actor,
so it is serialized with the alarm cycle.

Endpoints:
    GET    /api/v1/status                  — Health check + daemon stats
    GET    /api/v1/echo/{id}               — Identity status
    POST   /api/v1/echo/{id}/wake          — Force wake
    POST   /api/v1/echo/{id}/sleep         — Force sleep
    POST   /api/v1/echo/{id}/run           — Run a cycle now (local environment only)
    POST   /api/v1/echo/{id}/reset         — Clear context and tasks
    GET    /api/v1/echo/{id}/tasks         — List scheduled tasks
    DELETE /api/v1/echo/{id}/tasks?name=   — Delete one task
    GET    /api/v1/echo/{id}/usage         — Usage ledger
"""

from __future__ import annotations

import hmac
import logging
import time
from collections import defaultdict
from collections.abc import Awaitable, Callable
from typing import Any

from aiohttp import web

log = logging.getLogger(__name__)


class _RateLimiter:
    def __init__(self, max_requests: int = 30, window_seconds: int = 60):
        self.max_requests = max_requests
        self.window = window_seconds
        self._hits: dict[str, list[float]] = defaultdict(list)

    def check(self, key: str) -> bool:
        now = time.monotonic()
        # Periodic sweep: evict stale keys when dict grows large
        if len(self._hits) > 1000:
            stale = [k for k, v in self._hits.items()
                     if not v or now - v[-1] >= self.window]
            for k in stale:
                del self._hits[k]
        hits = self._hits[key]
        self._hits[key] = [t for t in hits if now - t < self.window]
        if len(self._hits[key]) >= self.max_requests:
            return False
        self._hits[key].append(now)
        return True


class HTTPApi:
    """Admin HTTP server; routes identity operations through their actors."""

    _AUTH_EXEMPT_PATHS = frozenset({"/api/v1/status"})

    def __init__(
        self,
        actors: dict[str, Any],
        host: str,
        port: int,
        auth_token: str,
        is_local: bool = False,
        get_status: Callable[[], dict] | None = None,
        rate_limit: int = 30,
        rate_window: int = 60,
        status_rate_limit: int = 60,
    ):
        self.actors = actors
        self.host = host
        self.port = port
        self.auth_token = auth_token
        self.is_local = is_local
        self._get_status = get_status
        self._runner: web.AppRunner | None = None
        self._rate_limiter = _RateLimiter(max_requests=rate_limit, window_seconds=rate_window)
        self._status_rate_limiter = _RateLimiter(max_requests=status_rate_limit, window_seconds=rate_window)

    # ─── Lifecycle ────────────────────────────────────────────────

    def build_app(self) -> web.Application:
        app = web.Application(middlewares=[self._auth_middleware, self._rate_middleware])
        app.router.add_get("/api/v1/status", self._handle_status)
        app.router.add_get("/api/v1/echo/{id}", self._handle_echo_status)
        app.router.add_post("/api/v1/echo/{id}/wake", self._handle_wake)
        app.router.add_post("/api/v1/echo/{id}/sleep", self._handle_sleep)
        app.router.add_post("/api/v1/echo/{id}/run", self._handle_run)
        app.router.add_post("/api/v1/echo/{id}/reset", self._handle_reset)
        app.router.add_get("/api/v1/echo/{id}/tasks", self._handle_tasks)
        app.router.add_delete("/api/v1/echo/{id}/tasks", self._handle_delete_task)
        app.router.add_get("/api/v1/echo/{id}/usage", self._handle_usage)
        return app

    async def start(self) -> None:
        """Start the HTTP server."""
        self._runner = web.AppRunner(self.build_app(), access_log=None)
        await self._runner.setup()
        site = web.TCPSite(self._runner, self.host, self.port)
        await site.start()
        log.info("HTTP API listening on %s:%d", self.host, self.port)

    async def stop(self) -> None:
        """Graceful shutdown."""
        if self._runner:
            await self._runner.cleanup()
        log.info("HTTP API stopped")

    # ─── Auth Middleware ──────────────────────────────────────────

    @web.middleware
    async def _auth_middleware(self, request: web.Request, handler):
        # Health check endpoint is always open
        if request.path in self._AUTH_EXEMPT_PATHS:
            return await handler(request)

        # No token configured = service misconfigured, deny all protected endpoints
        if not self.auth_token:
            return web.json_response(
                {"error": "No auth token configured"}, status=503,
            )

        auth = request.headers.get("Authorization", "")
        if not auth.startswith("Bearer ") or not hmac.compare_digest(auth[7:], self.auth_token):
            log.warning("HTTP API: auth failed from %s %s",
                        request.remote, request.path)
            return web.json_response(
                {"error": "unauthorized"}, status=401,
            )
        return await handler(request)

    # ─── Rate Limit Middleware ────────────────────────────────────

    @web.middleware
    async def _rate_middleware(self, request: web.Request, handler):
        client_ip = request.remote or "unknown"
        limiter = self._status_rate_limiter if request.method == "GET" else self._rate_limiter
        if not limiter.check(client_ip):
            return web.json_response(
                {"error": "rate limit exceeded"}, status=429,
            )
        return await handler(request)

    # ─── Identity dispatch ────────────────────────────────────────

    async def _on_echo(self, request: web.Request,
                       job: Callable[[Any], Awaitable[Any]]) -> web.Response | Any:
        """Run job on the addressed identity's actor.

        Returns the job result, or an error response for unknown ids and
        failed jobs.
        """
        instance_id = request.match_info["id"]
        actor = self.actors.get(instance_id)
        if actor is None:
            return web.json_response(
                {"error": f"Invalid instance ID: {instance_id}"}, status=400,
            )

        async def with_identity(echo):
            await echo.ensure_identity()
            return await job(echo)

        try:
            return await actor.call(with_identity)
        except Exception as e:
            log.error("HTTP API: %s %s failed: %s", request.method, request.path, e)
            return web.json_response({"error": "internal error"}, status=500)

    # ─── Endpoints ────────────────────────────────────────────────

    async def _handle_status(self, request: web.Request) -> web.Response:
        """GET /api/v1/status — health check + stats."""
        status = self._get_status() if self._get_status else {"status": "ok"}
        return web.json_response(status)

    async def _handle_echo_status(self, request: web.Request) -> web.Response:
        result = await self._on_echo(request, lambda echo: echo.status())
        if isinstance(result, web.Response):
            return result
        return web.json_response(result)

    async def _handle_wake(self, request: web.Request) -> web.Response:
        result = await self._on_echo(request, lambda echo: echo.wake(force=True))
        if isinstance(result, web.Response):
            return result
        return web.json_response({"ok": True})

    async def _handle_sleep(self, request: web.Request) -> web.Response:
        result = await self._on_echo(request, lambda echo: echo.sleep(force=True))
        if isinstance(result, web.Response):
            return result
        return web.json_response({"ok": True})

    async def _handle_run(self, request: web.Request) -> web.Response:
        if not self.is_local:
            return web.json_response({"error": "not found"}, status=404)
        result = await self._on_echo(request, lambda echo: echo.run())
        if isinstance(result, web.Response):
            return result
        return web.json_response({"ok": True, "ran": bool(result)})

    async def _handle_reset(self, request: web.Request) -> web.Response:
        result = await self._on_echo(request, lambda echo: echo.reset())
        if isinstance(result, web.Response):
            return result
        return web.json_response({"ok": True})

    async def _handle_tasks(self, request: web.Request) -> web.Response:
        result = await self._on_echo(request, lambda echo: echo.tasks())
        if isinstance(result, web.Response):
            return result
        return web.json_response({"tasks": result})

    async def _handle_delete_task(self, request: web.Request) -> web.Response:
        name = request.query.get("name", "")
        result = await self._on_echo(request, lambda echo: echo.delete_task(name))
        if isinstance(result, web.Response):
            return result
        if not result:
            return web.json_response({"error": "Task not found"}, status=404)
        return web.json_response({"ok": True})

    async def _handle_usage(self, request: web.Request) -> web.Response:
        async def job(echo):
            return {key: u.to_dict() for key, u in (await echo.usage()).items()}

        result = await self._on_echo(request, job)
        if isinstance(result, web.Response):
            return result
        return web.json_response(result)
