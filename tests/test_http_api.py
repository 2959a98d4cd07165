"""Tests for channels/http_api.py — admin HTTP API.

Covers: auth, per-identity dispatch through actors, endpoint results,
environment gating of /run, rate limiting.
"""

import contextlib
from datetime import UTC, datetime, timedelta

import pytest
from aiohttp.test_utils import TestClient, TestServer

from actor import EchoActor
from channels.http_api import HTTPApi
from tools.tasks import save_tasks

TOKEN = "test-token-123"
AUTH = {"Authorization": f"Bearer {TOKEN}"}


class BrokenActor:
    async def call(self, job):
        raise RuntimeError("worker gone")


@contextlib.asynccontextmanager
async def _client(echo, auth_token=TOKEN, **kwargs):
    actor = EchoActor(echo, name="echo")
    actor.start()
    api = HTTPApi(
        actors={"echo": actor, "broken": BrokenActor()},
        host="127.0.0.1",
        port=0,
        auth_token=auth_token,
        get_status=lambda: {"status": "ok", "instances": {"echo": {}}},
        **kwargs,
    )
    try:
        async with TestClient(TestServer(api.build_app())) as client:
            yield client
    finally:
        await actor.stop()


# ─── Auth ─────────────────────────────────────────────────────────

class TestAuth:
    @pytest.mark.asyncio
    async def test_status_is_open(self, make_echo):
        async with _client(make_echo()) as client:
            resp = await client.get("/api/v1/status")
            assert resp.status == 200
            assert (await resp.json())["status"] == "ok"

    @pytest.mark.asyncio
    async def test_missing_token_rejected(self, make_echo):
        async with _client(make_echo()) as client:
            resp = await client.get("/api/v1/echo/echo")
            assert resp.status == 401

    @pytest.mark.asyncio
    async def test_wrong_token_rejected(self, make_echo):
        async with _client(make_echo()) as client:
            resp = await client.get("/api/v1/echo/echo", headers={"Authorization": "Bearer nope"})
            assert resp.status == 401

    @pytest.mark.asyncio
    async def test_unconfigured_token_denies(self, make_echo):
        async with _client(make_echo(), auth_token="") as client:
            resp = await client.get("/api/v1/echo/echo", headers=AUTH)
            assert resp.status == 503


# ─── Endpoints ────────────────────────────────────────────────────

class TestEndpoints:
    @pytest.mark.asyncio
    async def test_unknown_instance(self, make_echo):
        async with _client(make_echo()) as client:
            resp = await client.post("/api/v1/echo/ghost/wake", headers=AUTH)
            assert resp.status == 400
            assert await resp.json() == {"error": "Invalid instance ID: ghost"}

    @pytest.mark.asyncio
    async def test_status_sets_identity(self, make_echo):
        async with _client(make_echo()) as client:
            resp = await client.get("/api/v1/echo/echo", headers=AUTH)
            body = await resp.json()
            assert resp.status == 200
            assert body["id"] == "echo"
            assert body["name"] == "Echo"
            assert body["state"] == "Idling"

    @pytest.mark.asyncio
    async def test_wake_and_sleep(self, make_echo, storage):
        echo = make_echo()
        async with _client(echo) as client:
            resp = await client.post("/api/v1/echo/echo/sleep", headers=AUTH)
            assert await resp.json() == {"ok": True}
            assert (await (await client.get("/api/v1/echo/echo", headers=AUTH)).json())["state"] == "Sleeping"
            assert storage.alarm is None

            resp = await client.post("/api/v1/echo/echo/wake", headers=AUTH)
            assert await resp.json() == {"ok": True}
            body = await (await client.get("/api/v1/echo/echo", headers=AUTH)).json()
            assert body["state"] == "Idling"
            assert body["next_alarm"] is not None

    @pytest.mark.asyncio
    async def test_run_hidden_outside_local(self, make_echo):
        async with _client(make_echo()) as client:
            resp = await client.post("/api/v1/echo/echo/run", headers=AUTH)
            assert resp.status == 404

    @pytest.mark.asyncio
    async def test_run_in_local(self, make_echo, transport):
        transport.unread = 1
        echo = make_echo()
        async with _client(echo, is_local=True) as client:
            resp = await client.post("/api/v1/echo/echo/run", headers=AUTH)
            assert resp.status == 200
            assert await resp.json() == {"ok": True, "ran": True}
            assert echo.engine.calls == 1

    @pytest.mark.asyncio
    async def test_reset(self, make_echo, storage):
        await storage.put("context", "stale")
        async with _client(make_echo()) as client:
            resp = await client.post("/api/v1/echo/echo/reset", headers=AUTH)
            assert await resp.json() == {"ok": True}
        assert await storage.get("context") == ""

    @pytest.mark.asyncio
    async def test_tasks_list_and_delete(self, make_echo, storage):
        when = (datetime.now(UTC) + timedelta(hours=1)).isoformat()
        await save_tasks(storage, [{"name": "water", "content": "plants", "execution_time": when}])
        async with _client(make_echo()) as client:
            resp = await client.get("/api/v1/echo/echo/tasks", headers=AUTH)
            assert [t["name"] for t in (await resp.json())["tasks"]] == ["water"]

            resp = await client.delete("/api/v1/echo/echo/tasks?name=ghost", headers=AUTH)
            assert resp.status == 404

            resp = await client.delete("/api/v1/echo/echo/tasks?name=water", headers=AUTH)
            assert await resp.json() == {"ok": True}
        assert await storage.get("tasks") == []

    @pytest.mark.asyncio
    async def test_usage(self, make_echo):
        from usage import Usage
        echo = make_echo()
        await echo.record_usage(Usage(total_tokens=12, total_cost=0.5),
                                datetime(2024, 1, 2, 4, 0, tzinfo=UTC))
        async with _client(echo) as client:
            resp = await client.get("/api/v1/echo/echo/usage", headers=AUTH)
            body = await resp.json()
            assert body["2024-01-02"]["total_tokens"] == 12

    @pytest.mark.asyncio
    async def test_job_failure_is_500(self, make_echo):
        async with _client(make_echo()) as client:
            resp = await client.get("/api/v1/echo/broken", headers=AUTH)
            assert resp.status == 500
            assert await resp.json() == {"error": "internal error"}


class TestRateLimit:
    @pytest.mark.asyncio
    async def test_post_limit(self, make_echo):
        async with _client(make_echo(), rate_limit=2) as client:
            for _ in range(2):
                resp = await client.post("/api/v1/echo/echo/wake", headers=AUTH)
                assert resp.status == 200
            resp = await client.post("/api/v1/echo/echo/wake", headers=AUTH)
            assert resp.status == 429

    @pytest.mark.asyncio
    async def test_get_uses_separate_limit(self, make_echo):
        async with _client(make_echo(), rate_limit=1) as client:
            await client.post("/api/v1/echo/echo/wake", headers=AUTH)
            resp = await client.get("/api/v1/echo/echo", headers=AUTH)
            assert resp.status == 200
