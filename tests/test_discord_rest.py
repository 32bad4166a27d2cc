from __future__ import annotations

import asyncio

import aiohttp
import pytest
from aiohttp import web
from aiohttp.test_utils import TestServer

from common.config import Config
from common.discord_rest import DiscordAPIError, DiscordRest, RestPool
from common.rate_limiter import ActionType


def _app(seen: list) -> web.Application:
    async def me(request):
        seen.append(request.headers.get("Authorization"))
        return web.json_response({"id": "999", "username": "bot"})

    async def members(request):
        seen.append(dict(request.query))
        return web.json_response({"message": "Missing Access", "code": 50001}, status=403)

    async def open_dm(request):
        return web.json_response(
            {"message": "You are being rate limited.", "retry_after": 2.5, "global": False},
            status=429,
        )

    async def drop_sticker(request):
        return web.Response(status=204)

    app = web.Application()
    app.router.add_get("/api/users/@me", me)
    app.router.add_get("/api/guilds/{gid}/members", members)
    app.router.add_post("/api/users/@me/channels", open_dm)
    app.router.add_delete("/api/guilds/{gid}/stickers/{sid}", drop_sticker)
    return app


def _with_client(fn):
    async def scenario():
        seen: list = []
        server = TestServer(_app(seen))
        await server.start_server()
        try:
            async with aiohttp.ClientSession() as session:
                rest = DiscordRest(session, "tok", api_base=str(server.make_url("/api")))
                return await fn(rest), seen
        finally:
            await server.close()

    return asyncio.run(scenario())


def test_success_returns_json_and_sends_bot_auth() -> None:
    async def call(rest):
        return await rest.get_me()

    body, seen = _with_client(call)
    assert body == {"id": "999", "username": "bot"}
    assert seen == ["Bot tok"]


def test_no_content_returns_none() -> None:
    async def call(rest):
        return await rest.delete_sticker("g1", "s1")

    body, _ = _with_client(call)
    assert body is None


def test_error_carries_status_code_and_message() -> None:
    async def call(rest):
        with pytest.raises(DiscordAPIError) as exc:
            await rest.list_members("g1", limit=1000, after="42")
        return exc.value

    err, seen = _with_client(call)
    assert err.status == 403
    assert err.code == 50001
    assert err.message == "Discord API error: 403 (Missing Access)"
    assert seen == [{"limit": "1000", "after": "42"}]


def test_rate_limit_penalizes_the_action_bucket() -> None:
    async def call(rest):
        with pytest.raises(DiscordAPIError) as exc:
            await rest.create_dm("5")
        return exc.value, rest.ratelimit.remaining(ActionType.DM_CHANNEL)

    (err, remaining), _ = _with_client(call)
    assert err.status == 429
    assert err.retry_after == 2.5
    assert 2.0 < remaining <= 2.5


def test_rest_pool_reuses_clients_per_token() -> None:
    async def scenario():
        pool = RestPool(Config())
        await pool.start()
        try:
            a = pool.get("one")
            assert pool.get("one") is a
            assert pool.get("two") is not a
            pool.forget("one")
            assert pool.get("one") is not a
        finally:
            await pool.close()

    asyncio.run(scenario())
