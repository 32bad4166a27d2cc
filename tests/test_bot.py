from __future__ import annotations

import asyncio
from datetime import datetime, timezone
from types import SimpleNamespace

import discord
import pytest

from common.config import Config
from server.bot import BotManager, build_activity


class FakeGatewayBot:
    """Implements the slice of discord.Bot used by BotSession."""

    def __init__(self, *, becomes_ready: bool = True):
        self.becomes_ready = becomes_ready
        self.handlers = {}
        self.logged_in = None
        self.closed = False
        self.presence = None
        self.user = SimpleNamespace(id=999, name="bot")
        self.guilds = [SimpleNamespace(id=1, name="One", icon=None, member_count=12)]
        self._ready = asyncio.Event()
        self._stop = asyncio.Event()

    def event(self, fn):
        self.handlers[fn.__name__] = fn
        return fn

    async def login(self, token):
        self.logged_in = token

    async def connect(self, reconnect=True):
        if self.becomes_ready:
            self._ready.set()
        await self._stop.wait()

    async def wait_until_ready(self):
        await self._ready.wait()

    def is_ready(self):
        return self._ready.is_set()

    def is_closed(self):
        return self.closed

    async def close(self):
        self.closed = True
        self._stop.set()

    async def change_presence(self, *, status=None, activity=None):
        self.presence = (status, activity)


def _manager(**bot_kw):
    cfg = Config()
    cfg.BOT_LOGIN_TIMEOUT = 0.05
    made = []

    def factory():
        bot = FakeGatewayBot(**bot_kw)
        made.append(bot)
        return bot

    return BotManager(cfg, bot_factory=factory), made


def test_ensure_logs_in_once_and_reuses_session() -> None:
    async def scenario():
        mgr, made = _manager()
        first = await mgr.ensure("tok")
        again = await mgr.ensure("tok")
        guilds = first.guilds()
        assert mgr.get("tok") is first
        assert await mgr.disconnect("tok")
        assert mgr.get("tok") is None
        return first, again, made, guilds

    first, again, made, guilds = asyncio.run(scenario())
    assert first is again
    assert len(made) == 1
    assert made[0].logged_in == "tok"
    assert made[0].closed
    assert guilds == [{"id": "1", "name": "One", "icon": None, "member_count": 12}]
    assert set(made[0].handlers) >= {"on_ready", "on_message", "on_presence_update"}


def test_login_timeout_closes_the_client() -> None:
    async def scenario():
        mgr, made = _manager(becomes_ready=False)
        with pytest.raises(asyncio.TimeoutError):
            await mgr.ensure("tok")
        return mgr, made

    mgr, made = asyncio.run(scenario())
    assert made[0].closed
    assert mgr.get("tok") is None


def test_gateway_events_feed_the_tracker() -> None:
    async def scenario():
        mgr, made = _manager()
        session = await mgr.ensure("tok")
        h = made[0].handlers

        replies = []

        async def reply(content=None, *, embed=None):
            replies.append(content)

        mgr.commands.create("g1", "!ping", "custom", "pong")
        msg = SimpleNamespace(
            content="!ping",
            author=SimpleNamespace(id=5, bot=False),
            guild=SimpleNamespace(id="g1"),
            channel=SimpleNamespace(id="c1"),
            reply=reply,
        )
        await h["on_message"](msg)
        await h["on_raw_reaction_add"](SimpleNamespace(member=None, guild_id="g1", user_id=5))
        await h["on_presence_update"](
            None,
            SimpleNamespace(id=5, status="idle", activities=[SimpleNamespace(name="chess", type=discord.ActivityType.playing)]),
        )
        await h["on_member_remove"](SimpleNamespace(guild=SimpleNamespace(id="g1")))
        await session.set_presence("dnd", {"name": "tunes", "type": "listening"})
        await mgr.close_all()
        return mgr, made, replies

    mgr, made, replies = asyncio.run(scenario())
    act = mgr.tracker.user("g1", "5")
    assert (act.messages, act.reactions) == (1, 1)
    assert mgr.tracker.channel_messages("g1", "c1") == 1
    assert mgr.presence_of("5")["activities"] == [{"name": "chess", "type": "playing"}]
    assert len(mgr.tracker.leaves_since("g1", datetime(2000, 1, 1, tzinfo=timezone.utc))) == 1
    assert replies == ["pong"]

    status, activity = made[0].presence
    assert status is discord.Status.dnd
    assert activity.type is discord.ActivityType.listening


def test_build_activity() -> None:
    assert build_activity(None) is None
    assert build_activity({"type": "playing"}) is None
    stream = build_activity({"name": "live", "type": "streaming", "url": "https://twitch.tv/x"})
    assert isinstance(stream, discord.Streaming)
    # streaming without a url falls back to playing
    assert build_activity({"name": "live", "type": "streaming"}).type is discord.ActivityType.playing
    assert build_activity({"name": "x", "type": "bogus"}).type is discord.ActivityType.playing
