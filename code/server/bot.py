# =============================================================================
#  botdash
#  Copyright (C) 2025 botdash contributors
#
#  This source code is released under the GNU Affero General Public License
#  version 3.0. A copy of the license is available at:
#  https://www.gnu.org/licenses/agpl-3.0.en.html
# =============================================================================

from __future__ import annotations

import asyncio
import contextlib
import logging
from typing import Callable, Dict, List, Optional

import discord

from common.config import Config
from common.constants import ACTIVITY_TYPES, PRESENCE_STATUSES
from server.commands import CommandRegistry, CommandRunner
from server.stats import ActivityTracker

logger = logging.getLogger("botdash.bot")


def _short(token: str) -> str:
    return (token or "")[:10] + "..."


def build_activity(activity: Optional[dict]) -> Optional[discord.BaseActivity]:
    """Turns an {name, type, url} dict from the dashboard into a py-cord activity."""
    if not activity or not activity.get("name"):
        return None
    kind = str(activity.get("type") or "playing").lower()
    if kind == "streaming" and activity.get("url"):
        return discord.Streaming(name=activity["name"], url=activity["url"])
    type_id = ACTIVITY_TYPES.get(kind, ACTIVITY_TYPES["playing"])
    if type_id == ACTIVITY_TYPES["streaming"]:
        type_id = ACTIVITY_TYPES["playing"]
    return discord.Activity(type=discord.ActivityType(type_id), name=activity["name"])


def _status(value: Optional[str]) -> discord.Status:
    value = (value or "online").lower()
    if value not in PRESENCE_STATUSES:
        value = "online"
    return discord.Status(value)


class BotSession:
    """One logged-in gateway client plus the event handlers that feed tracking."""

    def __init__(
        self,
        token: str,
        tracker: ActivityTracker,
        runner: CommandRunner,
        *,
        bot_factory: Optional[Callable[[], discord.Bot]] = None,
    ):
        self.token = token
        self.tracker = tracker
        self.runner = runner
        self.bot = (bot_factory or (lambda: discord.Bot(intents=discord.Intents.all())))()
        self._connect_task: Optional[asyncio.Task] = None

        self.bot.event(self.on_ready)
        self.bot.event(self.on_message)
        self.bot.event(self.on_presence_update)
        self.bot.event(self.on_raw_reaction_add)
        self.bot.event(self.on_raw_reaction_remove)
        self.bot.event(self.on_member_remove)

    @property
    def ready(self) -> bool:
        return self.bot.is_ready() and not self.bot.is_closed()

    @property
    def user(self):
        return self.bot.user

    async def start(self, timeout: float) -> None:
        await self.bot.login(self.token)
        self._connect_task = asyncio.create_task(
            self.bot.connect(reconnect=True), name=f"gateway-{_short(self.token)}"
        )
        waiter = asyncio.create_task(self.bot.wait_until_ready())
        done, _ = await asyncio.wait(
            {waiter, self._connect_task},
            timeout=timeout,
            return_when=asyncio.FIRST_COMPLETED,
        )
        if waiter not in done:
            waiter.cancel()
            if self._connect_task in done and self._connect_task.exception():
                raise self._connect_task.exception()
            raise asyncio.TimeoutError("Login timeout")

    async def close(self) -> None:
        with contextlib.suppress(Exception):
            await self.bot.close()
        task = self._connect_task
        if task is not None and not task.done():
            task.cancel()
            with contextlib.suppress(asyncio.CancelledError, Exception):
                await task

    def guilds(self) -> List[dict]:
        return [
            {
                "id": str(g.id),
                "name": g.name,
                "icon": g.icon.key if g.icon else None,
                "member_count": g.member_count,
            }
            for g in self.bot.guilds
        ]

    # ---------- gateway events ----------
    async def on_ready(self):
        logger.info(
            "[🤖] Bot %s is online in %d servers", self.bot.user, len(self.bot.guilds)
        )

    async def on_message(self, message: discord.Message):
        if message.author.bot:
            return
        if message.guild is not None:
            self.tracker.record_message(
                str(message.guild.id), str(message.author.id), str(message.channel.id)
            )
        try:
            await self.runner.handle(message)
        except Exception:
            logger.exception("[⛔] Error handling message command")

    async def on_presence_update(self, before: discord.Member, after: discord.Member):
        activities = [
            {"name": a.name, "type": getattr(a.type, "name", str(a.type))}
            for a in (after.activities or [])
        ]
        self.tracker.record_presence(str(after.id), str(after.status), activities)

    async def on_raw_reaction_add(self, payload: discord.RawReactionActionEvent):
        if payload.member is not None and payload.member.bot:
            return
        if payload.guild_id:
            self.tracker.record_reaction(str(payload.guild_id), str(payload.user_id), True)

    async def on_raw_reaction_remove(self, payload: discord.RawReactionActionEvent):
        if payload.guild_id:
            self.tracker.record_reaction(str(payload.guild_id), str(payload.user_id), False)

    async def on_member_remove(self, member: discord.Member):
        self.tracker.record_leave(str(member.guild.id))

    # ---------- profile ----------
    async def set_presence(self, status: Optional[str] = "online", activity: Optional[dict] = None):
        await self.bot.change_presence(status=_status(status), activity=build_activity(activity))
        logger.info(
            "[🤖] Bot presence set to %s%s",
            status or "online",
            f" with activity: {activity['name']}" if activity and activity.get("name") else "",
        )

    async def update_username(self, username: str) -> None:
        await self.bot.user.edit(username=username)
        logger.info("[🤖] Bot username updated to: %s", username)


class BotManager:
    """
    Keeps one gateway session per bot token.

    `ensure` serialises logins per token; a session that is no longer
    ready is closed and replaced.
    """

    def __init__(
        self,
        config: Optional[Config] = None,
        *,
        tracker: Optional[ActivityTracker] = None,
        commands: Optional[CommandRegistry] = None,
        bot_factory: Optional[Callable[[], discord.Bot]] = None,
    ):
        self.config = config or Config()
        self.tracker = tracker or ActivityTracker()
        self.commands = commands or CommandRegistry()
        self.runner = CommandRunner(self.commands, self.tracker)
        self._bot_factory = bot_factory
        self._sessions: Dict[str, BotSession] = {}
        self._locks: Dict[str, asyncio.Lock] = {}

    def get(self, token: str) -> Optional[BotSession]:
        session = self._sessions.get(token)
        if session is not None and session.ready:
            return session
        return None

    async def ensure(self, token: str) -> BotSession:
        lock = self._locks.setdefault(token, asyncio.Lock())
        async with lock:
            existing = self._sessions.get(token)
            if existing is not None:
                if existing.ready:
                    return existing
                logger.info("[🔄] Existing client for %s not ready; replacing", _short(token))
                self._sessions.pop(token, None)
                await existing.close()

            session = BotSession(
                token, self.tracker, self.runner, bot_factory=self._bot_factory
            )
            logger.info("[🔄] Logging in bot %s", _short(token))
            try:
                await session.start(self.config.BOT_LOGIN_TIMEOUT)
            except BaseException:
                await session.close()
                raise
            self._sessions[token] = session
            logger.info("[✅] Bot client ready for token %s", _short(token))
            return session

    async def disconnect(self, token: str) -> bool:
        session = self._sessions.pop(token, None)
        self._locks.pop(token, None)
        if session is None:
            return False
        await session.close()
        logger.info("[🔌] Bot client disconnected for token %s", _short(token))
        return True

    def presence_of(self, user_id: str) -> Optional[dict]:
        return self.tracker.presence(user_id)

    async def close_all(self) -> None:
        for token in list(self._sessions):
            await self.disconnect(token)
