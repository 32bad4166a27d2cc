# =============================================================================
#  botdash
#  Copyright (C) 2025 botdash contributors
#
#  This source code is released under the GNU Affero General Public License
#  version 3.0. A copy of the license is available at:
#  https://www.gnu.org/licenses/agpl-3.0.en.html
# =============================================================================

from __future__ import annotations

import logging
import math
import time
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Dict, List, Optional, Tuple

import discord

from common.constants import COMMAND_TYPES, DEFAULT_COMMAND_COOLDOWN, VOICE_CHANNEL_TYPE
from server.stats import ActivityTracker

logger = logging.getLogger("botdash.commands")


class CommandError(Exception):
    def __init__(self, message: str, status: int = 400):
        super().__init__(message)
        self.message = message
        self.status = status


def _iso_now() -> str:
    return datetime.now(timezone.utc).isoformat()


@dataclass
class TextCommand:
    guild_id: str
    trigger: str
    type: str
    response: Optional[str] = None
    cooldown: int = DEFAULT_COMMAND_COOLDOWN
    id: str = field(default_factory=lambda: f"cmd_{uuid.uuid4().hex[:12]}")
    created_at: str = field(default_factory=_iso_now)
    updated_at: Optional[str] = None

    def matches(self, content: str) -> bool:
        text = (content or "").strip().lower()
        trig = self.trigger.lower()
        return text == trig or text.startswith(trig + " ")

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "guildId": self.guild_id,
            "trigger": self.trigger,
            "type": self.type,
            "response": self.response,
            "cooldown": self.cooldown,
            "createdAt": self.created_at,
            "updatedAt": self.updated_at,
        }


def _cooldown(value, fallback: int = DEFAULT_COMMAND_COOLDOWN) -> int:
    try:
        n = int(value)
    except (TypeError, ValueError):
        return fallback
    return n if n >= 0 else fallback


class CommandRegistry:
    """In-memory per-guild text commands with per-user cooldowns."""

    def __init__(self, clock=time.monotonic):
        self._commands: Dict[str, TextCommand] = {}
        self._last_used: Dict[Tuple[str, str, str], float] = {}
        self._clock = clock

    def for_guild(self, guild_id: str) -> List[TextCommand]:
        return [c for c in self._commands.values() if c.guild_id == str(guild_id)]

    def get(self, command_id: str) -> TextCommand:
        cmd = self._commands.get(command_id)
        if cmd is None:
            raise CommandError("Command not found", status=404)
        return cmd

    def _check_trigger(self, guild_id: str, trigger: str, skip: Optional[str] = None) -> None:
        for c in self.for_guild(guild_id):
            if c.id != skip and c.trigger.lower() == trigger.lower():
                raise CommandError("Command with this trigger already exists")

    def create(
        self,
        guild_id: str,
        trigger: str,
        type: str,
        response: Optional[str] = None,
        cooldown=None,
    ) -> TextCommand:
        trigger = (trigger or "").strip()
        if not trigger or not type or not guild_id:
            raise CommandError("Trigger, type, and guild ID are required")
        if type not in COMMAND_TYPES:
            raise CommandError(f"Unknown command type: {type}")
        self._check_trigger(str(guild_id), trigger)

        cmd = TextCommand(
            guild_id=str(guild_id),
            trigger=trigger,
            type=type,
            response=response if type == "custom" else None,
            cooldown=_cooldown(cooldown),
        )
        self._commands[cmd.id] = cmd
        logger.info("[⚙️] Created command %r (%s) in guild %s", cmd.trigger, cmd.type, cmd.guild_id)
        return cmd

    def update(
        self,
        command_id: str,
        *,
        trigger: Optional[str] = None,
        type: Optional[str] = None,
        response: Optional[str] = None,
        cooldown=None,
    ) -> TextCommand:
        cmd = self.get(command_id)
        if type and type not in COMMAND_TYPES:
            raise CommandError(f"Unknown command type: {type}")
        trigger = (trigger or "").strip()
        if trigger:
            self._check_trigger(cmd.guild_id, trigger, skip=cmd.id)
            cmd.trigger = trigger
        cmd.type = type or cmd.type
        if cmd.type != "custom":
            cmd.response = None
        elif response is not None:
            cmd.response = response
        if cooldown is not None:
            cmd.cooldown = _cooldown(cooldown, cmd.cooldown)
        cmd.updated_at = _iso_now()
        logger.info("[⚙️] Updated command %s", cmd.id)
        return cmd

    def delete(self, command_id: str) -> None:
        cmd = self.get(command_id)
        del self._commands[cmd.id]
        logger.info("[🗑️] Deleted command %r from guild %s", cmd.trigger, cmd.guild_id)

    def match(self, guild_id: str, content: str) -> Optional[TextCommand]:
        for c in self.for_guild(guild_id):
            if c.matches(content):
                return c
        return None

    def cooldown_remaining(self, cmd: TextCommand, user_id: str) -> int:
        """Seconds left on cooldown (rounded up); 0 means usable and marks it used."""
        key = (cmd.guild_id, str(user_id), cmd.trigger)
        now = self._clock()
        last = self._last_used.get(key)
        if last is not None and now - last < cmd.cooldown:
            return max(1, math.ceil(cmd.cooldown - (now - last)))
        self._last_used[key] = now
        return 0


def stats_embed(target, member, tracker: ActivityTracker, guild_id: str) -> discord.Embed:
    act = tracker.user(guild_id, target.id)
    joined = getattr(member, "joined_at", None) if member else None
    days = (datetime.now(timezone.utc) - joined).days if joined else 0
    per_day = f"{act.messages / days:.2f}" if days > 0 else "0"

    e = discord.Embed(
        title=f"📊 User Statistics - {getattr(target, 'display_name', target.name)}",
        color=0x7289DA,
        timestamp=datetime.now(timezone.utc),
    )
    e.add_field(
        name="📈 Activity Stats",
        value=(
            f"💬 **Messages:** {act.messages}\n"
            f"❤️ **Reactions:** {act.reactions}\n"
            f"📅 **Messages/Day:** {per_day}"
        ),
        inline=True,
    )
    info = f"🆔 **ID:** {target.id}\n"
    created = getattr(target, "created_at", None)
    if created:
        info += f"📅 **Account Created:** {created.date().isoformat()}\n"
    info += f"📅 **Joined Server:** {joined.date().isoformat()}" if joined else "❌ **Not in server**"
    e.add_field(name="👤 User Info", value=info, inline=True)

    roles = [r.name for r in getattr(member, "roles", []) or [] if r.name != "@everyone"][:5]
    if roles:
        e.add_field(name="🎭 Roles", value=", ".join(roles), inline=False)
    return e


def active_summary(guild) -> Optional[str]:
    lines = []
    total = 0
    for ch in getattr(guild, "channels", []) or []:
        ctype = getattr(getattr(ch, "type", None), "value", getattr(ch, "type", None))
        members = list(getattr(ch, "members", []) or [])
        if ctype != VOICE_CHANNEL_TYPE or not members:
            continue
        total += len(members)
        names = ", ".join(getattr(m, "display_name", m.name) for m in members)
        lines.append(f"🔊 **{ch.name}** ({len(members)}): {names}")
    if not lines:
        return None
    return f"🎙️ **Voice activity** ({total} in {len(lines)} channels)\n" + "\n".join(lines)


class CommandRunner:
    """Executes a matched TextCommand in reply to a gateway message."""

    def __init__(self, registry: CommandRegistry, tracker: ActivityTracker):
        self.registry = registry
        self.tracker = tracker

    async def handle(self, message) -> Optional[TextCommand]:
        if message.author.bot or message.guild is None:
            return None
        guild_id = str(message.guild.id)
        cmd = self.registry.match(guild_id, message.content)
        if cmd is None:
            return None

        remaining = self.registry.cooldown_remaining(cmd, str(message.author.id))
        if remaining:
            await message.reply(f"⏰ Command is on cooldown. Try again in {remaining} seconds.")
            return cmd

        try:
            if cmd.type == "custom":
                await message.reply(cmd.response or "")
            elif cmd.type == "stats":
                mentions = list(getattr(message, "mentions", []) or [])
                target = mentions[0] if mentions else message.author
                member = message.guild.get_member(target.id)
                await message.reply(embed=stats_embed(target, member, self.tracker, guild_id))
            elif cmd.type == "active":
                text = active_summary(message.guild)
                await message.reply(text or "No one is currently in any voice channels.")
        except discord.HTTPException:
            logger.exception("[⛔] Command %r failed in guild %s", cmd.trigger, guild_id)
            await message.reply("❌ An error occurred while executing the command.")
            return cmd

        logger.info(
            "[⚡] Command %r executed by %s in guild %s", cmd.trigger, message.author.id, guild_id
        )
        return cmd
