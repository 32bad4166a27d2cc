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
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Dict, List, Optional, Tuple

from server.recipients import RecipientResolver

logger = logging.getLogger("botdash.stats")

WEEKDAYS = ["Mon", "Tue", "Wed", "Thu", "Fri", "Sat", "Sun"]


def _now() -> datetime:
    return datetime.now(timezone.utc)


def _parse_ts(value) -> Optional[datetime]:
    if not value:
        return None
    try:
        ts = datetime.fromisoformat(str(value).replace("Z", "+00:00"))
    except ValueError:
        return None
    if ts.tzinfo is None:
        ts = ts.replace(tzinfo=timezone.utc)
    return ts


def avatar_url(user: dict) -> str:
    uid = user.get("id")
    if user.get("avatar"):
        return f"https://cdn.discordapp.com/avatars/{uid}/{user['avatar']}.png?size=64"
    try:
        idx = int(user.get("discriminator") or 0) % 5
    except (TypeError, ValueError):
        idx = 0
    return f"https://cdn.discordapp.com/embed/avatars/{idx}.png"


@dataclass
class UserActivity:
    messages: int = 0
    reactions: int = 0
    last_seen: datetime = field(default_factory=_now)

    def to_dict(self) -> dict:
        return {
            "messages": self.messages,
            "reactions": self.reactions,
            "lastSeen": self.last_seen.isoformat(),
        }


class ActivityTracker:
    """In-memory message/reaction/presence counters fed by gateway events."""

    def __init__(self):
        self._users: Dict[Tuple[str, str], UserActivity] = {}
        self._channels: Dict[Tuple[str, str], int] = {}
        self._presence: Dict[str, dict] = {}
        self._leaves: Dict[str, List[datetime]] = {}

    def _row(self, guild_id: str, user_id: str) -> UserActivity:
        key = (str(guild_id), str(user_id))
        row = self._users.get(key)
        if row is None:
            row = self._users[key] = UserActivity()
        return row

    def record_message(
        self, guild_id: str, user_id: str, channel_id: Optional[str] = None
    ) -> None:
        if not guild_id:
            return
        row = self._row(guild_id, user_id)
        row.messages += 1
        row.last_seen = _now()
        if channel_id:
            key = (str(guild_id), str(channel_id))
            self._channels[key] = self._channels.get(key, 0) + 1

    def record_reaction(self, guild_id: str, user_id: str, added: bool = True) -> None:
        if not guild_id:
            return
        row = self._row(guild_id, user_id)
        row.reactions = row.reactions + 1 if added else max(0, row.reactions - 1)
        row.last_seen = _now()

    def record_presence(self, user_id: str, status: str, activities: List[dict]) -> None:
        self._presence[str(user_id)] = {
            "status": status or "offline",
            "activities": activities or [],
            "lastSeen": _now().isoformat(),
        }

    def record_leave(self, guild_id: str, when: Optional[datetime] = None) -> None:
        self._leaves.setdefault(str(guild_id), []).append(when or _now())

    def user(self, guild_id: str, user_id: str) -> UserActivity:
        return self._users.get((str(guild_id), str(user_id))) or UserActivity()

    def presence(self, user_id: str) -> Optional[dict]:
        return self._presence.get(str(user_id))

    def channel_messages(self, guild_id: str, channel_id: str) -> int:
        return self._channels.get((str(guild_id), str(channel_id)), 0)

    def leaves_since(self, guild_id: str, since: datetime) -> List[datetime]:
        return [t for t in self._leaves.get(str(guild_id), []) if t >= since]

    def top_users(self, guild_id: str, metric: str, limit: int = 10) -> List[Tuple[str, int]]:
        rows = [
            (uid, getattr(act, metric))
            for (gid, uid), act in self._users.items()
            if gid == str(guild_id) and getattr(act, metric) > 0
        ]
        rows.sort(key=lambda r: r[1], reverse=True)
        return rows[:limit]


def weekday_histogram(stamps: List[datetime], now: datetime) -> List[int]:
    """Counts per weekday (Mon..Sun) for stamps within the last 7 days."""
    counts = [0] * 7
    since = now - timedelta(days=7)
    for ts in stamps:
        if ts and since <= ts <= now:
            counts[ts.weekday()] += 1
    return counts


async def build_server_stats(
    rest,
    resolver: RecipientResolver,
    tracker: ActivityTracker,
    guild_id: str,
    *,
    now: Optional[datetime] = None,
) -> dict:
    now = now or _now()
    guild = await rest.get_guild(guild_id, with_counts=True)
    members = await resolver.fetch_members(guild_id)

    extras: Dict[str, List[dict]] = {}
    for name, fetch in (
        ("channels", rest.list_channels),
        ("roles", rest.list_roles),
        ("emojis", rest.list_emojis),
    ):
        try:
            extras[name] = list(await fetch(guild_id) or [])
        except Exception as e:
            logger.warning("[⚠️] Could not fetch %s of guild %s: %s", name, guild_id, e)
            extras[name] = []
    channels, roles, emojis = extras["channels"], extras["roles"], extras["emojis"]

    member_count = len(members)
    bot_count = sum(1 for m in members if (m.get("user") or {}).get("bot"))
    human_count = member_count - bot_count

    joins = [_parse_ts(m.get("joined_at")) for m in members]
    week_ago = now - timedelta(days=7)
    recent_joins = sum(1 for j in joins if j and j >= week_ago)
    leaves = tracker.leaves_since(guild_id, week_ago)

    by_id = {str((m.get("user") or {}).get("id")): m.get("user") or {} for m in members}

    def _top(metric: str) -> List[dict]:
        out = []
        for rank, (uid, value) in enumerate(tracker.top_users(guild_id, metric), start=1):
            user = by_id.get(uid, {"id": uid})
            out.append(
                {
                    "name": user.get("username") or uid,
                    "avatar": avatar_url(user),
                    "rank": rank,
                    metric: value,
                }
            )
        return out

    text_channels = [c for c in channels if c.get("type") == 0][:5]
    growth = round((recent_joins / member_count) * 100, 1) if member_count else 0.0

    stats = {
        "serverInfo": {
            "name": guild.get("name"),
            "id": guild.get("id"),
            "memberCount": member_count,
            "humanCount": human_count,
            "botCount": bot_count,
            "channelCount": len(channels),
            "roleCount": len(roles),
            "emojiCount": len(emojis),
            "owner": guild.get("owner_id"),
            "boostLevel": guild.get("premium_tier") or 0,
            "boostCount": guild.get("premium_subscription_count") or 0,
            "approximatePresenceCount": guild.get("approximate_presence_count"),
        },
        "memberActivity": {
            "labels": WEEKDAYS,
            "joins": weekday_histogram([j for j in joins if j], now),
            "leaves": weekday_histogram(leaves, now),
        },
        "topUsers": {
            "messages": _top("messages"),
            "reactions": _top("reactions"),
        },
        "channelActivity": {
            "labels": [f"#{c.get('name')}" for c in text_channels],
            "data": [tracker.channel_messages(guild_id, c.get("id")) for c in text_channels],
        },
        "serverGrowth": {
            "currentMembers": member_count,
            "recentJoins": recent_joins,
            "recentLeaves": len(leaves),
            "growthRate": growth,
        },
        "serverHealth": {
            "activity": min(100, round((recent_joins / member_count) * 1000)) if member_count else 0,
            "engagement": min(
                100,
                round(
                    sum(a for _, a in tracker.top_users(guild_id, "messages", limit=1000))
                    / member_count
                    * 10
                ),
            )
            if member_count
            else 0,
        },
    }
    logger.info(
        "[📊] Stats for %s: %d members, %d channels",
        guild.get("name"), member_count, len(channels),
        extra={"guild_id": guild_id},
    )
    return stats


DISCORD_EPOCH_MS = 1420070400000


def snowflake_time(snowflake) -> Optional[datetime]:
    try:
        ms = (int(snowflake) >> 22) + DISCORD_EPOCH_MS
    except (TypeError, ValueError):
        return None
    return datetime.fromtimestamp(ms / 1000, tz=timezone.utc)


async def user_info(rest, tracker: ActivityTracker, guild_id: str, user_id: str) -> dict:
    user = await rest.get_user(user_id)
    try:
        member = await rest.get_member(guild_id, user_id)
    except Exception as e:
        logger.debug("Member %s of %s not readable: %s", user_id, guild_id, e)
        member = None

    created = snowflake_time(user.get("id"))
    presence = tracker.presence(user_id) or {}
    return {
        "id": user.get("id"),
        "username": user.get("username"),
        "discriminator": user.get("discriminator"),
        "avatar": user.get("avatar"),
        "bot": bool(user.get("bot")),
        "created": created.isoformat() if created else None,
        "joinDate": (member or {}).get("joined_at"),
        "roles": (member or {}).get("roles") or [],
        "status": presence.get("status", "offline"),
        "activity": tracker.user(guild_id, user_id).to_dict(),
    }
