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
import logging
from enum import Enum
from typing import Iterable, List, Optional

logger = logging.getLogger("botdash.recipients")


class RecipientScope(str, Enum):
    ALL = "all"
    CUSTOM = "custom"


class RecipientResolutionError(Exception):
    """Membership pagination failed; no partial list is returned."""


def _member_user(member: dict) -> dict:
    return (member or {}).get("user") or {}


def normalize_custom_recipients(items: Iterable) -> List[str]:
    """
    Accepts plain ids or {"id": ...} objects, keeps order, drops blanks.
    """
    out: List[str] = []
    for it in items or []:
        if isinstance(it, dict):
            it = it.get("id")
        if it is None:
            continue
        s = str(it).strip()
        if s:
            out.append(s)
    return out


class RecipientResolver:
    """
    Turns a recipient scope into the ordered list of user ids a job will DM.

    The guild walk uses the members endpoint's `after` cursor: a full page
    means "continue from the last member id", a short page ends the walk.
    `max_pages` caps the number of requests in case the API misbehaves.
    """

    def __init__(
        self,
        rest,
        *,
        page_limit: int = 1000,
        max_pages: int = 50,
        page_delay: float = 0.1,
    ):
        self.rest = rest
        self.page_limit = max(1, min(1000, int(page_limit)))
        self.max_pages = max(1, int(max_pages))
        self.page_delay = max(0.0, float(page_delay))

    async def fetch_members(
        self, guild_id: str, *, max_pages: Optional[int] = None
    ) -> List[dict]:
        """
        Every member record of a guild, in API order.
        Raises RecipientResolutionError if any page fails.
        """
        cap = self.max_pages if max_pages is None else max(1, int(max_pages))
        members: List[dict] = []
        after: Optional[str] = None
        pages = 0

        logger.info("Fetching members of guild %s", guild_id, extra={"guild_id": guild_id})
        while pages < cap:
            try:
                page = await self.rest.list_members(
                    guild_id, limit=self.page_limit, after=after
                )
            except Exception as e:
                logger.warning(
                    "[⚠️] Member page %d failed for guild %s: %s", pages + 1, guild_id, e
                )
                raise RecipientResolutionError(
                    f"Failed to fetch members of guild {guild_id}: {e}"
                ) from e
            pages += 1
            page = list(page or [])
            members.extend(page)
            logger.debug(
                "Fetched %d members in page %d. Total so far: %d",
                len(page), pages, len(members),
            )

            if len(page) < self.page_limit:
                break
            after = _member_user(page[-1]).get("id")
            if not after:
                break
            if self.page_delay:
                await asyncio.sleep(self.page_delay)
        else:
            logger.warning(
                "[⚠️] Stopped member walk for guild %s after %d pages", guild_id, cap
            )

        logger.info(
            "Finished fetching guild %s: %d members in %d pages",
            guild_id, len(members), pages,
        )
        return members

    async def resolve(
        self,
        scope: RecipientScope | str,
        *,
        guild_id: Optional[str] = None,
        explicit: Optional[Iterable] = None,
    ) -> List[str]:
        scope = RecipientScope(scope)
        if scope is RecipientScope.CUSTOM:
            return normalize_custom_recipients(explicit)

        if not guild_id:
            raise RecipientResolutionError("Guild ID required for \"all\" recipients")
        members = await self.fetch_members(guild_id)
        return [
            str(_member_user(m)["id"])
            for m in members
            if _member_user(m).get("id") and not _member_user(m).get("bot")
        ]

    async def count_humans(self, guild_id: str) -> int:
        members = await self.fetch_members(guild_id)
        return sum(1 for m in members if not _member_user(m).get("bot"))


def summarize_member(member: dict) -> dict:
    user = _member_user(member)
    return {
        "id": user.get("id"),
        "username": user.get("username"),
        "discriminator": user.get("discriminator"),
        "avatar": user.get("avatar"),
        "bot": bool(user.get("bot")),
        "joined_at": member.get("joined_at"),
    }


class UserNotFound(Exception):
    pass


async def _find_by_username(
    rest, resolver: RecipientResolver, query: str, guild_ids: List[str], pages_per_guild: int
) -> Optional[dict]:
    wanted = query.lower()
    for gid in guild_ids:
        try:
            members = await resolver.fetch_members(gid, max_pages=pages_per_guild)
        except RecipientResolutionError as e:
            logger.debug("Skipping guild %s in username search: %s", gid, e)
            continue
        for m in members:
            user = _member_user(m)
            if str(user.get("username") or "").lower() == wanted:
                return dict(user)
    return None


async def search_user(
    rest,
    resolver: RecipientResolver,
    *,
    method: str,
    query: str,
    guild_id: Optional[str] = None,
    presence: Optional[dict] = None,
    pages_per_guild: int = 20,
) -> dict:
    """
    Finds a user by id or by exact (case-insensitive) username, then merges
    guild membership details and the last seen presence.
    """
    user: Optional[dict] = None
    if method == "id":
        try:
            user = await rest.get_user(query)
        except Exception as e:
            logger.debug("User lookup %s failed: %s", query, e)
            user = None
    elif method == "username":
        if guild_id:
            guild_ids = [str(guild_id)]
        else:
            guild_ids = [str(g.get("id")) for g in await rest.get_my_guilds()]
        user = await _find_by_username(rest, resolver, query, guild_ids, pages_per_guild)

    if not user:
        raise UserNotFound(query)

    if guild_id:
        try:
            member = await rest.get_member(guild_id, user["id"])
        except Exception as e:
            logger.debug("Member %s not readable in %s: %s", user.get("id"), guild_id, e)
            member = None
        if member:
            user["joined_at"] = member.get("joined_at")
            user["nick"] = member.get("nick")
            user["premium_since"] = member.get("premium_since")
            role_ids = member.get("roles") or []
            names: dict = {}
            if role_ids:
                try:
                    names = {str(r.get("id")): r.get("name") for r in await rest.list_roles(guild_id)}
                except Exception:
                    names = {}
            user["roles"] = [
                {"id": rid, "name": names.get(str(rid), "Unknown Role")} for rid in role_ids
            ]

    if presence:
        user["status"] = presence.get("status")
        user["activities"] = presence.get("activities")
        user["lastSeen"] = presence.get("lastSeen")
    else:
        user["status"] = "offline"
    return user
