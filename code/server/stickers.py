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
from typing import List, Optional, Tuple

from common.constants import (
    STICKER_CDN_BASE,
    STICKER_FORMATS,
    STICKER_MAX_BYTES,
    STICKER_SLOTS_BY_TIER,
)
from common.discord_rest import DiscordAPIError

logger = logging.getLogger("botdash.stickers")


class StickerError(Exception):
    """Rejected sticker input; rendered as a 400 by the HTTP layer."""


def sticker_url(sticker: dict) -> str:
    ext = STICKER_FORMATS.get(int(sticker.get("format_type") or 1), ("png", ""))[0]
    return f"{STICKER_CDN_BASE}/{sticker.get('id')}.{ext}"


def sniff_format(raw: bytes) -> Tuple[str, str]:
    """
    Returns (extension, content type) for an uploaded sticker file.
    APNG is sent as png; Discord tells the two apart itself.
    """
    head = raw[:16]
    if head.startswith(b"\x89PNG\r\n\x1a\n"):
        return "png", "image/png"
    if head.startswith(b"GIF87a") or head.startswith(b"GIF89a"):
        return "gif", "image/gif"
    if head.lstrip()[:1] == b"{":
        return "json", "application/json"
    raise StickerError("Unsupported sticker format (use PNG, APNG, GIF or Lottie JSON)")


def validate_name(name: Optional[str]) -> str:
    name = (name or "").strip()
    if not name:
        raise StickerError("Sticker name is required")
    if not 2 <= len(name) <= 30:
        raise StickerError("Sticker name must be between 2 and 30 characters")
    return name


class StickerManager:
    def __init__(self, rest):
        self.rest = rest

    async def slots(self, guild_id: str) -> int:
        try:
            guild = await self.rest.get_guild(guild_id)
        except DiscordAPIError as e:
            logger.debug("Could not read premium tier of %s: %s", guild_id, e)
            return STICKER_SLOTS_BY_TIER[0]
        tier = int((guild or {}).get("premium_tier") or 0)
        return STICKER_SLOTS_BY_TIER.get(tier, STICKER_SLOTS_BY_TIER[0])

    async def list(self, guild_id: str) -> dict:
        try:
            stickers: List[dict] = list(await self.rest.list_stickers(guild_id) or [])
        except Exception as e:
            logger.warning("[⚠️] Failed to get stickers of guild %s: %s", guild_id, e)
            stickers = []

        total = await self.slots(guild_id)
        for s in stickers:
            s.setdefault("url", sticker_url(s))
        return {
            "stickers": stickers,
            "stats": {
                "total": total,
                "used": len(stickers),
                "available": max(0, total - len(stickers)),
            },
        }

    async def upload_file(
        self,
        guild_id: str,
        *,
        name: str,
        description: str = "",
        tags: Optional[str] = None,
        raw: bytes,
    ) -> dict:
        name = validate_name(name)
        if not raw:
            raise StickerError("No file provided")
        if len(raw) > STICKER_MAX_BYTES:
            raise StickerError("Sticker file too large (must be under 512KB)")
        ext, content_type = sniff_format(raw)

        try:
            created = await self.rest.create_sticker(
                guild_id,
                name=name,
                description=(description or "")[:100],
                tags=(tags or name)[:200],
                filename=f"{name}.{ext}",
                content_type=content_type,
                raw=raw,
            )
        except DiscordAPIError as e:
            logger.warning("[⛔] Failed uploading sticker %s to %s: %s", name, guild_id, e)
            raise StickerError(f"Failed to upload sticker: {e.message}") from e

        logger.info("[🎟️] Uploaded sticker %s to guild %s", name, guild_id)
        return created

    async def clone(
        self,
        guild_id: str,
        sticker_id: str,
        *,
        name: str,
        description: Optional[str] = None,
    ) -> dict:
        name = validate_name(name)
        if not sticker_id:
            raise StickerError("Sticker ID is required")
        try:
            original = await self.rest.get_sticker(sticker_id)
        except DiscordAPIError as e:
            if e.status == 404:
                raise StickerError("Sticker not found. Make sure the sticker ID is correct.") from e
            raise StickerError(
                "Sticker not accessible. The sticker might be from a different server."
            ) from e

        if not isinstance(original, dict) or not original.get("id"):
            raise StickerError("Invalid sticker data received from Discord")

        url = sticker_url(original)
        try:
            raw = await self.rest.download(url)
        except Exception as e:
            logger.warning("[⚠️] Failed fetching sticker %s at %s: %s", sticker_id, url, e)
            raise StickerError("Could not download the sticker with that ID") from e

        if description is None:
            description = original.get("description") or ""
        return await self.upload_file(
            guild_id,
            name=name,
            description=description,
            tags=original.get("tags") or name,
            raw=raw,
        )

    async def delete(self, guild_id: str, sticker_id: str) -> None:
        if not sticker_id:
            raise StickerError("Sticker ID is required")
        try:
            await self.rest.delete_sticker(guild_id, sticker_id)
        except DiscordAPIError as e:
            logger.warning("[⛔] Error deleting sticker %s: %s", sticker_id, e)
            raise StickerError(f"Failed to delete sticker: {e.message}") from e
        logger.info("[🎟️] Deleted sticker %s from guild %s", sticker_id, guild_id)
