# =============================================================================
#  botdash
#  Copyright (C) 2025 botdash contributors
#
#  This source code is released under the GNU Affero General Public License
#  version 3.0. A copy of the license is available at:
#  https://www.gnu.org/licenses/agpl-3.0.en.html
# =============================================================================

from __future__ import annotations

import contextlib
import json
import logging
import time
from typing import Any, Dict, List, Optional

import aiohttp

from common.config import Config
from common.rate_limiter import RateLimitManager, ActionType

logger = logging.getLogger("botdash.rest")


class DiscordAPIError(Exception):
    """Non-2xx response from the Discord REST API."""

    def __init__(
        self,
        status: int,
        message: str = "",
        *,
        code: Optional[int] = None,
        retry_after: Optional[float] = None,
    ):
        self.status = int(status)
        self.message = message or f"Discord API error: {status}"
        self.code = code
        self.retry_after = retry_after
        super().__init__(self.message)


def _short(token: str) -> str:
    return (token or "")[:10] + "..."


class DiscordRest:
    """
    Thin bot-token REST client. Every call either returns decoded JSON
    (or None for 204) or raises DiscordAPIError.
    """

    def __init__(
        self,
        session: aiohttp.ClientSession,
        token: str,
        *,
        api_base: str = "https://discord.com/api/v10",
        ratelimit: Optional[RateLimitManager] = None,
        timeout: float = 15.0,
    ):
        self.session = session
        self.token = token
        self.api_base = api_base.rstrip("/")
        self.ratelimit = ratelimit or RateLimitManager()
        self.timeout = aiohttp.ClientTimeout(total=timeout)

    def _headers(self, *, json_body: bool = True) -> Dict[str, str]:
        h = {"Authorization": f"Bot {self.token}"}
        if json_body:
            h["Content-Type"] = "application/json"
        return h

    async def _request(
        self,
        method: str,
        path: str,
        *,
        action: Optional[ActionType] = None,
        params: Optional[dict] = None,
        payload: Any = None,
        data: Optional[aiohttp.FormData] = None,
    ) -> Any:
        if action is not None:
            await self.ratelimit.acquire(action)

        url = f"{self.api_base}{path}"
        kwargs: Dict[str, Any] = {
            "headers": self._headers(json_body=data is None),
            "timeout": self.timeout,
        }
        if params:
            kwargs["params"] = params
        if data is not None:
            kwargs["data"] = data
        elif payload is not None:
            kwargs["json"] = payload

        t0 = time.monotonic()
        async with self.session.request(method, url, **kwargs) as resp:
            took_ms = (time.monotonic() - t0) * 1000
            logger.debug(
                "%s %s -> %s (%.1fms)", method, path, resp.status, took_ms,
                extra={"took_ms": round(took_ms, 1)},
            )
            if resp.status == 204:
                return None
            text = await resp.text()
            body: Any = None
            if text:
                with contextlib.suppress(ValueError):
                    body = json.loads(text)

            if 200 <= resp.status < 300:
                return body

            message = ""
            code = None
            retry_after = None
            if isinstance(body, dict):
                message = str(body.get("message") or "")
                code = body.get("code")
                retry_after = body.get("retry_after")
            if resp.status == 429:
                try:
                    retry_after = float(
                        retry_after or resp.headers.get("Retry-After") or 1.0
                    )
                except (TypeError, ValueError):
                    retry_after = 1.0
                if isinstance(body, dict) and body.get("global"):
                    self.ratelimit.penalize_all(retry_after)
                elif action is not None:
                    self.ratelimit.penalize(action, retry_after)
                logger.warning(
                    "[⏳] Rate limited on %s %s; cooling down %.2fs",
                    method, path, retry_after,
                )
            raise DiscordAPIError(
                resp.status,
                f"Discord API error: {resp.status}" + (f" ({message})" if message else ""),
                code=code,
                retry_after=retry_after,
            )

    # ---------- identity ----------
    async def get_me(self) -> dict:
        return await self._request("GET", "/users/@me")

    async def get_my_guilds(self) -> List[dict]:
        return await self._request("GET", "/users/@me/guilds") or []

    async def modify_me(self, **fields) -> dict:
        body = {k: v for k, v in fields.items() if v is not None}
        return await self._request(
            "PATCH", "/users/@me", action=ActionType.PROFILE, payload=body
        )

    # ---------- guilds ----------
    async def get_guild(self, guild_id: str, *, with_counts: bool = False) -> dict:
        params = {"with_counts": "true"} if with_counts else None
        return await self._request("GET", f"/guilds/{guild_id}", params=params)

    async def list_members(
        self, guild_id: str, *, limit: int = 1000, after: Optional[str] = None
    ) -> List[dict]:
        params = {"limit": str(limit)}
        if after:
            params["after"] = str(after)
        return (
            await self._request(
                "GET",
                f"/guilds/{guild_id}/members",
                action=ActionType.MEMBER_PAGE,
                params=params,
            )
            or []
        )

    async def get_member(self, guild_id: str, user_id: str) -> dict:
        return await self._request("GET", f"/guilds/{guild_id}/members/{user_id}")

    async def list_channels(self, guild_id: str) -> List[dict]:
        return await self._request("GET", f"/guilds/{guild_id}/channels") or []

    async def list_roles(self, guild_id: str) -> List[dict]:
        return await self._request("GET", f"/guilds/{guild_id}/roles") or []

    async def list_emojis(self, guild_id: str) -> List[dict]:
        return await self._request("GET", f"/guilds/{guild_id}/emojis") or []

    # ---------- users / DMs ----------
    async def get_user(self, user_id: str) -> dict:
        return await self._request("GET", f"/users/{user_id}")

    async def create_dm(self, recipient_id: str) -> dict:
        return await self._request(
            "POST",
            "/users/@me/channels",
            action=ActionType.DM_CHANNEL,
            payload={"recipient_id": str(recipient_id)},
        )

    async def send_message(self, channel_id: str, content: str) -> dict:
        return await self._request(
            "POST",
            f"/channels/{channel_id}/messages",
            action=ActionType.DM_MESSAGE,
            payload={"content": content},
        )

    # ---------- stickers ----------
    async def list_stickers(self, guild_id: str) -> List[dict]:
        return await self._request("GET", f"/guilds/{guild_id}/stickers") or []

    async def get_sticker(self, sticker_id: str) -> dict:
        return await self._request("GET", f"/stickers/{sticker_id}")

    async def create_sticker(
        self,
        guild_id: str,
        *,
        name: str,
        description: str,
        tags: str,
        filename: str,
        content_type: str,
        raw: bytes,
    ) -> dict:
        form = aiohttp.FormData()
        form.add_field("name", name)
        form.add_field("description", description)
        form.add_field("tags", tags)
        form.add_field("file", raw, filename=filename, content_type=content_type)
        return await self._request(
            "POST", f"/guilds/{guild_id}/stickers", action=ActionType.STICKER, data=form
        )

    async def delete_sticker(self, guild_id: str, sticker_id: str) -> None:
        await self._request(
            "DELETE",
            f"/guilds/{guild_id}/stickers/{sticker_id}",
            action=ActionType.STICKER,
        )

    async def download(self, url: str) -> bytes:
        """Fetch a CDN asset (no auth header)."""
        async with self.session.get(url, timeout=self.timeout) as resp:
            if resp.status != 200:
                raise DiscordAPIError(resp.status, f"Download failed: {resp.status}")
            return await resp.read()


class RestPool:
    """
    One DiscordRest per bot token, sharing a single aiohttp session.
    """

    def __init__(self, config: Config):
        self.config = config
        self._session: Optional[aiohttp.ClientSession] = None
        self._clients: Dict[str, DiscordRest] = {}

    async def start(self) -> None:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession(trust_env=True)
            logger.debug("RestPool session opened")

    async def close(self) -> None:
        self._clients.clear()
        if self._session is not None and not self._session.closed:
            await self._session.close()
            logger.debug("RestPool session closed")
        self._session = None

    def get(self, token: str) -> DiscordRest:
        client = self._clients.get(token)
        if client is not None:
            return client
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession(trust_env=True)
        client = DiscordRest(
            self._session,
            token,
            api_base=self.config.DISCORD_API_BASE,
            timeout=self.config.HTTP_TIMEOUT_SECONDS,
        )
        self._clients[token] = client
        logger.debug("RestPool new client for token=%s", _short(token))
        return client

    def forget(self, token: str) -> None:
        self._clients.pop(token, None)
