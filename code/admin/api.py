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
import math
from datetime import datetime, timezone
from typing import Optional

from fastapi import APIRouter, Body, Depends, File, Form, Request, UploadFile

from admin.logging_setup import forget_secret, register_secret
from common.discord_rest import DiscordAPIError
from server.commands import CommandError
from server.dispatch import DmJob
from server.recipients import (
    RecipientResolver,
    RecipientScope,
    UserNotFound,
    normalize_custom_recipients,
    search_user,
    summarize_member,
)
from server.stats import build_server_stats, user_info
from server.stickers import StickerError, StickerManager

logger = logging.getLogger("botdash.api")

router = APIRouter()


class ApiError(Exception):
    """Rendered as {"error": message} with the given status."""

    def __init__(self, status: int, message: str):
        super().__init__(message)
        self.status = status
        self.message = message


def bot_token(request: Request) -> str:
    raw = request.headers.get("Authorization") or ""
    token = raw[len("Bearer "):] if raw.startswith("Bearer ") else raw
    token = token.strip()
    if not token:
        raise ApiError(401, "Bot token required")
    register_secret(token)
    return token


def _rest(request: Request, token: str):
    return request.app.state.rest_pool.get(token)


def _resolver(request: Request, rest) -> RecipientResolver:
    cfg = request.app.state.config
    return RecipientResolver(
        rest,
        page_limit=cfg.MEMBER_PAGE_LIMIT,
        max_pages=cfg.MEMBER_MAX_PAGES,
        page_delay=cfg.MEMBER_PAGE_DELAY,
    )


def _require(payload: dict, key: str, message: str):
    value = payload.get(key)
    if value is None or (isinstance(value, str) and not value.strip()):
        raise ApiError(400, message)
    return value


def _non_negative(payload: dict, keys, default: float, label: str) -> float:
    for key in keys:
        if key in payload and payload[key] not in (None, ""):
            try:
                value = float(payload[key])
            except (TypeError, ValueError):
                raise ApiError(400, f"{label} must be a number")
            if not math.isfinite(value):
                raise ApiError(400, f"{label} must be a finite number")
            if value < 0:
                raise ApiError(400, f"{label} must not be negative")
            return value
    return default


def _bot_summary(session) -> dict:
    user = session.user
    return {
        "id": str(user.id),
        "username": user.name,
        "discriminator": user.discriminator,
        "avatar": user.avatar.key if user.avatar else None,
        "bot": user.bot,
        "verified": True,
        "guilds": len(session.bot.guilds),
        "readyAt": datetime.now(timezone.utc).isoformat(),
    }


async def _session_or_none(request: Request, token: str):
    bots = request.app.state.bots
    session = bots.get(token)
    if session is not None:
        return session
    try:
        return await bots.ensure(token)
    except Exception as e:
        logger.warning("[⚠️] Bot client unavailable for gateway lookups: %s", e)
        return None


# ---------- auth / bot ----------
@router.post("/api/verify-token")
async def verify_token(request: Request, payload: dict = Body(...)):
    token = (payload.get("token") or "").strip()
    if not token:
        raise ApiError(400, "Bot token is required")
    if len(token) < 50:
        raise ApiError(400, "Invalid token format")
    register_secret(token)

    rest = _rest(request, token)
    try:
        me = await rest.get_me()
    except DiscordAPIError as e:
        request.app.state.rest_pool.forget(token)
        raise ApiError(401, "Invalid bot token" if e.status == 401 else e.message)

    try:
        await request.app.state.bots.ensure(token)
        logger.info("[🤖] Bot client created during login for %s", me.get("username"))
    except Exception as e:
        logger.warning("[⚠️] Failed to create bot client during login: %s", e)

    return {"success": True, "bot": me, "message": "Token verified successfully"}


@router.get("/api/bot-info")
async def bot_info(request: Request, token: str = Depends(bot_token)):
    session = await _session_or_none(request, token)
    if session is not None and session.user is not None:
        return {"success": True, "bot": _bot_summary(session)}

    me = await _rest(request, token).get_me()
    bot = {
        "id": me.get("id"),
        "username": me.get("username"),
        "discriminator": me.get("discriminator"),
        "avatar": me.get("avatar"),
        "bot": True,
        "verified": False,
        "guilds": 0,
        "readyAt": None,
    }
    return {"success": True, "bot": bot}


@router.get("/api/bot-guilds")
async def bot_guilds(request: Request, token: str = Depends(bot_token)):
    session = await _session_or_none(request, token)
    if session is not None:
        guilds = session.guilds()
        if guilds:
            return {"success": True, "guilds": guilds}

    try:
        guilds = await _rest(request, token).get_my_guilds()
        return {"success": True, "guilds": guilds}
    except Exception as e:
        logger.warning("[⚠️] Guild list fallback failed: %s", e)
    return {"success": True, "guilds": []}


@router.post("/api/test-bot-connection")
async def test_bot_connection(request: Request, token: str = Depends(bot_token)):
    try:
        session = await request.app.state.bots.ensure(token)
    except asyncio.TimeoutError:
        raise ApiError(500, "Failed to connect bot to Discord")
    user = session.user
    return {
        "success": True,
        "message": "Bot is online and ready!",
        "bot": {
            "username": user.name,
            "id": str(user.id),
            "guilds": len(session.bot.guilds),
        },
    }


@router.post("/api/update-bot")
async def update_bot(request: Request, payload: dict = Body(...), token: str = Depends(bot_token)):
    try:
        session = await request.app.state.bots.ensure(token)
    except Exception as e:
        logger.error("[⛔] Failed to create bot client: %s", e)
        raise ApiError(500, "Failed to create bot client")

    username = (payload.get("username") or "").strip()
    if username:
        try:
            await session.update_username(username)
        except Exception as e:
            logger.warning("[⚠️] Failed to update username: %s", e)

    activity = payload.get("activity")
    if activity or payload.get("status"):
        await session.set_presence(payload.get("status") or "online", activity)

    user = session.user
    return {
        "success": True,
        "message": "Bot updated successfully",
        "bot": {"username": user.name, "id": str(user.id)},
    }


def _data_uri(data: str) -> str:
    b64 = data.split(",", 1)[1] if "," in data else data
    return f"data:image/png;base64,{b64}"


@router.post("/api/upload-bot-avatar")
async def upload_bot_avatar(request: Request, payload: dict = Body(...), token: str = Depends(bot_token)):
    data = _require(payload, "avatarData", "Avatar data is required")
    bot = await _rest(request, token).modify_me(avatar=_data_uri(data))
    logger.info("[🤖] Bot avatar updated")
    return {"success": True, "bot": bot}


@router.post("/api/upload-bot-banner")
async def upload_bot_banner(request: Request, payload: dict = Body(...), token: str = Depends(bot_token)):
    data = _require(payload, "bannerData", "Banner data is required")
    bot = await _rest(request, token).modify_me(banner=_data_uri(data))
    logger.info("[🤖] Bot banner updated")
    return {"success": True, "bot": bot}


@router.post("/api/logout")
async def logout(request: Request):
    raw = request.headers.get("Authorization") or ""
    token = raw[len("Bearer "):].strip() if raw.startswith("Bearer ") else raw.strip()
    if token:
        await request.app.state.bots.disconnect(token)
        request.app.state.rest_pool.forget(token)
        forget_secret(token)
    return {"success": True, "message": "Logged out successfully"}


# ---------- members ----------
@router.post("/api/extract-users")
async def extract_users(request: Request, payload: dict = Body(...), token: str = Depends(bot_token)):
    guild_id = _require(payload, "guildId", "Guild ID is required")
    include_bots = bool(payload.get("includeBots"))
    members = await _resolver(request, _rest(request, token)).fetch_members(str(guild_id))
    users = [
        summarize_member(m)
        for m in members
        if include_bots or not (m.get("user") or {}).get("bot")
    ]
    logger.info("Extracted %d users from guild %s", len(users), guild_id)
    return {"success": True, "users": users}


@router.post("/api/preview-recipients")
async def preview_recipients(request: Request, payload: dict = Body(...), token: str = Depends(bot_token)):
    scope = payload.get("type") or payload.get("scope")
    guild_id = payload.get("guildId")
    if scope == RecipientScope.ALL.value and not guild_id:
        raise ApiError(400, 'Guild ID required for "all" type')
    count = 0
    if scope == RecipientScope.ALL.value:
        count = await _resolver(request, _rest(request, token)).count_humans(str(guild_id))
    return {"success": True, "count": count}


@router.post("/api/search-user")
async def search_user_route(request: Request, payload: dict = Body(...), token: str = Depends(bot_token)):
    query = str(_require(payload, "query", "Search query is required")).strip()
    method = payload.get("method") or "id"
    rest = _rest(request, token)
    bots = request.app.state.bots
    try:
        user = await search_user(
            rest,
            _resolver(request, rest),
            method=method,
            query=query,
            guild_id=payload.get("guildId"),
            presence=bots.presence_of(query) if method == "id" else None,
        )
    except UserNotFound:
        raise ApiError(404, "User not found")
    if method != "id" and user.get("status") == "offline":
        presence = bots.presence_of(user.get("id"))
        if presence:
            user.update(
                status=presence.get("status"),
                activities=presence.get("activities"),
                lastSeen=presence.get("lastSeen"),
            )
    return {"success": True, "user": user}


@router.post("/api/get-user-info")
async def get_user_info(request: Request, payload: dict = Body(...), token: str = Depends(bot_token)):
    guild_id = payload.get("guildId")
    user_id = payload.get("userId")
    if not guild_id or not user_id:
        raise ApiError(400, "Guild ID and User ID required")
    try:
        info = await user_info(
            _rest(request, token), request.app.state.bots.tracker, str(guild_id), str(user_id)
        )
    except DiscordAPIError:
        raise ApiError(400, "User not found")
    return {"success": True, "user": info}


@router.post("/api/get-server-stats")
async def get_server_stats(request: Request, payload: dict = Body(...), token: str = Depends(bot_token)):
    guild_id = str(_require(payload, "guildId", "Guild ID required"))
    rest = _rest(request, token)
    stats = await build_server_stats(
        rest, _resolver(request, rest), request.app.state.bots.tracker, guild_id
    )
    return {"success": True, "stats": stats}


# ---------- bulk DM ----------
@router.post("/api/send-dms")
async def send_dms(request: Request, payload: dict = Body(...), token: str = Depends(bot_token)):
    cfg = request.app.state.config
    message = payload.get("message")
    if not isinstance(message, str) or not message.strip():
        raise ApiError(400, "Message is required")

    raw_scope = payload.get("type") or payload.get("scope") or RecipientScope.ALL.value
    try:
        scope = RecipientScope(raw_scope)
    except ValueError:
        raise ApiError(400, f"Unknown recipient type: {raw_scope}")

    guild_id = payload.get("guildId")
    custom = normalize_custom_recipients(
        payload.get("customUsers") or payload.get("customRecipients") or []
    )
    if scope is RecipientScope.ALL and not guild_id:
        raise ApiError(400, 'Guild ID required for "all" type')
    if scope is RecipientScope.CUSTOM and not custom:
        raise ApiError(400, "At least one custom user is required")

    job = DmJob(
        message=message,
        scope=scope,
        guild_id=str(guild_id) if guild_id else None,
        custom_recipients=custom,
        delay_seconds=_non_negative(
            payload, ("delay", "delaySeconds"), cfg.DM_DEFAULT_DELAY_SECONDS, "delay"
        ),
        rest_minutes=_non_negative(
            payload, ("restTime", "restMinutes"), cfg.DM_DEFAULT_REST_MINUTES, "restTime"
        ),
        batch_size=cfg.clamp_batch_size(payload.get("batchSize")),
    )

    supervisor = request.app.state.supervisor
    if not supervisor.try_start(job, _rest(request, token)):
        raise ApiError(409, "A DM job is already running")

    return {
        "success": True,
        "message": "DM sending process started",
        "settings": job.settings(),
        "jobId": job.id,
    }


@router.get("/api/send-dms/status")
async def send_dms_status(request: Request):
    st = request.app.state.supervisor.status()
    return {"running": st["running"], "jobId": st["jobId"], "last": st["last"]}


@router.post("/api/send-dms/cancel")
async def send_dms_cancel(request: Request, token: str = Depends(bot_token)):
    supervisor = request.app.state.supervisor
    job = supervisor.current
    if not supervisor.cancel():
        raise ApiError(409, "No DM job is running")
    return {"success": True, "message": "Cancellation requested", "jobId": job.id if job else None}


# ---------- direct chat ----------
@router.post("/api/send-chat-message")
async def send_chat_message(request: Request, payload: dict = Body(...), token: str = Depends(bot_token)):
    user_id = payload.get("userId")
    message = payload.get("message")
    if not user_id or not message:
        raise ApiError(400, "User ID and message required")

    rest = _rest(request, token)
    try:
        channel = await rest.create_dm(str(user_id))
    except DiscordAPIError as e:
        if e.status == 403:
            raise ApiError(
                400,
                "Cannot send DM to this user. They may have DMs disabled "
                "or haven't interacted with the bot.",
            )
        raise ApiError(400, f"Failed to create DM channel: {e.status}")

    await rest.send_message(channel["id"], message)
    logger.info("[💬] Chat message sent to user %s", user_id)
    return {"success": True, "message": "Message sent successfully"}


# ---------- stickers ----------
@router.post("/api/get-stickers")
async def get_stickers(request: Request, payload: dict = Body(...), token: str = Depends(bot_token)):
    guild_id = str(_require(payload, "guildId", "Guild ID is required"))
    listing = await StickerManager(_rest(request, token)).list(guild_id)
    return {"success": True, **listing}


@router.post("/api/upload-sticker")
async def upload_sticker(
    request: Request,
    token: str = Depends(bot_token),
    guildId: str = Form(""),
    name: str = Form(""),
    description: str = Form(""),
    method: str = Form("file"),
    stickerId: Optional[str] = Form(None),
    file: Optional[UploadFile] = File(None),
):
    if not guildId:
        raise ApiError(400, "Guild ID is required")
    mgr = StickerManager(_rest(request, token))
    try:
        if method == "file":
            if file is None:
                raise StickerError("No file provided")
            raw = await file.read()
            sticker = await mgr.upload_file(guildId, name=name, description=description, raw=raw)
        else:
            sticker = await mgr.clone(
                guildId, stickerId or "", name=name, description=description or None
            )
    except StickerError as e:
        raise ApiError(400, str(e))
    return {"success": True, "message": "Sticker uploaded successfully!", "sticker": sticker}


@router.post("/api/delete-sticker")
async def delete_sticker(request: Request, payload: dict = Body(...), token: str = Depends(bot_token)):
    guild_id = str(_require(payload, "guildId", "Guild ID is required"))
    sticker_id = str(_require(payload, "stickerId", "Sticker ID is required"))
    try:
        await StickerManager(_rest(request, token)).delete(guild_id, sticker_id)
    except StickerError as e:
        raise ApiError(400, str(e))
    return {"success": True, "message": "Sticker deleted successfully!"}


# ---------- custom commands ----------
def _commands(request: Request):
    return request.app.state.bots.commands


@router.post("/api/get-commands")
async def get_commands(request: Request, payload: dict = Body(...), token: str = Depends(bot_token)):
    guild_id = str(_require(payload, "guildId", "Guild ID required"))
    return {
        "success": True,
        "commands": [c.to_dict() for c in _commands(request).for_guild(guild_id)],
    }


@router.post("/api/create-command")
async def create_command(request: Request, payload: dict = Body(...), token: str = Depends(bot_token)):
    try:
        cmd = _commands(request).create(
            payload.get("guildId"),
            payload.get("trigger"),
            payload.get("type"),
            payload.get("response"),
            payload.get("cooldown"),
        )
    except CommandError as e:
        raise ApiError(e.status, e.message)
    return {"success": True, "command": cmd.to_dict()}


@router.post("/api/update-command")
async def update_command(request: Request, payload: dict = Body(...), token: str = Depends(bot_token)):
    command_id = _require(payload, "commandId", "Command ID required")
    try:
        cmd = _commands(request).update(
            command_id,
            trigger=payload.get("trigger"),
            type=payload.get("type"),
            response=payload.get("response"),
            cooldown=payload.get("cooldown"),
        )
    except CommandError as e:
        raise ApiError(e.status, e.message)
    return {"success": True, "command": cmd.to_dict()}


@router.post("/api/delete-command")
async def delete_command(request: Request, payload: dict = Body(...), token: str = Depends(bot_token)):
    command_id = _require(payload, "commandId", "Command ID required")
    try:
        _commands(request).delete(command_id)
    except CommandError as e:
        raise ApiError(e.status, e.message)
    return {"success": True}


@router.get("/api/health")
async def health(request: Request):
    return {
        "status": "OK",
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "service": "botdash",
        "subscribers": len(request.app.state.hub),
        "jobRunning": request.app.state.supervisor.running,
    }
