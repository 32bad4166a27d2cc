# =============================================================================
#  botdash
#  Copyright (C) 2025 botdash contributors
#
#  This source code is released under the GNU Affero General Public License
#  version 3.0. A copy of the license is available at:
#  https://www.gnu.org/licenses/agpl-3.0.en.html
# =============================================================================

"""Shared constants used across botdash services."""

REDACT_KEYS = {"token", "Authorization", "authorization"}

# Discord activity type ids accepted by presence updates.
ACTIVITY_TYPES = {
    "playing": 0,
    "streaming": 1,
    "listening": 2,
    "watching": 3,
    "custom": 4,
    "competing": 5,
}

PRESENCE_STATUSES = ("online", "idle", "dnd", "invisible")

# Guild sticker slots by premium tier.
STICKER_SLOTS_BY_TIER = {0: 5, 1: 15, 2: 30, 3: 60}
STICKER_MAX_BYTES = 512 * 1024

# sticker format_type -> (file extension, content type)
STICKER_FORMATS = {
    1: ("png", "image/png"),
    2: ("png", "image/png"),
    3: ("json", "application/json"),
    4: ("gif", "image/gif"),
}

STICKER_CDN_BASE = "https://media.discordapp.net/stickers"

COMMAND_TYPES = ("custom", "stats", "active")
DEFAULT_COMMAND_COOLDOWN = 5

# Discord voice channel type id.
VOICE_CHANNEL_TYPE = 2
