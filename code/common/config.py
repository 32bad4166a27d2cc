# =============================================================================
#  botdash
#  Copyright (C) 2025 botdash contributors
#
#  This source code is released under the GNU Affero General Public License
#  version 3.0. A copy of the license is available at:
#  https://www.gnu.org/licenses/agpl-3.0.en.html
# =============================================================================

import os
import logging
from typing import Optional

CURRENT_VERSION = "v1.0.0"


class Config:
    def __init__(self, logger: Optional[logging.Logger] = None):

        def _str(key: str, env_default: Optional[str] = None) -> Optional[str]:
            v = os.getenv(key)
            if v is None or v.strip() == "":
                v = env_default
            return v

        def _int(key: str, env_default: str = "0") -> int:
            raw = _str(key, env_default)
            try:
                return int(str(raw).strip())
            except Exception:
                try:
                    return int(env_default)
                except Exception:
                    return 0

        def _float(key: str, env_default: str = "0") -> float:
            raw = _str(key, env_default)
            try:
                return float(str(raw).strip())
            except Exception:
                try:
                    return float(env_default)
                except Exception:
                    return 0.0

        # --- Discord ---
        self.DISCORD_API_BASE = (
            _str("DISCORD_API_BASE", "https://discord.com/api/v10") or ""
        ).rstrip("/")
        self.HTTP_TIMEOUT_SECONDS = max(1.0, _float("HTTP_TIMEOUT_SECONDS", "15"))
        self.BOT_LOGIN_TIMEOUT = max(1.0, _float("BOT_LOGIN_TIMEOUT", "10"))

        # --- Web ---
        self.ADMIN_HOST = _str("ADMIN_HOST", "0.0.0.0") or "0.0.0.0"
        self.ADMIN_PORT = _int("ADMIN_PORT", "8080")

        # --- Bulk DM pipeline ---
        self.DM_MAX_BATCH_SIZE = max(1, _int("DM_MAX_BATCH_SIZE", "500"))
        self.DM_BATCH_SIZE = min(
            self.DM_MAX_BATCH_SIZE, max(1, _int("DM_BATCH_SIZE", "100"))
        )
        self.DM_DEFAULT_DELAY_SECONDS = max(0.0, _float("DM_DEFAULT_DELAY_SECONDS", "1"))
        self.DM_DEFAULT_REST_MINUTES = max(0.0, _float("DM_DEFAULT_REST_MINUTES", "0"))

        # --- Member pagination ---
        self.MEMBER_PAGE_LIMIT = min(1000, max(1, _int("MEMBER_PAGE_LIMIT", "1000")))
        self.MEMBER_MAX_PAGES = max(1, _int("MEMBER_MAX_PAGES", "50"))
        self.MEMBER_PAGE_DELAY = max(0.0, _float("MEMBER_PAGE_DELAY", "0.1"))

        # --- Logging ---
        self.LOG_LEVEL = (_str("LOG_LEVEL", "INFO") or "INFO").strip().upper()
        self.LOG_FORMAT = (_str("LOG_FORMAT", "HUMAN") or "HUMAN").strip().upper()
        self.logger = (logger or logging.getLogger(__name__)).getChild(
            self.__class__.__name__
        )

    def clamp_batch_size(self, value) -> int:
        """Caller-supplied batch size, clamped to [1, DM_MAX_BATCH_SIZE]."""
        try:
            n = int(value)
        except (TypeError, ValueError, OverflowError):
            return self.DM_BATCH_SIZE
        if n < 1:
            return self.DM_BATCH_SIZE
        return min(n, self.DM_MAX_BATCH_SIZE)
