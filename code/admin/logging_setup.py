# =============================================================================
#  botdash
#  Copyright (C) 2025 botdash contributors
#
#  This source code is released under the GNU Affero General Public License
#  version 3.0. A copy of the license is available at:
#  https://www.gnu.org/licenses/agpl-3.0.en.html
# =============================================================================

from __future__ import annotations

import contextvars
import json
import logging
import re
import sys
import threading
from datetime import datetime, timezone
from typing import Any, Optional

from common.config import Config
from common.constants import REDACT_KEYS

# Discord bot tokens: base64 user id, timestamp, hmac.
TOKEN_RE = re.compile(r"[\w-]{23,28}\.[\w-]{6,7}\.[\w-]{27,}")
MASK = "***REDACTED***"

req_id_var = contextvars.ContextVar("req_id", default="-")
route_var = contextvars.ContextVar("route", default="-")
client_var = contextvars.ContextVar("client", default="-")

# structured fields copied from `extra=` onto the formatted line
EXTRA_KEYS = ("job_id", "guild_id", "user_id", "socket_id", "subscribers", "took_ms")

LEVEL_MARK = {
    logging.DEBUG: "🧩",
    logging.INFO: "✅",
    logging.WARNING: "⚠️",
    logging.ERROR: "❌",
    logging.CRITICAL: "💥",
}


class _SecretRegistry:
    """Bot tokens seen by the API; masked verbatim wherever they appear."""

    def __init__(self):
        self._items: set = set()
        self._lock = threading.Lock()

    def add(self, token: str) -> None:
        if token and len(token) >= 8:
            with self._lock:
                self._items.add(token)

    def discard(self, token: str) -> None:
        with self._lock:
            self._items.discard(token)

    def mask(self, text: str) -> str:
        with self._lock:
            known = sorted(self._items, key=len, reverse=True)
        for secret in known:
            if secret in text:
                text = text.replace(secret, MASK)
        return TOKEN_RE.sub(MASK, text)


_SECRETS = _SecretRegistry()


def register_secret(token: str) -> None:
    _SECRETS.add(token)


def forget_secret(token: str) -> None:
    _SECRETS.discard(token)


def scrub(value: Any, depth: int = 0) -> Any:
    """
    Masks secrets inside a log argument. Strings are searched for known or
    token-shaped values; mappings also mask values under sensitive keys.
    """
    if depth > 4:
        return value
    if isinstance(value, str):
        return _SECRETS.mask(value)
    if isinstance(value, dict):
        return {
            k: (MASK if str(k) in REDACT_KEYS and v else scrub(v, depth + 1))
            for k, v in value.items()
        }
    if isinstance(value, (list, tuple)):
        items = [scrub(v, depth + 1) for v in value]
        return tuple(items) if isinstance(value, tuple) else items
    return value


class RedactFilter(logging.Filter):
    """Stamps request context on the record and scrubs msg/args."""

    def filter(self, record: logging.LogRecord) -> bool:
        record.req_id = req_id_var.get()
        record.scope = route_var.get()
        record.client = client_var.get()
        try:
            if record.args:
                record.args = scrub(record.args)
            if isinstance(record.msg, str):
                record.msg = _SECRETS.mask(record.msg)
        except Exception:
            record.msg = "<unprintable log record>"
            record.args = ()
        return True


def _stamp(record: logging.LogRecord) -> str:
    ts = datetime.fromtimestamp(record.created, tz=timezone.utc)
    return ts.strftime("%Y-%m-%dT%H:%M:%S.%fZ")


def _extras(record: logging.LogRecord) -> dict:
    out = {}
    for key in EXTRA_KEYS:
        v = getattr(record, key, None)
        if v not in (None, "", []):
            out[key] = v
    return out


class HumanFormatter(logging.Formatter):
    def format(self, record: logging.LogRecord) -> str:
        head = (
            f"{_stamp(record)} {LEVEL_MARK.get(record.levelno, '•')} "
            f"{record.levelname:<8} [{getattr(record, 'scope', '-')}] "
            f"(rid={getattr(record, 'req_id', '-')} cli={getattr(record, 'client', '-')})"
        )
        line = f"{head} {super().format(record)}"
        extras = _extras(record)
        if extras:
            line += " | " + " ".join(f"{k}={v}" for k, v in extras.items())
        return line


class JSONFormatter(logging.Formatter):
    def format(self, record: logging.LogRecord) -> str:
        doc = {
            "time": _stamp(record),
            "lvl": record.levelname,
            "logger": record.name,
            "msg": record.getMessage(),
            "scope": getattr(record, "scope", "-"),
            "req_id": getattr(record, "req_id", "-"),
            "client": getattr(record, "client", "-"),
        }
        doc.update(_extras(record))
        if record.exc_info:
            doc["exc"] = _SECRETS.mask(self.formatException(record.exc_info))
        return json.dumps(doc, separators=(",", ":"), default=str)


class ContextAdapter(logging.LoggerAdapter):
    """Adds fixed structured fields (socket_id, job_id, ...) to every call."""

    def process(self, msg, kwargs):
        extra = kwargs.setdefault("extra", {})
        for k, v in self.extra.items():
            extra.setdefault(k, v)
        return msg, kwargs


def get_logger(name: str = "botdash", **ctx) -> ContextAdapter:
    return ContextAdapter(logging.getLogger(name), dict(ctx))


def configure_app_logging(config: Optional[Config] = None) -> ContextAdapter:
    """
    Configures the `botdash` logger tree once per process.
    LOG_FORMAT picks HUMAN or JSON lines, LOG_LEVEL the threshold.
    Handlers installed by uvicorn are reused so output shares one stream.
    """
    cfg = config or Config()
    formatter: logging.Formatter = (
        JSONFormatter() if cfg.LOG_FORMAT == "JSON" else HumanFormatter("%(message)s")
    )

    root = logging.getLogger("botdash")
    uvicorn_handlers = logging.getLogger("uvicorn.error").handlers
    handlers = uvicorn_handlers[:] if uvicorn_handlers else [logging.StreamHandler(sys.stdout)]
    for h in handlers:
        h.setFormatter(formatter)
        if not any(isinstance(f, RedactFilter) for f in h.filters):
            h.addFilter(RedactFilter())
    root.handlers = handlers
    root.propagate = False
    root.setLevel(getattr(logging, cfg.LOG_LEVEL, logging.INFO))

    for noisy in ("uvicorn", "uvicorn.error", "uvicorn.access", "aiohttp.access"):
        logging.getLogger(noisy).setLevel(logging.WARNING)
    logging.getLogger("discord").setLevel(
        logging.INFO if root.level <= logging.DEBUG else logging.WARNING
    )
    logging.getLogger("websockets").setLevel(
        logging.DEBUG if root.level <= logging.DEBUG else logging.WARNING
    )
    return get_logger("botdash")


LOGGER = configure_app_logging()
