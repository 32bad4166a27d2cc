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
import json
import logging
import random
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Optional, Protocol, Set

import websockets
from websockets.exceptions import ConnectionClosedError, ConnectionClosedOK

logger = logging.getLogger("botdash.hub")

MessageHandler = Callable[[dict], Awaitable[None]]


class Subscriber(Protocol):
    async def send_text(self, data: str) -> None: ...


def _json(obj: Any) -> str:
    try:
        return json.dumps(obj, separators=(",", ":"))
    except Exception as e:
        return f'{{"type":"log","message":"json-dumps-failed:{e!r}","logType":"error"}}'


class ProgressHub:
    """
    Fan-out of tagged envelopes to every connected live-update subscriber.

    - `publish(event)` wraps a progress snapshot as {"type": "progress", "data": ...}
    - `log(text)` sends {"type": "log", ...} diagnostic lines
    - delivery is best-effort: a failing subscriber is dropped, never raised
    - no backlog: a subscriber only sees envelopes sent after it joined
    """

    def __init__(self):
        self._sockets: Set[Subscriber] = set()
        self._lock = asyncio.Lock()
        self.delivered = 0

    def __len__(self) -> int:
        return len(self._sockets)

    async def add(self, ws: Subscriber) -> None:
        async with self._lock:
            self._sockets.add(ws)
        logger.debug("ProgressHub.add | subscribers=%d", len(self._sockets))

    async def remove(self, ws: Subscriber) -> None:
        async with self._lock:
            self._sockets.discard(ws)
        logger.debug("ProgressHub.remove | subscribers=%d", len(self._sockets))

    async def publish(self, event) -> None:
        data = event.to_dict() if hasattr(event, "to_dict") else dict(event or {})
        await self._broadcast_text(_json({"type": "progress", "data": data}))

    async def log(self, message: str, log_type: str = "info") -> None:
        env = {
            "type": "log",
            "message": message,
            "logType": log_type,
            "timestamp": datetime.now(timezone.utc).isoformat(),
        }
        await self._broadcast_text(_json(env))

    async def _broadcast_text(self, text: str) -> None:
        async with self._lock:
            targets = list(self._sockets)

        dead = []
        for ws in targets:
            try:
                await ws.send_text(text)
                self.delivered += 1
            except Exception:
                dead.append(ws)

        if dead:
            async with self._lock:
                for ws in dead:
                    self._sockets.discard(ws)
            for ws in dead:
                close = getattr(ws, "close", None)
                if close is not None:
                    with contextlib.suppress(Exception):
                        await close()
            logger.debug(
                "ProgressHub._broadcast_text | cleaned_dead=%d remaining=%d",
                len(dead),
                len(self._sockets),
            )

    async def close_all(self, timeout: float = 0.2) -> None:
        async with self._lock:
            sockets = list(self._sockets)
            self._sockets.clear()
        if not sockets:
            return

        async def _close(ws):
            close = getattr(ws, "close", None)
            if close is not None:
                with contextlib.suppress(Exception):
                    await close(code=1001, reason="server shutdown")

        tasks = [asyncio.create_task(_close(ws)) for ws in sockets]
        done, pending = await asyncio.wait(tasks, timeout=timeout)
        for t in pending:
            t.cancel()
        logger.debug("Closed subscribers | closed=%d cancelled=%d", len(done), len(pending))


class HubLogHandler(logging.Handler):
    """
    Forwards log records to live subscribers as "log" envelopes.
    Records emitted by the hub itself are skipped.
    """

    def __init__(self, hub: ProgressHub, level: int = logging.INFO):
        super().__init__(level=level)
        self.hub = hub
        self._tasks: Set[asyncio.Task] = set()

    def emit(self, record: logging.LogRecord) -> None:
        if record.name.startswith(logger.name) or not len(self.hub):
            return
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            return
        try:
            text = record.getMessage()
        except Exception:
            self.handleError(record)
            return
        log_type = "error" if record.levelno >= logging.ERROR else (
            "warning" if record.levelno >= logging.WARNING else "info"
        )
        task = loop.create_task(self.hub.log(text, log_type))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)


class BusClient:
    """
    Connects to the dashboard's /ws channel and invokes `handler(envelope)`
    for each JSON message, reconnecting with jittered backoff.
    """

    def __init__(self, url: str, logger: Optional[logging.Logger] = None):
        self.url = url
        self.logger = logger or logging.getLogger("botdash.bus")

    async def subscribe(self, handler: MessageHandler, *, once: bool = False) -> None:
        attempt = 0
        while True:
            try:
                self.logger.debug("BusClient subscribe → %s", self.url)
                async with websockets.connect(self.url, ping_interval=None, max_size=None) as ws:
                    attempt = 0
                    async for raw in ws:
                        try:
                            ev = json.loads(raw)
                        except Exception:
                            continue
                        if isinstance(ev, dict) and "type" in ev:
                            try:
                                await handler(ev)
                            except Exception:
                                self.logger.exception("BusClient handler failed type=%s", ev.get("type"))
                if once:
                    return
            except (ConnectionClosedOK, asyncio.CancelledError):
                self.logger.debug("BusClient subscribe cancelled/closed")
                return
            except (OSError, ConnectionClosedError) as e:
                if once:
                    raise
                attempt += 1
                delay = min(8.0, 0.5 * (2 ** (attempt - 1))) * (1 + random.random() * 0.2)
                self.logger.warning("BusClient subscribe error: %s (retry in %.2fs)", e, delay)
                await asyncio.sleep(delay)
