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
import logging
import uuid
from typing import Optional

from fastapi import FastAPI, Request, WebSocket, WebSocketDisconnect
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.middleware.base import BaseHTTPMiddleware

from admin.api import ApiError, router
from admin.logging_setup import (
    LOGGER,
    RedactFilter,
    client_var,
    get_logger,
    req_id_var,
    route_var,
)
from common.config import CURRENT_VERSION, Config
from common.discord_rest import DiscordAPIError, RestPool
from common.websockets import HubLogHandler, ProgressHub
from server.bot import BotManager
from server.jobs import JobSupervisor
from server.recipients import RecipientResolutionError

APP_TITLE = "botdash"


def _set_ws_context(route: str, ws: WebSocket):
    route_var.set(route)

    c = getattr(ws, "client", None)
    if c:
        client_var.set(f"{getattr(c, 'host', '?')}:{getattr(c, 'port', '?')}")
    else:
        client_var.set("-")

    req_id_var.set(uuid.uuid4().hex[:8])


async def _close_ws_quietly(
    ws: WebSocket, code: int = 1001, reason: str = "server shutdown"
):
    with contextlib.suppress(RuntimeError, WebSocketDisconnect, Exception):
        await ws.close(code=code, reason=reason)


class RequestContextMiddleware(BaseHTTPMiddleware):
    async def dispatch(self, request: Request, call_next):
        rid = request.headers.get("X-Request-ID") or uuid.uuid4().hex[:8]
        token_r = req_id_var.set(rid)
        token_s = route_var.set(request.url.path or "-")
        token_c = client_var.set(
            f"{getattr(request.client, 'host', '?')}:{getattr(request.client, 'port', '?')}"
        )
        response = None
        try:
            response = await call_next(request)
        finally:
            if response is not None:
                response.headers["X-Request-ID"] = rid
            req_id_var.reset(token_r)
            route_var.reset(token_s)
            client_var.reset(token_c)
        return response


def _install_error_handlers(app: FastAPI) -> None:
    @app.exception_handler(ApiError)
    async def _api_error(request: Request, exc: ApiError):
        if exc.status >= 500:
            LOGGER.error("%s %s -> %d %s", request.method, request.url.path, exc.status, exc.message)
        else:
            LOGGER.debug("%s %s -> %d %s", request.method, request.url.path, exc.status, exc.message)
        return JSONResponse({"error": exc.message}, status_code=exc.status)

    @app.exception_handler(DiscordAPIError)
    async def _discord_error(request: Request, exc: DiscordAPIError):
        status = 401 if exc.status == 401 else 502
        LOGGER.warning(
            "%s %s -> Discord API error %d (%s)",
            request.method, request.url.path, exc.status, exc.message,
        )
        return JSONResponse({"error": f"Discord API error: {exc.status}"}, status_code=status)

    @app.exception_handler(RecipientResolutionError)
    async def _resolution_error(request: Request, exc: RecipientResolutionError):
        LOGGER.warning("%s %s -> %s", request.method, request.url.path, exc)
        return JSONResponse({"error": str(exc)}, status_code=502)

    @app.exception_handler(RequestValidationError)
    async def _bad_body(request: Request, exc: RequestValidationError):
        return JSONResponse({"error": "Invalid request body"}, status_code=400)


def create_app(
    config: Optional[Config] = None,
    *,
    rest_pool=None,
    bots=None,
    hub: Optional[ProgressHub] = None,
    supervisor: Optional[JobSupervisor] = None,
) -> FastAPI:
    """
    Builds the dashboard app. Collaborators default to the real ones;
    tests pass fakes for the REST pool and gateway manager.
    """
    config = config or Config(logger=LOGGER.logger)
    hub = hub or ProgressHub()

    app = FastAPI(title=APP_TITLE, version=CURRENT_VERSION)
    app.state.config = config
    app.state.hub = hub
    app.state.rest_pool = rest_pool or RestPool(config)
    app.state.bots = bots or BotManager(config)
    app.state.supervisor = supervisor or JobSupervisor(hub, config=config)
    app.state.shutdown_event = asyncio.Event()

    app.add_middleware(RequestContextMiddleware)
    _install_error_handlers(app)
    app.include_router(router)

    log_handler = HubLogHandler(hub)
    log_handler.addFilter(RedactFilter())

    @app.websocket("/ws")
    async def ws_progress(ws: WebSocket):
        await ws.accept()
        _set_ws_context("/ws", ws)
        local_log = get_logger("botdash.ws", socket_id=id(ws))
        await hub.add(ws)
        local_log.debug("Connected | subscribers=%d", len(hub))
        try:
            while not app.state.shutdown_event.is_set():
                try:
                    await asyncio.wait_for(ws.receive_text(), timeout=1.0)
                except asyncio.TimeoutError:
                    continue
        except WebSocketDisconnect:
            local_log.debug("Disconnected")
        except asyncio.CancelledError:
            local_log.debug("Cancelled")
        finally:
            await hub.remove(ws)
            local_log.debug("Removed | subscribers=%d", len(hub))

    @app.on_event("startup")
    async def _startup():
        starter = getattr(app.state.rest_pool, "start", None)
        if starter is not None:
            await starter()
        logging.getLogger("botdash").addHandler(log_handler)
        LOGGER.info("[✨] Starting %s %s", APP_TITLE, CURRENT_VERSION)

    @app.on_event("shutdown")
    async def _shutdown():
        LOGGER.info("Shutdown initiated")
        app.state.shutdown_event.set()
        logging.getLogger("botdash").removeHandler(log_handler)
        await app.state.supervisor.shutdown()
        closer = getattr(app.state.bots, "close_all", None)
        if closer is not None:
            await closer()
        await hub.close_all()
        pool_close = getattr(app.state.rest_pool, "close", None)
        if pool_close is not None:
            await pool_close()
        LOGGER.info("Shutdown complete")

    return app


app = create_app()


if __name__ == "__main__":
    import uvicorn

    cfg = app.state.config
    uvicorn.run(app, host=cfg.ADMIN_HOST, port=cfg.ADMIN_PORT)
