"""Catch-all dispatcher: redirect playback requests, relay everything else.

Example:
    curl -i "http://localhost:8095/emby/Videos/123/stream?MediaSourceId=abc&api_key=KEY"
    # HTTP/1.1 302 Found
    # location: http://cdn.example.com/movie.mkv

Per request: client filter, download gate, playback classification, then
PlaybackInfo resolution and path mapping. Anything that is not redirected
goes to the reverse proxy unmodified. WebSocket upgrades pass the client
filter and are then piped to Emby.
"""

from __future__ import annotations

import logging
from typing import Any, Awaitable, Callable, Dict, TypeVar
from urllib.parse import quote

import anyio
from fastapi import APIRouter, Request, WebSocket, status
from fastapi.responses import PlainTextResponse, Response
from starlette.types import Receive, Scope, Send

from app.config import Settings
from app.emby.credentials import extract_api_key, first_query_value
from app.emby.filters import ClientFilter, is_download_blocked
from app.emby.path_map import PathMapper
from app.emby.playback import MediaPathError, MediaPathResolver
from app.emby.reverse_proxy import ReverseProxy
from app.emby.websocket_proxy import WebSocketProxy


logger = logging.getLogger("emby_302.dispatch")

router = APIRouter()

PLAYBACK_MARKERS = ("/Videos/", "/videos/")
MEDIA_SOURCE_PARAMS = ("MediaSourceId", "mediaSourceId")
CLIENT_CLOSED_REQUEST = 499

T = TypeVar("T")


class ClientDisconnected(Exception):
    """The inbound client went away before the upstream call finished."""


def is_playback_path(path: str) -> bool:
    return any(marker in path for marker in PLAYBACK_MARKERS)


def media_source_id(request: Request) -> str:
    for key in MEDIA_SOURCE_PARAMS:
        value = first_query_value(request.query_params, key)
        if value:
            return value
    return ""


def item_id_from_path(path: str) -> str:
    """Second-to-last segment, e.g. ``/emby/Videos/123/stream`` -> ``123``."""

    parts = path.split("/")
    return parts[-2] if len(parts) >= 2 else ""


def escape_non_ascii(url: str) -> str:
    """Percent-encode only non-ASCII characters; everything else is kept verbatim."""

    return "".join(char if ord(char) < 128 else quote(char, safe="") for char in url)


async def bind_to_request(request: Request, func: Callable[..., Awaitable[T]], *args: Any) -> T:
    """Run ``func(*args)`` until it finishes or the client disconnects.

    Both the call and a disconnect listener run in one task group; whichever
    finishes first cancels the other. On disconnect ``ClientDisconnected`` is
    raised after the call has been cancelled.
    """

    outcome: Dict[str, Any] = {}

    async with anyio.create_task_group() as task_group:

        async def run_call() -> None:
            try:
                outcome["value"] = await func(*args)
            except Exception as exc:
                outcome["error"] = exc
            task_group.cancel_scope.cancel()

        async def listen_for_disconnect() -> None:
            while True:
                message = await request.receive()
                if message["type"] == "http.disconnect":
                    outcome["disconnected"] = True
                    task_group.cancel_scope.cancel()
                    return

        task_group.start_soon(run_call)
        task_group.start_soon(listen_for_disconnect)

    if "error" in outcome:
        raise outcome["error"]
    if "value" not in outcome:
        raise ClientDisconnected()
    return outcome["value"]


class Dispatcher:
    """Per-request decision pipeline; holds only read-only collaborators."""

    def __init__(
        self,
        settings: Settings,
        client_filter: ClientFilter,
        mapper: PathMapper,
        resolver: MediaPathResolver,
        proxy: ReverseProxy,
        websocket_proxy: WebSocketProxy,
    ):
        self.settings = settings
        self.client_filter = client_filter
        self.mapper = mapper
        self.resolver = resolver
        self.proxy = proxy
        self.websocket_proxy = websocket_proxy

    async def dispatch(self, request: Request) -> Response:
        path = request.url.path
        user_agent = request.headers.get("user-agent", "")
        if self.client_filter.should_block(user_agent):
            logger.info("Client User-Agent '%s' blocked by client filter", user_agent)
            return PlainTextResponse("This client is not allowed to access the server", status_code=403)

        if is_download_blocked(self.settings.emby.download_strategy, path):
            logger.info("Blocked download request: %s", path)
            return PlainTextResponse("Downloads are disabled by policy", status_code=403)

        if is_playback_path(path):
            source_id = media_source_id(request)
            if source_id:
                redirect = await self._redirect_playback(request, path, source_id)
                if redirect is not None:
                    return redirect

        return await self.proxy.forward(request)

    async def _redirect_playback(self, request: Request, path: str, source_id: str) -> Response | None:
        item_id = item_id_from_path(path)
        api_key = extract_api_key(request, self.settings.emby.api_key)
        # The disconnect listener reads from receive(); the body has to be
        # buffered first so a fallback forward still has it.
        await request.body()
        try:
            media_path = await bind_to_request(request, self.resolver.resolve, item_id, source_id, api_key)
        except ClientDisconnected:
            logger.info("Client disconnected while resolving item %s", item_id)
            return Response(status_code=CLIENT_CLOSED_REQUEST)
        except MediaPathError as exc:
            logger.error(
                "Failed to resolve Emby media path: %s",
                exc,
                extra={"item_id": item_id, "media_source_id": source_id, "error_type": type(exc).__name__},
            )
            return PlainTextResponse(f"Failed to resolve media info: {exc}", status_code=500)
        logger.info("Resolved Emby media path: %s", media_path)

        final_url = self.mapper.map(media_path)
        if final_url == media_path:
            return None
        logger.info("Path-map rule matched, redirecting to: %s", final_url)
        return Response(status_code=302, headers={"Location": escape_non_ascii(final_url)})

    async def dispatch_websocket(self, websocket: WebSocket) -> None:
        user_agent = websocket.headers.get("user-agent", "")
        if self.client_filter.should_block(user_agent):
            logger.info("Client User-Agent '%s' blocked by client filter (websocket)", user_agent)
            await websocket.close(code=status.WS_1008_POLICY_VIOLATION)
            return
        await self.websocket_proxy.forward(websocket)


class DispatchEndpoint:
    """ASGI endpoint so the catch-all route accepts every HTTP method."""

    async def __call__(self, scope: Scope, receive: Receive, send: Send) -> None:
        request = Request(scope, receive, send)
        dispatcher: Dispatcher = request.app.state.dispatcher
        response = await dispatcher.dispatch(request)
        await response(scope, receive, send)


router.add_route("/{full_path:path}", DispatchEndpoint(), include_in_schema=False)


@router.websocket("/{full_path:path}")
async def dispatch_websocket(websocket: WebSocket, full_path: str) -> None:
    dispatcher: Dispatcher = websocket.app.state.dispatcher
    await dispatcher.dispatch_websocket(websocket)
