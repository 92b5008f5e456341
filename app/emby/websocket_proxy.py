"""WebSocket relay toward Emby (``/embywebsocket`` session and remote-control traffic).

Example:
    proxy = WebSocketProxy(settings.emby.base_url)
    await proxy.forward(websocket)
"""

from __future__ import annotations

import asyncio
import logging
from typing import Iterable, List, Tuple

import anyio
import websockets
from starlette.websockets import WebSocket, WebSocketDisconnect, WebSocketState
from websockets.exceptions import ConnectionClosed, WebSocketException

from app.emby.reverse_proxy import filter_headers, forwarded_for


logger = logging.getLogger("emby_302.websocket_proxy")

OPEN_TIMEOUT_S = 10.0
# Handshake headers the websockets client generates itself.
HANDSHAKE_HEADERS = {
    "host",
    "user-agent",
    "x-forwarded-for",
    "sec-websocket-key",
    "sec-websocket-version",
    "sec-websocket-extensions",
    "sec-websocket-protocol",
    "sec-websocket-accept",
}
# Status codes that may not be sent in a close frame.
RESERVED_CLOSE_CODES = {1005, 1006, 1015}


def upstream_headers(headers: Iterable[Tuple[str, str]]) -> List[Tuple[str, str]]:
    return [(name, value) for name, value in filter_headers(headers) if name.lower() not in HANDSHAKE_HEADERS]


def requested_subprotocols(websocket: WebSocket) -> List[str]:
    value = websocket.headers.get("sec-websocket-protocol", "")
    return [item.strip() for item in value.split(",") if item.strip()]


def _still_open(websocket: WebSocket) -> bool:
    return (
        websocket.client_state == WebSocketState.CONNECTED
        and websocket.application_state == WebSocketState.CONNECTED
    )


class WebSocketProxy:
    """Open a matching upstream WebSocket and pump frames both ways until either side closes."""

    def __init__(self, upstream: str):
        self.upstream = upstream.rstrip("/")

    def target_url(self, websocket: WebSocket) -> str:
        base = self.upstream
        if base.startswith("https://"):
            base = "wss://" + base[len("https://"):]
        elif base.startswith("http://"):
            base = "ws://" + base[len("http://"):]
        raw_path = websocket.scope.get("raw_path") or websocket.url.path.encode("utf-8")
        target = base + raw_path.split(b"?", 1)[0].decode("latin-1")
        query = websocket.scope.get("query_string", b"")
        if query:
            target += "?" + query.decode("latin-1")
        return target

    async def forward(self, websocket: WebSocket) -> None:
        url = self.target_url(websocket)
        headers = upstream_headers(websocket.headers.items())
        forwarded = forwarded_for(websocket)
        if forwarded:
            headers.append(("X-Forwarded-For", forwarded))
        subprotocols = requested_subprotocols(websocket)

        try:
            upstream = await websockets.connect(
                url,
                additional_headers=headers,
                user_agent_header=websocket.headers.get("user-agent"),
                subprotocols=subprotocols or None,
                open_timeout=OPEN_TIMEOUT_S,
                max_size=None,
            )
        except (OSError, asyncio.TimeoutError, WebSocketException) as exc:
            logger.error("WebSocket connection to %s failed: %r", url, exc)
            await websocket.close(code=1011)
            return

        try:
            await websocket.accept(subprotocol=upstream.subprotocol)
            async with anyio.create_task_group() as task_group:

                async def client_to_upstream() -> None:
                    try:
                        while True:
                            message = await websocket.receive()
                            if message["type"] == "websocket.disconnect":
                                break
                            if message.get("text") is not None:
                                await upstream.send(message["text"])
                            elif message.get("bytes") is not None:
                                await upstream.send(message["bytes"])
                    except ConnectionClosed:
                        pass
                    task_group.cancel_scope.cancel()

                async def upstream_to_client() -> None:
                    try:
                        async for message in upstream:
                            if isinstance(message, str):
                                await websocket.send_text(message)
                            else:
                                await websocket.send_bytes(message)
                    except (ConnectionClosed, WebSocketDisconnect):
                        pass
                    task_group.cancel_scope.cancel()

                task_group.start_soon(client_to_upstream)
                task_group.start_soon(upstream_to_client)
        finally:
            await upstream.close()

        if _still_open(websocket):
            code = upstream.close_code
            if code is None or code in RESERVED_CLOSE_CODES:
                code = 1000
            await websocket.close(code=code)
