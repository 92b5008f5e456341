"""Transparent single-host reverse proxy toward Emby.

Example:
    proxy = ReverseProxy(settings.emby.base_url, client)
    response = await proxy.forward(request)
"""

from __future__ import annotations

import logging
from typing import Iterable, List, Tuple

import httpx
from starlette.background import BackgroundTask
from starlette.requests import HTTPConnection, Request
from starlette.responses import PlainTextResponse, Response, StreamingResponse


logger = logging.getLogger("emby_302.reverse_proxy")

HOP_BY_HOP_HEADERS = {
    "connection",
    "keep-alive",
    "proxy-authenticate",
    "proxy-authorization",
    "proxy-connection",
    "te",
    "trailer",
    "trailers",
    "transfer-encoding",
    "upgrade",
}


def filter_headers(headers: Iterable[Tuple[str, str]], *, drop_host: bool = False) -> List[Tuple[str, str]]:
    """Drop hop-by-hop headers, including any named by the Connection header."""

    pairs = list(headers)
    dropped = set(HOP_BY_HOP_HEADERS)
    for name, value in pairs:
        if name.lower() == "connection":
            dropped.update(token.strip().lower() for token in value.split(",") if token.strip())
    if drop_host:
        dropped.add("host")
    return [(name, value) for name, value in pairs if name.lower() not in dropped]


def forwarded_for(connection: HTTPConnection) -> str | None:
    """Append the peer address to any X-Forwarded-For chain the client sent."""

    if connection.client is None:
        return None
    prior = connection.headers.get("x-forwarded-for")
    return f"{prior}, {connection.client.host}" if prior else connection.client.host


class ReverseProxy:
    """Relay requests verbatim to the upstream host and stream responses back."""

    def __init__(self, upstream: str, client: httpx.AsyncClient):
        self.upstream = upstream.rstrip("/")
        self.client = client

    def target_url(self, request: Request) -> httpx.URL:
        """Upstream base (including any base path) + the undecoded request path and query."""

        raw_path = request.scope.get("raw_path") or request.url.path.encode("utf-8")
        target = self.upstream + raw_path.split(b"?", 1)[0].decode("latin-1")
        query = request.scope.get("query_string", b"")
        if query:
            target += "?" + query.decode("latin-1")
        return httpx.URL(target)

    def _has_body(self, request: Request) -> bool:
        return "content-length" in request.headers or "transfer-encoding" in request.headers

    async def forward(self, request: Request) -> Response:
        url = self.target_url(request)
        headers = filter_headers(request.headers.items(), drop_host=True)
        headers = [(name, value) for name, value in headers if name.lower() != "x-forwarded-for"]
        forwarded = forwarded_for(request)
        if forwarded:
            headers.append(("X-Forwarded-For", forwarded))

        upstream_request = self.client.build_request(
            request.method,
            url,
            headers=headers,
            content=request.stream() if self._has_body(request) else None,
        )
        try:
            upstream_response = await self.client.send(upstream_request, stream=True)
        except httpx.RequestError as exc:
            logger.error("Proxy request to %s failed: %r", url, exc)
            return PlainTextResponse("Bad Gateway", status_code=502)

        response_headers = filter_headers(upstream_response.headers.multi_items())
        response = StreamingResponse(
            upstream_response.aiter_raw(),
            status_code=upstream_response.status_code,
            background=BackgroundTask(upstream_response.aclose),
        )
        # raw list keeps repeated headers such as Set-Cookie
        response.raw_headers = [
            (name.lower().encode("latin-1"), value.encode("latin-1")) for name, value in response_headers
        ]
        return response
