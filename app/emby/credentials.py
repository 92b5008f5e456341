"""API key extraction for upstream Emby calls."""

from __future__ import annotations

import re

from starlette.datastructures import QueryParams
from starlette.requests import Request


AUTH_TOKEN_PATTERN = re.compile(r'token="([^"]+)"', re.IGNORECASE)

API_KEY_PARAM = "api_key"
TOKEN_PARAM = "X-Emby-Token"
AUTHORIZATION_HEADER = "X-Emby-Authorization"


def first_query_value(params: QueryParams, key: str) -> str:
    """Return the first value for ``key`` (query strings may repeat keys)."""

    values = params.getlist(key)
    return values[0] if values else ""


def extract_header_token(header: str | None) -> str:
    if not header:
        return ""
    match = AUTH_TOKEN_PATTERN.search(header)
    return match.group(1) if match else ""


def extract_api_key(request: Request, fallback: str) -> str:
    """Pick the credential for the upstream call.

    Order: ``api_key`` query, ``X-Emby-Token`` query, ``token="..."`` inside the
    ``X-Emby-Authorization`` header, then the configured fallback. May return
    an empty string; the resolver reports that case.
    """

    params = request.query_params
    for key in (API_KEY_PARAM, TOKEN_PARAM):
        value = first_query_value(params, key)
        if value:
            return value
    token = extract_header_token(request.headers.get(AUTHORIZATION_HEADER))
    if token:
        return token
    return fallback
