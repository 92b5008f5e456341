"""Resolve the storage path of a media source through Emby's PlaybackInfo API.

Usage:
    resolver = MediaPathResolver(settings.emby, client)
    path = await resolver.resolve("123", "abc", api_key)
"""

from __future__ import annotations

import logging
from typing import Any, List

import anyio
import httpx
from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

from app.config import EmbyConnection


logger = logging.getLogger("emby_302.playback")


class MediaPathError(RuntimeError):
    """Base class for failures while resolving a media path."""


class CredentialMissingError(MediaPathError):
    """No API key was available for the upstream call."""


class UpstreamUnreachableError(MediaPathError):
    """Transport failure or timeout talking to Emby."""


class UpstreamUnauthorizedError(MediaPathError):
    """Emby rejected the API key."""


class UpstreamBadStatusError(MediaPathError):
    def __init__(self, status_code: int):
        super().__init__(f"Emby API returned non-200 status: {status_code}")
        self.status_code = status_code


class UpstreamMalformedResponseError(MediaPathError):
    """The PlaybackInfo body could not be decoded."""


class NoMediaSourceError(MediaPathError):
    """PlaybackInfo listed no media sources."""


class MediaSourceInfo(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    path: str = Field(default="", alias="Path")

    @field_validator("path", mode="before")
    @classmethod
    def _none_as_empty(cls, value: Any) -> Any:
        return "" if value is None else value


class PlaybackInfo(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    media_sources: List[MediaSourceInfo] = Field(default_factory=list, alias="MediaSources")

    @field_validator("media_sources", mode="before")
    @classmethod
    def _none_as_empty(cls, value: Any) -> Any:
        return [] if value is None else value


def playback_info_url(connection: EmbyConnection, item_id: str) -> str:
    return f"{connection.base_url}/emby/Items/{item_id}/PlaybackInfo"


class MediaPathResolver:
    """Ask Emby for the canonical path of an item's media source.

    The shared ``httpx.AsyncClient`` is safe for concurrent use; every call,
    headers and body together, must finish within the connection's fixed
    timeout and is never retried.
    """

    def __init__(self, connection: EmbyConnection, client: httpx.AsyncClient):
        self.connection = connection
        self.client = client

    async def resolve(self, item_id: str, media_source_id: str, api_key: str) -> str:
        if not api_key:
            raise CredentialMissingError("API key is empty; cannot query Emby")

        url = playback_info_url(self.connection, item_id)
        params = {"MediaSourceId": media_source_id, "api_key": api_key}
        # httpx timeouts are per phase; the deadline bounds the whole exchange
        # including a slowly trickled body.
        try:
            with anyio.fail_after(self.connection.timeout_s):
                response = await self.client.get(url, params=params, timeout=self.connection.timeout_s)
        except TimeoutError as exc:
            raise UpstreamUnreachableError(
                f"Emby API request exceeded {self.connection.timeout_s:g}s deadline"
            ) from exc
        except httpx.RequestError as exc:
            raise UpstreamUnreachableError(f"Emby API request failed: {exc!r}") from exc

        if response.status_code == 401:
            raise UpstreamUnauthorizedError(
                "Emby API authentication failed (401 Unauthorized); check that the API key is valid"
            )
        if response.status_code != 200:
            raise UpstreamBadStatusError(response.status_code)

        try:
            info = PlaybackInfo.model_validate(response.json())
        except (ValueError, ValidationError) as exc:
            raise UpstreamMalformedResponseError(f"Failed to decode Emby API response: {exc}") from exc

        if not info.media_sources:
            raise NoMediaSourceError("No media sources found (MediaSources)")
        return info.media_sources[0].path
