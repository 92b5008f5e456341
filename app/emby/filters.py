"""Request admission checks: client filtering and the download policy gate.

Example:
    client_filter = ClientFilter(enabled=True, mode="blacklist", patterns={"infuse"})
    client_filter.should_block("Infuse/7.0")  # True
    is_download_blocked("403", "/emby/Items/42/Download")  # True
"""

from __future__ import annotations

from typing import Iterable

from app.config import BLOCK_DOWNLOAD_STRATEGY, ClientFilterConfig


ITEMS_MARKER = "/Items/"
DOWNLOAD_MARKER = "/Download"


class ClientFilter:
    """Block or admit requests by substring matching on the User-Agent."""

    def __init__(self, enabled: bool, mode: str, patterns: Iterable[str]):
        self.enabled = enabled
        self.mode = mode
        self.patterns = frozenset(
            cleaned for cleaned in (pattern.strip().lower() for pattern in patterns) if cleaned
        )

    @classmethod
    def from_config(cls, config: ClientFilterConfig) -> "ClientFilter":
        return cls(enabled=config.enable, mode=config.mode, patterns=config.client_list)

    def matches(self, user_agent: str) -> bool:
        lowered = (user_agent or "").lower()
        return any(pattern in lowered for pattern in self.patterns)

    def should_block(self, user_agent: str) -> bool:
        if not self.enabled:
            return False
        if self.mode == "blacklist":
            return self.matches(user_agent)
        if self.mode == "whitelist":
            return not self.matches(user_agent)
        return False


def is_download_request(path: str) -> bool:
    return ITEMS_MARKER in path and DOWNLOAD_MARKER in path


def is_download_blocked(strategy: str, path: str) -> bool:
    """Only the literal blocking strategy blocks; every other value allows downloads."""

    return strategy == BLOCK_DOWNLOAD_STRATEGY and is_download_request(path)
