"""Storage path to public URL rewriting.

Example:
    rules = parse_path_map(["/mnt/media => http://cdn.example.com"])
    PathMapper(rules).map("/mnt/media/movie.mkv")
    # -> "http://cdn.example.com/movie.mkv"
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Iterable, Sequence, Tuple


logger = logging.getLogger("emby_302.path_map")

RULE_SEPARATOR = "=>"


@dataclass(frozen=True)
class PathMapRule:
    source: str
    target: str


def parse_rule(entry: str) -> PathMapRule | None:
    """Parse a single ``"<from> => <to>"`` entry, returning None when malformed."""

    parts = entry.split(RULE_SEPARATOR, 1)
    if len(parts) != 2:
        return None
    source, target = parts[0].strip(), parts[1].strip()
    if not source or not target:
        return None
    return PathMapRule(source=source, target=target)


def parse_path_map(entries: Iterable[str]) -> Tuple[PathMapRule, ...]:
    """Parse configured entries in declared order, skipping malformed ones."""

    rules: list[PathMapRule] = []
    for entry in entries:
        rule = parse_rule(entry)
        if rule is None:
            logger.warning("Ignoring invalid path-map rule: %s", entry)
            continue
        rules.append(rule)
        logger.info("Loaded path-map rule: '%s' => '%s'", rule.source, rule.target)
    return tuple(rules)


class PathMapper:
    """Apply the first matching rule to a storage path."""

    def __init__(self, rules: Sequence[PathMapRule]):
        self._rules = tuple(rules)

    @property
    def rules(self) -> Tuple[PathMapRule, ...]:
        return self._rules

    def map(self, path: str) -> str:
        for rule in self._rules:
            if rule.source in path:
                return path.replace(rule.source, rule.target, 1)
        return path
