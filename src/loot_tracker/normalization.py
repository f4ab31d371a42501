"""Utilities to normalize roster names and spot near-miss matches."""

from __future__ import annotations

import re
from typing import Iterable, Optional, Sequence

from .events import KillEvent

_WHITESPACE_PATTERN = re.compile(r"\s+")


def normalize_member_name(value: Optional[str]) -> Optional[str]:
    """Trim and collapse whitespace; in-game names never contain spaces."""
    if not value:
        return None
    normalized = _WHITESPACE_PATTERN.sub("", value.strip())
    return normalized or None


def parse_member_names(text: str) -> list[str]:
    """Split a pasted roster (one name per line or comma-separated), keeping order."""
    names: list[str] = []
    seen: set[str] = set()
    for chunk in re.split(r"[\r\n,]+", text or ""):
        name = normalize_member_name(chunk)
        if name and name not in seen:
            seen.add(name)
            names.append(name)
    return names


def find_name_mismatches(
    events: Sequence[KillEvent], names: Iterable[str]
) -> list[tuple[str, str]]:
    """Pairs of (roster name, feed name) that overlap but are not equal.

    Used when a poll matched nothing, to hint at typos or renamed characters.
    """
    seen_names: set[str] = set()
    for event in events:
        if event.killer.name:
            seen_names.add(event.killer.name)
        seen_names.update(p.name for p in event.participants if p.name)

    mismatches: list[tuple[str, str]] = []
    for target in names:
        lowered_target = target.casefold()
        for candidate in sorted(seen_names):
            lowered = candidate.casefold()
            if lowered == lowered_target and candidate == target:
                continue
            if lowered_target in lowered or lowered in lowered_target:
                mismatches.append((target, candidate))
    return mismatches
