"""Mention extraction for comment bodies."""

from __future__ import annotations

import re
from collections.abc import Iterable
from functools import lru_cache
from typing import Optional

from .config import get_settings


@lru_cache(maxsize=32)
def _pattern(names: tuple[str, ...]) -> re.Pattern[str]:
    # Longest first so that overlapping roster names prefer the fuller match.
    alternation = "|".join(re.escape(name) for name in sorted(names, key=len, reverse=True))
    return re.compile(rf"@({alternation})(?![A-Za-z0-9_])", re.IGNORECASE)


def parse_mentions(
    text: str,
    roster: Optional[Iterable[str]] = None,
    wildcard: Optional[str] = None,
) -> frozenset[str]:
    """Return the lower-cased set of roster names mentioned in ``text``.

    Markers take the form ``@name`` and match case-insensitively. Names outside
    the roster are ignored. When the wildcard marker (``@all`` by default) is
    present anywhere, the result is the full roster regardless of other markers.

    Roster and wildcard default to ``MENTION_ROSTER`` / ``MENTION_WILDCARD``.
    """
    if roster is None or wildcard is None:
        messaging = get_settings().messaging
        if roster is None:
            roster = messaging.mention_roster
        if wildcard is None:
            wildcard = messaging.mention_wildcard
    known = tuple(dict.fromkeys(name.strip().lower() for name in roster if name and name.strip()))
    wildcard_key = wildcard.strip().lower()
    if not text:
        return frozenset()

    candidates = known + ((wildcard_key,) if wildcard_key and wildcard_key not in known else ())
    if not candidates:
        return frozenset()
    found = {match.group(1).lower() for match in _pattern(candidates).finditer(text)}
    if wildcard_key and wildcard_key in found:
        return frozenset(known)
    return frozenset(found)
