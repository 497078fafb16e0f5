from __future__ import annotations

from typing import Iterable, Optional


def first_match(text: str, patterns: Iterable[str]) -> Optional[str]:
    """Return the first pattern found (case-insensitively) in ``text``.

    Patterns are literal substrings, never regular expressions. Blank patterns
    are ignored so an empty entry in a user list cannot match everything.
    """
    if not text:
        return None
    lowered = text.lower()
    for pattern in patterns or ():
        if not isinstance(pattern, str):
            continue
        needle = pattern.strip().lower()
        if needle and needle in lowered:
            return pattern
    return None


def matches(text: str, patterns: Iterable[str]) -> bool:
    return first_match(text, patterns) is not None


def first_match_any(texts: Iterable[str], patterns: Iterable[str]) -> Optional[str]:
    # patterns may be a generator; materialize once
    pats = tuple(patterns or ())
    for text in texts:
        hit = first_match(text, pats)
        if hit is not None:
            return hit
    return None
