"""Trigram title similarity, matching PostgreSQL pg_trgm's similarity().

Used when the store runs on a database without pg_trgm (SQLite in tests and
local development) so that the duplicate thresholds mean the same thing on
every backend.
"""

import re
from typing import FrozenSet

_WORD_RE = re.compile(r"[^\W_]+", re.UNICODE)


def trigrams(text: str) -> FrozenSet[str]:
    """Trigram set of ``text`` the way pg_trgm builds it.

    Each alphanumeric word is lower-cased and padded with two leading blanks
    and one trailing blank before being cut into trigrams.
    """
    grams = set()
    for word in _WORD_RE.findall((text or "").lower()):
        padded = f"  {word} "
        for i in range(len(padded) - 2):
            grams.add(padded[i:i + 3])
    return frozenset(grams)


def similarity(a: str, b: str) -> float:
    """Shared trigrams over distinct trigrams, in [0, 1]."""
    left = trigrams(a)
    right = trigrams(b)
    if not left or not right:
        return 0.0
    shared = len(left & right)
    return shared / float(len(left) + len(right) - shared)
