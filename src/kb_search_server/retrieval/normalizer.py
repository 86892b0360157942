"""Text canonicalization shared by indexing and query paths."""

from __future__ import annotations

import re
from typing import Optional

_WHITESPACE = re.compile(r"\s+")
_NON_WORD = re.compile(r"[^\w\s]")


def normalize(text: Optional[str]) -> str:
    """
    Lowercase, collapse whitespace, drop punctuation and trim.

    Must be applied identically to document chunks and to queries.
    """
    if not text:
        return ""
    lowered = text.lower()
    collapsed = _WHITESPACE.sub(" ", lowered)
    stripped = _NON_WORD.sub("", collapsed)
    # Removing punctuation can leave doubled spaces ("a - b"), so collapse again
    return _WHITESPACE.sub(" ", stripped).strip()
