"""Text normalisation, hashing and preview helpers."""

from __future__ import annotations

import hashlib
import re
import unicodedata

_WHITESPACE_RUN = re.compile(r"\s+")


def collapse_whitespace(text: str) -> str:
    """Collapse consecutive whitespace characters into single spaces."""

    if not text:
        return ""
    return _WHITESPACE_RUN.sub(" ", text).strip()


def normalise_for_embedding(text: str) -> tuple[str, str]:
    """Return collapsed text alongside the hashable normalised form."""

    stripped = text.strip()
    if not stripped:
        return "", ""

    collapsed = collapse_whitespace(stripped)
    nfkc = unicodedata.normalize("NFKC", collapsed)
    normalised = nfkc.casefold()
    return collapsed, normalised


def text_hash(text: str) -> str:
    """Stable sha256 digest of the normalised text, used to detect unchanged chunks."""

    _, normalised = normalise_for_embedding(text)
    return hashlib.sha256(normalised.encode("utf-8")).hexdigest()


def preview(text: str, limit: int = 160) -> str:
    collapsed = collapse_whitespace(text)
    if len(collapsed) <= limit:
        return collapsed
    return collapsed[:limit].rstrip() + "…"
