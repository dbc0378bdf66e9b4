"""Text normalisation and content hashing helpers for event embeddings."""

from __future__ import annotations

import hashlib
import unicodedata
from typing import Iterable, Optional


def collapse_whitespace(text: str) -> str:
    """Collapse consecutive whitespace characters (including Unicode spaces) into single spaces."""

    if not text:
        return ""
    return " ".join(text.split())


def normalise_for_embedding(text: str) -> tuple[str, str]:
    """Return collapsed text alongside the hashable normalised form."""

    stripped = text.strip()
    if not stripped:
        return "", ""

    collapsed = collapse_whitespace(stripped)
    nfkc = unicodedata.normalize("NFKC", collapsed)
    return collapsed, nfkc.casefold()


def build_event_text(parts: Iterable[Optional[str]], *, max_chars: int | None = None) -> str:
    """Join the non-empty text fields of an event (title, description, transcript)."""

    pieces = [collapse_whitespace(part.strip()) for part in parts if part and part.strip()]
    text = "\n\n".join(pieces)
    if max_chars is not None and len(text) > max_chars:
        text = text[:max_chars]
    return text


def compute_content_hash(text: str) -> str:
    """Hash the normalised (NFKC, casefolded, whitespace-collapsed) form of ``text``.

    Edits that only change letter case or whitespace produce the same hash, so they do not
    mark a stored embedding as stale and are not re-embedded by a batch run.
    """

    _, normalised = normalise_for_embedding(text)
    return hashlib.sha256(normalised.encode("utf-8")).hexdigest()


def normalise_entity_name(name: str) -> tuple[str, str]:
    """Return the display form and the case-insensitive key for a tag, person or location."""

    collapsed, normalised = normalise_for_embedding(name)
    return collapsed, normalised
