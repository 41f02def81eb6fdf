"""Keyword normalisation and the keyword-set hash used as cache key."""

import hashlib
from typing import Iterable


def normalize_keywords(keywords: Iterable[str]) -> list[str]:
    """Trim, lower-case and dedupe, keeping first-seen order."""
    seen: dict[str, None] = {}
    for kw in keywords:
        kw = (kw or "").strip().lower()
        if kw:
            seen.setdefault(kw, None)
    return list(seen)


def keyword_set_hash(city: str, keywords: Iterable[str]) -> str:
    """SHA-1 over the city and the sorted normalised keyword set.

    Independent of keyword order, case and surrounding whitespace.
    """
    parts = [city.strip(), *sorted(normalize_keywords(keywords))]
    return hashlib.sha1("|".join(parts).encode("utf-8")).hexdigest()
