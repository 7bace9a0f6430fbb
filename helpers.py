"""General-purpose helper utilities shared across the importer."""

from __future__ import annotations

import numbers
import re
import unicodedata
from datetime import datetime, timezone
from typing import Any, Callable

import pandas as pd


__all__ = [
    "MAX_SLUG_LENGTH",
    "_coerce_int",
    "_normalize_lookup_name",
    "_parse_timestamp",
    "ensure_unique_slug",
    "generate_slug",
    "seconds_to_hours",
    "utcnow",
]


MAX_SLUG_LENGTH = 100

_TURKISH_FOLDS = str.maketrans(
    {
        "ç": "c",
        "ğ": "g",
        "ı": "i",
        "ö": "o",
        "ş": "s",
        "ü": "u",
        "Ç": "c",
        "Ğ": "g",
        "İ": "i",
        "Ö": "o",
        "Ş": "s",
        "Ü": "u",
    }
)
_SLUG_INVALID_CHARS = re.compile(r"[^a-z0-9\s-]")
_SLUG_SEPARATORS = re.compile(r"[\s-]+")


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _normalize_lookup_name(value: Any) -> str:
    if value is None:
        return ""
    if isinstance(value, str):
        return value.strip()
    try:
        if pd.isna(value):
            return ""
    except (TypeError, ValueError):
        pass
    return str(value).strip()


def _coerce_int(value: Any) -> int | None:
    """Return ``value`` as an ``int`` or ``None`` for blanks and garbage."""

    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, numbers.Integral):
        return int(value)
    if isinstance(value, numbers.Real):
        try:
            if pd.isna(value):
                return None
        except (TypeError, ValueError):
            pass
        return int(value) if float(value).is_integer() else None
    text = str(value).strip()
    if not text or text.lower() == "nan":
        return None
    try:
        numeric = float(text)
    except (TypeError, ValueError):
        return None
    return int(numeric) if numeric.is_integer() else None


def _parse_timestamp(value: Any) -> datetime | None:
    """Convert a unix timestamp in seconds to an aware UTC ``datetime``."""

    if value in (None, "", 0):
        return None
    try:
        timestamp = float(value)
    except (TypeError, ValueError):
        try:
            timestamp = float(str(value).strip())
        except (TypeError, ValueError):
            return None
    if timestamp <= 0:
        return None
    try:
        return datetime.fromtimestamp(timestamp, tz=timezone.utc)
    except (OverflowError, OSError, ValueError):
        return None


def generate_slug(value: Any) -> str:
    """Return a URL-safe slug for ``value``.

    Turkish letters are folded to ASCII, remaining diacritics are stripped,
    anything outside ``[a-z0-9]`` becomes a single hyphen and the result is
    capped at :data:`MAX_SLUG_LENGTH` characters.
    """

    text = _normalize_lookup_name(value)
    if not text:
        return ""
    text = text.translate(_TURKISH_FOLDS).lower()
    decomposed = unicodedata.normalize("NFD", text)
    text = "".join(ch for ch in decomposed if unicodedata.category(ch) != "Mn")
    text = unicodedata.normalize("NFC", text)
    text = _SLUG_INVALID_CHARS.sub("", text)
    text = _SLUG_SEPARATORS.sub("-", text).strip("-")
    if len(text) > MAX_SLUG_LENGTH:
        text = text[:MAX_SLUG_LENGTH].rstrip("-")
    return text


def ensure_unique_slug(
    base_slug: str,
    slug_exists: Callable[[str], bool],
    *,
    fallback: str = "game",
) -> str:
    """Return ``base_slug`` or the first ``base_slug-N`` (N >= 2) not in use."""

    base = base_slug or fallback
    if not slug_exists(base):
        return base
    counter = 2
    while True:
        suffix = f"-{counter}"
        candidate = f"{base[: MAX_SLUG_LENGTH - len(suffix)].rstrip('-')}{suffix}"
        if not slug_exists(candidate):
            return candidate
        counter += 1


def seconds_to_hours(seconds: Any) -> float | None:
    """Return ``seconds`` as hours rounded to one decimal, ``None`` when unset."""

    value = _coerce_int(seconds)
    if value is None or value <= 0:
        return None
    return round(value / 3600.0, 1)
