"""Shared input sanitizers for dates, languages and localized text."""

from __future__ import annotations

import json
import re
from collections.abc import Iterable, Mapping
from datetime import date, datetime
from typing import Any

ISO_DATE_PREFIX = re.compile(r"^(\d{4}-\d{2}-\d{2})")
SUPPORTED_LANGS = ("en", "pl")
DEFAULT_LANG = "en"


def normalize_iso_date(value: Any) -> date | None:
    """Coerce a `YYYY-MM-DD` prefix or any ISO datetime into a calendar date."""
    if value is None:
        return None
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    raw = str(value).strip()
    if not raw:
        return None
    match = ISO_DATE_PREFIX.match(raw)
    if match:
        try:
            return date.fromisoformat(match.group(1))
        except ValueError:
            return None
    try:
        return datetime.fromisoformat(raw.replace("Z", "+00:00")).date()
    except ValueError:
        return None


def unique_iso_dates(values: Iterable[Any] | None) -> list[date]:
    """Normalize and deduplicate, preserving first-seen order. Invalid entries are dropped."""
    if not values:
        return []
    seen: set[date] = set()
    result: list[date] = []
    for value in values:
        parsed = normalize_iso_date(value)
        if parsed is None or parsed in seen:
            continue
        seen.add(parsed)
        result.append(parsed)
    return result


def first_iso(*candidates: Any) -> date | None:
    for candidate in candidates:
        parsed = normalize_iso_date(candidate)
        if parsed is not None:
            return parsed
    return None


def in_window(value: date, start: date | None, end: date | None) -> bool:
    if start is not None and value < start:
        return False
    if end is not None and value > end:
        return False
    return True


def normalize_lang(value: Any) -> str:
    raw = str(value or "").strip().lower()
    return raw if raw in SUPPORTED_LANGS else DEFAULT_LANG


def read_localized_text(value: Any, lang: str) -> str | None:
    """Pick `lang` (then the other supported language) from a string, a mapping or its JSON form."""
    if value is None:
        return None
    if isinstance(value, str):
        stripped = value.strip()
        if not stripped:
            return None
        if not stripped.startswith("{"):
            return stripped
        try:
            value = json.loads(stripped)
        except ValueError:
            return stripped
    if isinstance(value, Mapping):
        fallback = "en" if lang == "pl" else "pl"
        for key in (lang, fallback):
            text = value.get(key)
            if isinstance(text, str) and text.strip():
                return text.strip()
        for key in ("title", "name", "label", "value"):
            nested = read_localized_text(value.get(key), lang)
            if nested:
                return nested
    return None


def normalize_resource_type(value: Any) -> str:
    raw = str(value or "").strip().lower()
    return "trips" if raw in {"trip", "trips"} else raw


def read_number(source: Mapping[str, Any] | None, *keys: str) -> float | None:
    """First finite numeric value among `keys`; accepts numeric strings."""
    if not source:
        return None
    for key in keys:
        value = source.get(key)
        if value is None or isinstance(value, bool):
            continue
        try:
            number = float(value)
        except (TypeError, ValueError):
            continue
        if number == number and number not in (float("inf"), float("-inf")):
            return number
    return None


__all__ = [
    "DEFAULT_LANG",
    "SUPPORTED_LANGS",
    "first_iso",
    "in_window",
    "normalize_iso_date",
    "normalize_lang",
    "normalize_resource_type",
    "read_localized_text",
    "read_number",
    "unique_iso_dates",
]
