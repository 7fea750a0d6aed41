from __future__ import annotations

from typing import Iterable


# Values the model emits when it means "no indicators".
PLACEHOLDER_VALUES = frozenset(
    {
        "",
        "[]",
        "[ ]",
        "none",
        "no indicators",
        "no foul indicators",
        "n/a",
        "not applicable",
    }
)


def is_placeholder(value: str) -> bool:
    return value.strip().lower() in PLACEHOLDER_VALUES


def _dedupe(parts: Iterable[str]) -> list[str]:
    out: list[str] = []
    seen: set[str] = set()
    for part in parts:
        clean = part.strip()
        if not clean or is_placeholder(clean):
            continue
        key = clean.lower()
        if key in seen:
            continue
        seen.add(key)
        out.append(clean)
    return out


def normalize_indicators(fragment: str | Iterable[str]) -> list[str]:
    """
    Normalize a FOUL_INDICATORS value into an ordered, de-duplicated list.

    A string is treated as the remainder of a ``FOUL_INDICATORS:`` line: one
    pair of outer brackets is stripped and the rest is split on commas. An
    iterable is treated as already-separated bullet fragments and each item is
    kept whole. Duplicates are compared case-insensitively; the first-seen
    casing is preserved.
    """
    if not isinstance(fragment, str):
        return _dedupe(str(item) for item in fragment)

    text = fragment.strip()
    if is_placeholder(text):
        return []
    if text.startswith("[") and text.endswith("]"):
        text = text[1:-1].strip()
        if is_placeholder(text):
            return []
    return _dedupe(text.split(","))
