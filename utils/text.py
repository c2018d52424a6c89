"""
Text helpers shared by primitives and workflow handlers:
numbered-selection parsing, {{placeholder}} interpolation and the small
sanitizers applied to free-text answers.
"""
from __future__ import annotations

import re
from typing import Any, Mapping, Optional

from utils.paths import get_nested_value

_PLACEHOLDER = re.compile(r"\{\{\s*([\w.]+)\s*\}\}")
_NOT_SELECTION = re.compile(r"[0-9,\s]")
_CONTROL_CHARS = re.compile(r"[\x00-\x1f\x7f]")


def interpolate(template: str, values: Mapping[str, Any]) -> str:
    """
    Replace {{key}} / {{a.b}} placeholders. Unknown keys are left as-is so a
    missing value is visible instead of silently blank.
    """
    def replacer(match):
        value = get_nested_value(values, match.group(1))
        return match.group(0) if value is None else str(value)
    return _PLACEHOLDER.sub(replacer, template)


# ── Numbered selections ───────────────────────────────

def sanitize_numeric_selection_input(raw: str) -> tuple[str, bool]:
    """
    Split a selection reply into (normalized, invalid). Anything other than
    digits, commas and whitespace marks the reply invalid.
    """
    invalid = bool(_NOT_SELECTION.sub("", raw).strip())
    normalized = re.sub(r"\s+", " ", re.sub(r"[^0-9,\s]", " ", raw)).strip()
    return normalized, invalid


def parse_numeric_selection_indices(raw: str, max_index: int) -> Optional[list[int]]:
    """
    1-based indices in first-seen order, de-duplicated. None when nothing
    numeric is present or any index falls outside 1..max_index.
    """
    if not raw:
        return None
    indices = [int(m) for m in re.findall(r"\d+", raw)]
    if not indices:
        return None
    unique = list(dict.fromkeys(indices))
    if any(n < 1 or n > max_index for n in unique):
        return None
    return unique


def numbered_list(items: list[str]) -> str:
    return "\n".join(f"{i}. {item}" for i, item in enumerate(items, start=1))


# ── Free text ─────────────────────────────────────────

def sanitize_free_text(raw: str, max_length: int = 600) -> str:
    """Strip control characters, collapse whitespace and cap the length."""
    cleaned = re.sub(r"\s+", " ", _CONTROL_CHARS.sub(" ", raw or "")).strip()
    return cleaned[:max_length]


def span_sanitizer(raw: Optional[str], fallback: str) -> str:
    if not raw:
        return fallback
    return re.sub(r"[.?!]+$", "", raw.strip()) or fallback


def truncate_words(text: str, max_words: int = 12) -> str:
    words = text.split()
    if len(words) <= max_words:
        return text
    return " ".join(words[:max_words])


def detect_sentiment(answer: str) -> str:
    """Rough sentiment bucket: "concerned", "positive" or "neutral"."""
    lower = answer.lower()
    if re.search(r"\b(stressed|blocked|stuck|frustrated|urgent|risk|concerned|worried)\b", lower):
        return "concerned"
    if re.search(r"\b(great|good|perfect|exactly|yes)\b", lower):
        return "positive"
    return "neutral"


_FIRST_PERSON = [
    (re.compile(r"\bI am\b"), "We are"),
    (re.compile(r"\bI'm\b"), "We're"),
    (re.compile(r"\bI've\b"), "We've"),
    (re.compile(r"\bI'll\b"), "We'll"),
    (re.compile(r"\bI'd\b"), "We'd"),
    (re.compile(r"\bI\b"), "we"),
    (re.compile(r"\bmy\b", re.IGNORECASE), "our"),
    (re.compile(r"\bme\b", re.IGNORECASE), "us"),
]


def remove_first_person(text: str) -> str:
    """Rewrite singular first-person phrasing to the plural agent voice."""
    for pattern, replacement in _FIRST_PERSON:
        text = pattern.sub(replacement, text)
    if text and text[0].islower():
        text = text[0].upper() + text[1:]
    return text
