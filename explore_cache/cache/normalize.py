"""
Deterministic cache identities for free-text medical topics and question stems.

Synonymous topic inputs collapse to one key:
    "Brachial plexus anatomy"  -> "brachial-plexus"
    "Brachial Plexus"          -> "brachial-plexus"
    "brachial plexus overview" -> "brachial-plexus"

All functions here are pure, never raise, and are idempotent.
"""
from __future__ import annotations

import re
from typing import Iterable

# Trailing words that do not change the medical meaning of a topic.
NOISE_SUFFIXES = frozenset({
    "anatomy",
    "physiology",
    "pathology",
    "management",
    "overview",
    "review",
    "basics",
    "introduction",
    "summary",
    "clinical",
    "medical",
    "disease",
    "disorder",
    "syndrome",
    "condition",
})

MAX_TOPIC_KEY_LENGTH = 80
MAX_SEGMENT_LENGTH = 20
DEFAULT_LEVEL = "MD3"

_NON_TOPIC_CHARS = re.compile(r"[^a-z0-9\s-]")
_NON_LEVEL_CHARS = re.compile(r"[^A-Z0-9]")
_NON_EXAM_CHARS = re.compile(r"[^A-Z0-9_]")
_WHITESPACE = re.compile(r"\s+")
_HYPHENS = re.compile(r"-+")


def normalize_topic_key(topic: str | None) -> str:
    """
    Normalise a free-text topic into a stable, URL-safe key.

    Args:
        topic: Raw topic from user input

    Returns:
        Lowercase hyphenated key, at most 80 characters, "topic" when empty
    """
    normalized = _NON_TOPIC_CHARS.sub(" ", str(topic or "").lower())
    normalized = _WHITESPACE.sub(" ", normalized).strip()

    words = normalized.split(" ")
    while len(words) > 1 and words[-1] in NOISE_SUFFIXES:
        words.pop()

    key = _HYPHENS.sub("-", "-".join(words))[:MAX_TOPIC_KEY_LENGTH]
    return key or "topic"


def normalize_level_key(level: str | None) -> str:
    """Uppercase alphanumeric level segment, defaulting to MD3."""
    key = _NON_LEVEL_CHARS.sub("", str(level or "").upper())[:MAX_SEGMENT_LENGTH]
    return key or DEFAULT_LEVEL


def normalize_exam_key(exam_type: str | None) -> str:
    """Uppercase exam-type segment (alphanumerics and underscore)."""
    return _NON_EXAM_CHARS.sub("", str(exam_type or "").upper())[:MAX_SEGMENT_LENGTH]


def build_cache_key(topic: str | None, level: str | None, exam_type: str | None = None) -> str:
    """
    Build the store key for a topic + level (+ optional exam type).

    Examples:
        build_cache_key("Brachial plexus", "MD3")  -> "MD3__brachial-plexus"
        build_cache_key("Sepsis", "md4", "plab1")  -> "MD4__PLAB1__sepsis"
    """
    topic_key = normalize_topic_key(topic)
    level_key = normalize_level_key(level)

    if exam_type:
        return f"{level_key}__{normalize_exam_key(exam_type)}__{topic_key}"

    return f"{level_key}__{topic_key}"


def build_gap_id(topic: str | None, level: str | None, content_type: str) -> str:
    """Gap record id: ``contentType__level__topicKey``."""
    return f"{content_type}__{normalize_level_key(level)}__{normalize_topic_key(topic)}"


def normalize_stem_key(stem: str | None) -> str:
    """Comparison key for question stems: collapsed whitespace, trimmed, lowercase."""
    return _WHITESPACE.sub(" ", str(stem or "")).strip().lower()


def to_stem_key_set(stems: Iterable[str | None] | None) -> set[str]:
    """Normalised, non-empty stem keys from an iterable of raw stems."""
    keys: set[str] = set()
    for stem in stems or ():
        key = normalize_stem_key(stem)
        if key:
            keys.add(key)
    return keys
