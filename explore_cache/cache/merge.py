"""
Question-set merge policy shared by the knowledge cache and the backfill worker.

Sets are given in priority order (newest first). The first occurrence of a
normalised stem wins, blank stems are dropped, and the result is capped so
that higher-priority content always survives the cap.
"""
from __future__ import annotations

from typing import Iterable, Sequence

from explore_cache.cache.normalize import normalize_stem_key
from explore_cache.models import Question


def merge_question_sets(
    question_sets: Iterable[Sequence[Question] | None],
    cap: int,
) -> list[Question]:
    """
    Merge question sets, deduplicating by normalised stem.

    Args:
        question_sets: Sets in priority order, newest content first
        cap: Maximum number of questions to keep

    Returns:
        Merged list, at most ``cap`` long, with unique stems
    """
    seen_stems: set[str] = set()
    merged: list[Question] = []

    for question_set in question_sets:
        for question in question_set or ():
            key = normalize_stem_key(question.stem)
            if not key or key in seen_stems:
                continue
            seen_stems.add(key)
            merged.append(question)

    return merged[: max(0, cap)]
