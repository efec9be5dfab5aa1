"""
Per-user variation of cached question pools.

Ensures no two users see an identical quiz from the same shared pool:

1. Filter out recently-seen stems (fall back to the whole pool when too few remain).
2. Shuffle the eligible pool so equally-scored candidates differ between calls.
3. Select the best ``count`` questions against the level's difficulty band.
4. Apply micro-variations: shuffle option order, remap the correct index and
   the per-option explanations, stamp a new per-user id.

Randomness always comes from an injected ``random.Random`` so selections are
reproducible under a fixed seed.
"""
from __future__ import annotations

import random
import time
from typing import Iterable, Sequence

from explore_cache.cache.normalize import normalize_stem_key, to_stem_key_set
from explore_cache.levels import LevelProfile
from explore_cache.models import DEFAULT_WRONG_EXPLANATION, Question


def score_question(question: Question, level_profile: LevelProfile) -> float:
    """
    Rank a question against a level band.

    Rewards on-band, harder and better-cited items and penalises distance
    from the band midpoint.
    """
    band_min = level_profile.min_difficulty or 1
    band_max = level_profile.max_difficulty or 5
    midpoint = (band_min + band_max) / 2
    difficulty = question.difficulty

    in_band = 100 if band_min <= difficulty <= band_max else 0
    distance_penalty = abs(difficulty - midpoint) * 12
    hard_bonus = difficulty * 9 if band_min >= 4 else difficulty * 4
    citation_bonus = min(3, len(question.citations or [])) * 3

    return in_band + hard_bonus + citation_bonus - distance_penalty


def prioritise_questions(
    questions: Iterable[Question],
    level_profile: LevelProfile,
    count: int,
) -> list[Question]:
    """Deduplicate by stem (first wins), rank by score, return the top ``count``."""
    seen_stems: set[str] = set()
    unique: list[Question] = []
    for question in questions:
        key = normalize_stem_key(question.stem)
        if not key or key in seen_stems:
            continue
        seen_stems.add(key)
        unique.append(question)

    # sorted() is stable, so input order breaks score ties
    ranked = sorted(unique, key=lambda q: score_question(q, level_profile), reverse=True)
    return ranked[: max(0, count)]


def vary_question(question: Question, new_id: str, rng: random.Random | None = None) -> Question:
    """
    Shuffle a question's options and keep its answer key consistent.

    The option at the old ``correct_index`` is found at the new one, and
    ``why_others_wrong`` is permuted in parallel (missing entries get a
    generic fallback).
    """
    option_count = len(question.options)
    if option_count == 0:
        return question.model_copy(update={"id": new_id})

    rng = rng or random.Random()
    # permutation[new_position] = original_position
    permutation = list(range(option_count))
    rng.shuffle(permutation)

    new_options = [question.options[i] for i in permutation]
    new_correct_index = (
        permutation.index(question.correct_index)
        if 0 <= question.correct_index < option_count
        else question.correct_index
    )

    old_wow = question.explanation.why_others_wrong
    new_wow = [
        old_wow[i] if i < len(old_wow) and old_wow[i] else DEFAULT_WRONG_EXPLANATION
        for i in permutation
    ]

    return question.model_copy(
        update={
            "id": new_id,
            "options": new_options,
            "correct_index": new_correct_index,
            "explanation": question.explanation.model_copy(update={"why_others_wrong": new_wow}),
        }
    )


def select_and_vary(
    pool: Sequence[Question],
    count: int,
    level_profile: LevelProfile,
    exclude_stems: Iterable[str] | None = None,
    rng: random.Random | None = None,
    stamp: int | None = None,
) -> list[Question]:
    """
    Select and vary ``count`` questions from a cached pool.

    Args:
        pool: Cached questions (up to the per-topic cap)
        count: Desired quiz size
        level_profile: Level band used for ranking
        exclude_stems: Recently-seen stems to filter out
        rng: Random source (a fresh ``random.Random`` when omitted)
        stamp: Id timestamp in epoch milliseconds (current time when omitted)

    Returns:
        Varied questions with ids ``explore_{stamp}_{index}``
    """
    if not pool or count <= 0:
        return []

    rng = rng or random.Random()

    exclude = to_stem_key_set(exclude_stems)
    eligible = [q for q in pool if (key := normalize_stem_key(q.stem)) and key not in exclude]

    # Too few unseen questions: ignore the exclusion list
    source = eligible if len(eligible) >= count else list(pool)

    shuffled = list(source)
    rng.shuffle(shuffled)

    selected = prioritise_questions(shuffled, level_profile, count)

    stamp = stamp if stamp is not None else int(time.time() * 1000)
    return [vary_question(q, f"explore_{stamp}_{i}", rng) for i, q in enumerate(selected)]
