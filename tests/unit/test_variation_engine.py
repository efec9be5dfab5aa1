"""
Unit tests for question scoring, selection and per-user variation.
"""

import random

import pytest

from explore_cache.cache.normalize import normalize_stem_key
from explore_cache.cache.variation_engine import (
    prioritise_questions,
    score_question,
    select_and_vary,
    vary_question,
)
from explore_cache.levels import LevelProfile, get_assessment_level
from explore_cache.models import DEFAULT_WRONG_EXPLANATION, Question


@pytest.fixture
def md3():
    return get_assessment_level("MD3")


@pytest.fixture
def pool(question_factory):
    return [question_factory(f"Question stem {i}", difficulty=1 + i % 5, correct_index=i % 4) for i in range(12)]


class TestScoreQuestion:
    def test_in_band_question(self, question_factory, md3):
        # MD3 band 2-4, midpoint 3: 100 + 3*4 + 0 - 0
        assert score_question(question_factory("Q", difficulty=3), md3) == 112

    def test_out_of_band_question(self, question_factory, md3):
        # 0 + 5*4 + 0 - 2*12
        assert score_question(question_factory("Q", difficulty=5), md3) == -4

    def test_high_priority_band_rewards_hard_items(self, question_factory):
        resident = get_assessment_level("RESIDENT")
        # band 4-5, midpoint 4.5: 100 + 5*9 + 0 - 0.5*12
        assert score_question(question_factory("Q", difficulty=5), resident) == pytest.approx(139)

    def test_citation_bonus_is_capped(self, question_factory, md3):
        cited = question_factory("Q", difficulty=3, citations=[{"source": str(i)} for i in range(6)])
        assert score_question(cited, md3) == 112 + 9

    def test_missing_band_defaults(self, question_factory):
        profile = LevelProfile("X", "X", min_difficulty=0, max_difficulty=0)
        # band 1-5, midpoint 3
        assert score_question(question_factory("Q", difficulty=3), profile) == 112


class TestPrioritiseQuestions:
    def test_dedups_and_ranks(self, question_factory, md3):
        questions = [
            question_factory("Too easy", difficulty=1),
            question_factory("Just right", difficulty=3),
            question_factory("just  RIGHT", difficulty=1),
            question_factory("Hard", difficulty=4),
        ]

        ranked = prioritise_questions(questions, md3, 2)

        assert [q.stem for q in ranked] == ["Just right", "Hard"]

    def test_ties_keep_input_order(self, question_factory, md3):
        questions = [question_factory(f"Tie {i}", difficulty=3) for i in range(4)]
        assert [q.stem for q in prioritise_questions(questions, md3, 4)] == [f"Tie {i}" for i in range(4)]


class TestVaryQuestion:
    def test_correct_answer_survives_shuffle(self, sample_question):
        correct_text = sample_question.correct_option
        correct_why = sample_question.explanation.why_others_wrong[sample_question.correct_index]

        for seed in range(20):
            varied = vary_question(sample_question, f"id_{seed}", random.Random(seed))

            assert varied.id == f"id_{seed}"
            assert sorted(varied.options) == sorted(sample_question.options)
            assert varied.options[varied.correct_index] == correct_text
            assert varied.explanation.why_others_wrong[varied.correct_index] == correct_why

    def test_explanations_follow_their_options(self, sample_question):
        original = dict(zip(sample_question.options, sample_question.explanation.why_others_wrong))
        varied = vary_question(sample_question, "v", random.Random(7))

        assert dict(zip(varied.options, varied.explanation.why_others_wrong)) == original

    def test_missing_explanations_get_fallback(self, question_factory):
        question = question_factory("Q")
        question = question.model_copy(
            update={"explanation": question.explanation.model_copy(update={"why_others_wrong": ["only one"]})}
        )

        varied = vary_question(question, "v", random.Random(1))

        assert len(varied.explanation.why_others_wrong) == 4
        assert varied.explanation.why_others_wrong.count(DEFAULT_WRONG_EXPLANATION) == 3

    def test_no_options_only_changes_id(self):
        question = Question(stem="Open question", options=[])
        varied = vary_question(question, "new-id")

        assert varied.id == "new-id"
        assert varied.options == []
        assert varied.stem == question.stem

    def test_original_is_not_mutated(self, sample_question):
        before = sample_question.model_dump()
        vary_question(sample_question, "v", random.Random(3))
        assert sample_question.model_dump() == before


class TestSelectAndVary:
    def test_returns_requested_count_with_stamped_ids(self, pool, md3):
        selected = select_and_vary(pool, 5, md3, rng=random.Random(1), stamp=1718000000000)

        assert len(selected) == 5
        assert [q.id for q in selected] == [f"explore_1718000000000_{i}" for i in range(5)]
        assert len({normalize_stem_key(q.stem) for q in selected}) == 5

    def test_excludes_recently_seen_stems(self, pool, md3):
        seen = [q.stem for q in pool[:4]]

        selected = select_and_vary(pool, 5, md3, exclude_stems=seen, rng=random.Random(2))

        assert not {q.stem for q in selected} & set(seen)

    def test_falls_back_to_whole_pool_when_too_few_unseen(self, pool, md3):
        seen = [q.stem for q in pool[:10]]

        selected = select_and_vary(pool, 5, md3, exclude_stems=seen, rng=random.Random(3))

        assert len(selected) == 5

    def test_same_seed_is_reproducible(self, pool, md3):
        first = select_and_vary(pool, 5, md3, rng=random.Random(42), stamp=1)
        second = select_and_vary(pool, 5, md3, rng=random.Random(42), stamp=1)

        assert [q.model_dump() for q in first] == [q.model_dump() for q in second]

    def test_each_selected_question_keeps_its_answer(self, pool, md3):
        by_stem = {q.stem: q.correct_option for q in pool}

        for q in select_and_vary(pool, 8, md3, rng=random.Random(9)):
            assert q.options[q.correct_index] == by_stem[q.stem]

    def test_empty_pool_or_count(self, pool, md3):
        assert select_and_vary([], 5, md3) == []
        assert select_and_vary(pool, 0, md3) == []

    def test_small_pool_with_most_stems_excluded(self, pool, md3):
        small = pool[:5]
        seen = [q.stem for q in small[:4]]

        selected = select_and_vary(small, 5, md3, exclude_stems=seen, rng=random.Random(4))

        assert sorted(q.stem for q in selected) == sorted(q.stem for q in small)
