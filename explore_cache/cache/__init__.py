"""
Shared quiz-content cache.

This module provides:
- normalize: topic/stem keys and cache identities
- KnowledgeCache: shared question pools, insights and gap records
- select_and_vary: per-user, non-identical quizzes from a shared pool
- merge_question_sets: the newest-preferred, stem-deduplicated merge policy
"""

from .knowledge_cache import InsightLookup, KnowledgeCache, QuestionLookup
from .merge import merge_question_sets
from .normalize import build_cache_key, normalize_stem_key, normalize_topic_key
from .variation_engine import prioritise_questions, score_question, select_and_vary, vary_question

__all__ = [
    "InsightLookup",
    "KnowledgeCache",
    "QuestionLookup",
    "build_cache_key",
    "merge_question_sets",
    "normalize_stem_key",
    "normalize_topic_key",
    "prioritise_questions",
    "score_question",
    "select_and_vary",
    "vary_question",
]
