"""
Explore quiz background work.

Components:
- BackfillJobProcessor: claims and completes quiz top-up jobs
- ExploreQualityGate: level-aware composition scoring for question sets
"""
from explore_cache.explore.backfill_processor import BackfillJobProcessor, BackfillOutcome
from explore_cache.explore.quality_gate import (
    ExploreQualityGate,
    QualityEvaluation,
    QualityGate,
    build_targets,
)

__all__ = [
    "BackfillJobProcessor",
    "BackfillOutcome",
    "ExploreQualityGate",
    "QualityEvaluation",
    "QualityGate",
    "build_targets",
]
