"""
Quality gate for Explore question sets.

Scores a question set against level-specific targets: the share of questions
inside the level's difficulty band, and floors for hard (4+) and expert (5)
items at advanced levels.
"""
from __future__ import annotations

import math
from dataclasses import asdict, dataclass, field
from typing import Any, Protocol, Sequence

from explore_cache.levels import ADVANCED_LEVELS, EXPERT_LEVELS, LevelProfile
from explore_cache.models import Question


@dataclass
class QualityTargets:
    """Composition targets for a requested quiz size."""
    request_count: int
    in_band_ratio: float = 0.75
    hard_floor_count: int = 0
    expert_floor_count: int = 0


@dataclass
class QualityMetrics:
    """Observed composition of a question set."""
    total: int
    in_band_count: int
    in_band_ratio: float
    hard_count: int
    expert_count: int


@dataclass
class QualityEvaluation:
    """Outcome of a quality gate evaluation."""
    quality_gate_passed: bool
    quality_score: float
    metrics: dict[str, Any] = field(default_factory=dict)
    targets: dict[str, Any] = field(default_factory=dict)


class QualityGate(Protocol):
    def evaluate(
        self,
        questions: Sequence[Question],
        level_profile: LevelProfile,
        target_count: int,
    ) -> QualityEvaluation:
        ...


def build_targets(level_profile: LevelProfile, requested_count: int) -> QualityTargets:
    safe_count = max(3, requested_count)
    targets = QualityTargets(request_count=min(20, safe_count + 1))

    if level_profile.id == "MD3":
        targets.in_band_ratio = 0.78
        targets.hard_floor_count = max(1, math.ceil(safe_count * 0.2))
        return targets

    if level_profile.id in ADVANCED_LEVELS:
        targets.request_count = min(20, safe_count + 2)
        targets.in_band_ratio = 0.8
        targets.hard_floor_count = max(1, math.ceil(safe_count * 0.45))

    if level_profile.id in EXPERT_LEVELS:
        targets.in_band_ratio = 0.85
        targets.hard_floor_count = max(1, math.ceil(safe_count * 0.6))
        targets.expert_floor_count = max(1, math.ceil(safe_count * 0.15))

    return targets


def quality_metrics(questions: Sequence[Question], level_profile: LevelProfile) -> QualityMetrics:
    in_band = sum(
        1 for q in questions
        if level_profile.min_difficulty <= q.difficulty <= level_profile.max_difficulty
    )
    return QualityMetrics(
        total=len(questions),
        in_band_count=in_band,
        in_band_ratio=in_band / max(len(questions), 1),
        hard_count=sum(1 for q in questions if q.difficulty >= 4),
        expert_count=sum(1 for q in questions if q.difficulty >= 5),
    )


def quality_score(metrics: QualityMetrics, targets: QualityTargets) -> float:
    """Weighted 0-1 score: band fit 55%, hard floor 30%, expert floor 15%."""
    in_band_score = min(1.0, metrics.in_band_ratio / max(targets.in_band_ratio, 0.01))
    hard_score = (
        min(1.0, metrics.hard_count / targets.hard_floor_count) if targets.hard_floor_count > 0 else 1.0
    )
    expert_score = (
        min(1.0, metrics.expert_count / targets.expert_floor_count) if targets.expert_floor_count > 0 else 1.0
    )
    return in_band_score * 0.55 + hard_score * 0.3 + expert_score * 0.15


def meets_quality_gate(metrics: QualityMetrics, targets: QualityTargets) -> bool:
    if metrics.total == 0:
        return False
    if metrics.in_band_ratio < targets.in_band_ratio:
        return False
    if targets.hard_floor_count > 0 and metrics.hard_count < targets.hard_floor_count:
        return False
    if targets.expert_floor_count > 0 and metrics.expert_count < targets.expert_floor_count:
        return False
    return True


class ExploreQualityGate:
    """Default quality gate used by the backfill worker."""

    def evaluate(
        self,
        questions: Sequence[Question],
        level_profile: LevelProfile,
        target_count: int,
    ) -> QualityEvaluation:
        targets = build_targets(level_profile, target_count)
        metrics = quality_metrics(questions, level_profile)
        return QualityEvaluation(
            quality_gate_passed=meets_quality_gate(metrics, targets),
            quality_score=round(quality_score(metrics, targets), 3),
            metrics=asdict(metrics),
            targets=asdict(targets),
        )
