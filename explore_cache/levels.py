"""
Assessment level catalogue.

Each level carries the difficulty band (1-5) that question scoring, the
quality gate and generation requests are calibrated against.
"""
from __future__ import annotations

import re
from dataclasses import dataclass


@dataclass(frozen=True)
class LevelProfile:
    """Difficulty band and pacing for one training level."""
    id: str
    label: str
    description: str = ""
    min_difficulty: int = 1
    max_difficulty: int = 5
    target_time_sec: int = 70

    @property
    def is_high_priority(self) -> bool:
        """Bands starting at 4+ reward harder items more strongly."""
        return self.min_difficulty >= 4


ASSESSMENT_LEVELS: tuple[LevelProfile, ...] = (
    LevelProfile("MD1", "MD1 (Foundations)", "Core pre-clinical recall and basic mechanisms.", 1, 2, 80),
    LevelProfile("MD2", "MD2 (Integrated Basics)", "System integration and early clinical application.", 2, 3, 75),
    LevelProfile("MD3", "MD3 (Clinical Core)", "Clinical reasoning with common presentations.", 2, 4, 70),
    LevelProfile("MD4", "MD4 (Advanced Clinical)", "Complex cases, management trade-offs, prioritization.", 3, 4, 65),
    LevelProfile("MD5", "MD5 (Senior Clinical)", "High-yield exam synthesis and advanced differentials.", 3, 5, 60),
    LevelProfile("INTERN", "Doctor Intern", "Fast, safe clinical decisions in frontline workflow.", 3, 5, 58),
    LevelProfile("RESIDENT", "Resident", "Higher-acuity management and protocol-level decisions.", 4, 5, 55),
    LevelProfile("POSTGRADUATE", "Doctor Postgraduate", "Subspecialty-level nuance and high-complexity reasoning.", 4, 5, 50),
)

LEVEL_ALIASES = {
    "MD5L": "MD5",
    "MD5LEVEL": "MD5",
    "DOCTORPOSTGRADUATE": "POSTGRADUATE",
    "POSTGRAD": "POSTGRADUATE",
    "PG": "POSTGRADUATE",
    "RESIDENCY": "RESIDENT",
}

ADVANCED_LEVELS = frozenset({"MD4", "MD5", "INTERN", "RESIDENT", "POSTGRADUATE"})
EXPERT_LEVELS = frozenset({"RESIDENT", "POSTGRADUATE"})

DEFAULT_LEVEL_ID = "MD3"

_LEVELS_BY_ID = {level.id: level for level in ASSESSMENT_LEVELS}


def normalize_assessment_level(level: str | None) -> str:
    """Resolve free-text level input to a known level id (MD3 when unknown)."""
    compact = re.sub(r"[^A-Z0-9]", "", str(level or "").upper())
    resolved = LEVEL_ALIASES.get(compact, compact)
    return resolved if resolved in _LEVELS_BY_ID else DEFAULT_LEVEL_ID


def get_assessment_level(level: str | None) -> LevelProfile:
    """Get the level profile for a level id or alias."""
    return _LEVELS_BY_ID[normalize_assessment_level(level)]
