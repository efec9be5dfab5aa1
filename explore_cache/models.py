"""
Record models for the shared quiz-content cache.

Attributes are snake_case; stored documents use camelCase field names because
the record schema is the contract with the client layer that watches job and
pool documents.

Question shape (stored):
    {
        "id": "explore_1718000000000_0",
        "stem": "A 54-year-old man presents with...",
        "options": ["A", "B", "C", "D"],
        "correctIndex": 2,
        "explanation": {
            "correctWhy": "...",
            "whyOthersWrong": ["...", "...", "...", "..."],
            "keyTakeaway": "..."
        },
        "difficulty": 3,
        "citations": [{"source": "...", "title": "..."}],
        "generatedAt": "2025-01-01T00:00:00+00:00",
        "modelUsed": "gemini"
    }
"""
from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator
from pydantic.alias_generators import to_camel

MAX_OPTIONS = 8
DEFAULT_WRONG_EXPLANATION = "This option is incorrect."


def utcnow() -> datetime:
    """Timezone-aware current time."""
    return datetime.now(timezone.utc)


class RecordModel(BaseModel):
    """Base model: camelCase aliases, populate by either name, keep unknown fields."""

    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        extra="allow",
        protected_namespaces=(),
    )

    def to_document(self, exclude_none: bool = True) -> dict[str, Any]:
        """Serialise to a JSON-safe store document."""
        return self.model_dump(mode="json", by_alias=True, exclude_none=exclude_none)

    @classmethod
    def from_document(cls, data: dict[str, Any]):
        """Build from a stored document."""
        return cls.model_validate(data)


class Explanation(RecordModel):
    correct_why: str = ""
    why_others_wrong: list[str] = Field(default_factory=list)
    key_takeaway: str = ""


class Question(RecordModel):
    """A single-best-answer question. ``options[correct_index]`` is always correct."""

    id: Optional[str] = None
    stem: str
    options: list[str] = Field(default_factory=list)
    correct_index: int = 0
    explanation: Explanation = Field(default_factory=Explanation)
    difficulty: float = 3
    citations: list[Any] = Field(default_factory=list)
    topic_tags: list[str] = Field(default_factory=list)
    generated_at: Optional[datetime] = None
    model_used: Optional[str] = None

    @property
    def correct_option(self) -> str | None:
        if 0 <= self.correct_index < len(self.options):
            return self.options[self.correct_index]
        return None

    @classmethod
    def from_raw(cls, raw: Any) -> Optional["Question"]:
        """
        Normalise a raw generation payload into a Question.

        Accepts snake_case or camelCase keys. Returns None when the payload has
        no stem, no option list or no correct index.
        """
        if not isinstance(raw, dict):
            return None

        correct_idx = raw.get("correct_index", raw.get("correctIndex"))
        stem = str(raw.get("stem") or "").strip()
        if not stem or not isinstance(raw.get("options"), list) or correct_idx is None:
            return None

        options = [str(o).strip() for o in raw["options"][:MAX_OPTIONS]]
        if not options:
            return None

        expl = raw.get("explanation") or {}
        if not isinstance(expl, dict):
            expl = {}
        why_raw = expl.get("why_others_wrong", expl.get("whyOthersWrong"))
        why_others_wrong = [str(s) for s in why_raw[: len(options)]] if isinstance(why_raw, list) else []
        # Pad so the list always indexes in parallel with options
        while len(why_others_wrong) < len(options):
            why_others_wrong.append(DEFAULT_WRONG_EXPLANATION)

        try:
            difficulty = float(raw.get("difficulty") or 3)
        except (TypeError, ValueError):
            difficulty = 3.0
        try:
            correct_index = int(correct_idx)
        except (TypeError, ValueError):
            return None

        citations = raw.get("citations") or expl.get("citations") or raw.get("references") or []
        tags = raw.get("tags") or raw.get("topicTags") or raw.get("topic_tags") or []

        return cls(
            id=raw.get("id"),
            stem=stem,
            options=options,
            correct_index=min(len(options) - 1, max(0, correct_index)),
            explanation=Explanation(
                correct_why=str(expl.get("correct_why", expl.get("correctWhy")) or ""),
                why_others_wrong=why_others_wrong,
                key_takeaway=str(expl.get("key_takeaway", expl.get("keyTakeaway")) or ""),
            ),
            difficulty=min(5.0, max(1.0, difficulty)),
            citations=list(citations) if isinstance(citations, list) else [],
            topic_tags=[str(t) for t in tags][:10] if isinstance(tags, list) else [],
            generated_at=raw.get("generated_at", raw.get("generatedAt")),
            model_used=raw.get("model_used", raw.get("modelUsed")),
        )


class CachePool(RecordModel):
    """Shared question pool for one cache identity."""

    topic_normalized: str
    topic_original: str
    topic_aliases: list[str] = Field(default_factory=list)
    level: str
    exam_type: Optional[str] = None
    questions: list[Question] = Field(default_factory=list)
    question_count: int = 0
    hits: int = 0
    last_hit_at: Optional[datetime] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None
    last_generated_at: Optional[datetime] = None


class InsightCache(RecordModel):
    """Cached topic insight for one cache identity (exam type included)."""

    topic_normalized: str
    topic_original: str
    topic_aliases: list[str] = Field(default_factory=list)
    level: str
    exam_type: Optional[str] = None
    insight: dict[str, Any]
    model_used: str = "unknown"
    hits: int = 0
    last_hit_at: Optional[datetime] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None


class ContentType(str, Enum):
    QUESTIONS = "questions"
    INSIGHTS = "insights"


class GapRecord(RecordModel):
    """A tracked cache miss; unfilled records with high counts are pre-warm candidates."""

    topic_normalized: str
    topic_original: str
    level: str
    content_type: ContentType
    request_count: int = 0
    first_requested_at: Optional[datetime] = None
    last_requested_at: Optional[datetime] = None
    filled: bool = False
    filled_at: Optional[datetime] = None


class JobStatus(str, Enum):
    PENDING = "PENDING"
    RUNNING = "RUNNING"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"

    @property
    def is_terminal(self) -> bool:
        return self in (JobStatus.COMPLETED, JobStatus.FAILED)


EXPLORE_BACKFILL_JOB_TYPE = "EXPLORE_QUIZ_BACKFILL"


class BackfillJob(RecordModel):
    """Background top-up job. PENDING -> RUNNING -> COMPLETED | FAILED."""

    type: str = EXPLORE_BACKFILL_JOB_TYPE
    uid: Optional[str] = None
    status: JobStatus = JobStatus.PENDING
    topic: str = ""
    level: str = "MD3"
    target_count: int = 10
    questions: list[Question] = Field(default_factory=list)
    generated_count: Optional[int] = None
    remaining_count: Optional[int] = None
    model_used: Optional[str] = None
    quality_gate_passed: Optional[bool] = None
    quality_score: Optional[float] = None
    metrics: Optional[dict[str, Any]] = None
    targets: Optional[dict[str, Any]] = None
    message: Optional[str] = None
    phase_durations_ms: Optional[dict[str, Any]] = None
    backfill_succeeded: Optional[bool] = None
    error: Optional[str] = None
    started_at: Optional[datetime] = None
    finished_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None
    duration_ms: Optional[int] = None

    # Job records are written by other services; null or odd values must
    # still parse so the job can reach a terminal state.
    @field_validator("topic", mode="before")
    @classmethod
    def _coerce_topic(cls, value: Any) -> str:
        return str(value or "")

    @field_validator("level", mode="before")
    @classmethod
    def _coerce_level(cls, value: Any) -> str:
        return str(value or "MD3")

    @field_validator("target_count", mode="before")
    @classmethod
    def _coerce_target_count(cls, value: Any) -> int:
        try:
            return int(float(value))
        except (TypeError, ValueError):
            return 0

    @field_validator("model_used", mode="before")
    @classmethod
    def _coerce_model_used(cls, value: Any) -> Optional[str]:
        return str(value) if value else None


def questions_to_documents(questions: list[Question]) -> list[dict[str, Any]]:
    return [q.to_document() for q in questions]


def questions_from_documents(items: Any) -> list[Question]:
    """Parse stored question documents, skipping malformed entries."""
    if not isinstance(items, list):
        return []
    parsed: list[Question] = []
    for item in items:
        if isinstance(item, Question):
            parsed.append(item)
        elif isinstance(item, dict) and item.get("stem"):
            try:
                parsed.append(Question.model_validate(item))
            except ValidationError:
                continue
    return parsed
