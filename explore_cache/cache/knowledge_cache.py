"""
Shared knowledge cache for AI-generated Explore questions and topic insights.

Identical topic+level requests are served from one pool instead of calling
the generation service again. Cache misses are recorded as gaps so frequently
requested but poorly served topics can be pre-warmed.

Writes are merge-writes and never raise: content generation must succeed for
the user even when caching fails. Hit counters and gap tracking run as
fire-and-forget tasks; ``drain()`` awaits them.
"""
from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from typing import Any, Coroutine, Mapping, Sequence

from loguru import logger

from config import Settings
from explore_cache.cache.merge import merge_question_sets
from explore_cache.cache.normalize import build_cache_key, build_gap_id, normalize_topic_key
from explore_cache.db.store import KeyedStore
from explore_cache.errors import DocumentNotFoundError
from explore_cache.models import (
    CachePool,
    ContentType,
    GapRecord,
    Question,
    questions_from_documents,
    questions_to_documents,
    utcnow,
)

QUESTIONS_COLLECTION = "questions"
INSIGHTS_COLLECTION = "insights"
GAPS_COLLECTION = "gaps"

DEFAULT_MAX_QUESTIONS_PER_TOPIC = 60
DEFAULT_ALIAS_LIMIT = 20
DEFAULT_MIN_HIT_COUNT = 3


@dataclass
class QuestionLookup:
    """Result of a question pool lookup."""
    hit: bool
    cache_key: str
    questions: list[Question] = field(default_factory=list)


@dataclass
class InsightLookup:
    """Result of an insight lookup."""
    hit: bool
    cache_key: str
    insight: dict[str, Any] | None = None


class KnowledgeCache:
    """
    Shared question pools, topic insights and gap records over a keyed store.

    Handles:
    - Pool lookup with hit counting
    - Newest-preferred, stem-deduplicated, capped pool writes
    - Topic alias bookkeeping
    - Gap tracking for cache misses
    """

    def __init__(
        self,
        store: KeyedStore,
        max_questions_per_topic: int = DEFAULT_MAX_QUESTIONS_PER_TOPIC,
        alias_limit: int = DEFAULT_ALIAS_LIMIT,
        min_hit_count: int = DEFAULT_MIN_HIT_COUNT,
    ):
        self.store = store
        self.max_questions_per_topic = max_questions_per_topic
        self.alias_limit = alias_limit
        self.min_hit_count = min_hit_count
        self._background: set[asyncio.Task] = set()

    @classmethod
    def from_settings(cls, store: KeyedStore, settings: Settings) -> KnowledgeCache:
        return cls(
            store,
            max_questions_per_topic=settings.cache_max_questions_per_topic,
            alias_limit=settings.cache_alias_limit,
            min_hit_count=settings.cache_min_hit_count,
        )

    # ========================================
    # Background side-writes
    # ========================================

    def _spawn(self, coro: Coroutine[Any, Any, None]) -> None:
        """Run a side-write without making the caller wait for it."""
        task = asyncio.create_task(coro)
        self._background.add(task)
        task.add_done_callback(self._background.discard)

    async def drain(self) -> None:
        """Wait for all outstanding hit-counter and gap-tracking writes."""
        while self._background:
            await asyncio.gather(*list(self._background), return_exceptions=True)

    async def _record_hit(self, collection: str, cache_key: str) -> None:
        try:
            await self.store.increment(
                collection,
                cache_key,
                "hits",
                1,
                extra={"lastHitAt": utcnow().isoformat()},
            )
        except Exception as e:
            logger.warning("Cache hit counter update failed for {}: {}", cache_key, e)

    # ========================================
    # Question Cache
    # ========================================

    async def lookup_questions(
        self,
        topic: str,
        level: str,
        min_count: int | None = None,
    ) -> QuestionLookup:
        """
        Look up cached questions for a topic+level.

        Args:
            topic: Raw topic string
            level: Assessment level (e.g. "MD3")
            min_count: Minimum cached questions for a hit (default from settings)

        Returns:
            QuestionLookup; ``questions`` is empty on a miss
        """
        cache_key = build_cache_key(topic, level)
        min_count = self.min_hit_count if min_count is None else min_count

        try:
            data = await self.store.get(QUESTIONS_COLLECTION, cache_key)
            if data is not None:
                questions = questions_from_documents(data.get("questions"))
                if len(questions) >= min_count:
                    self._spawn(self._record_hit(QUESTIONS_COLLECTION, cache_key))
                    return QuestionLookup(hit=True, cache_key=cache_key, questions=questions)
        except Exception as e:
            logger.warning("Cache question lookup failed for {}: {}", cache_key, e)

        self._spawn(self.track_gap(topic, level, ContentType.QUESTIONS))
        return QuestionLookup(hit=False, cache_key=cache_key)

    async def get_pool(self, topic: str, level: str) -> CachePool | None:
        """Read the full pool record (no hit counting, no gap tracking)."""
        data = await self.store.get(QUESTIONS_COLLECTION, build_cache_key(topic, level))
        return CachePool.from_document(data) if data is not None else None

    async def write_questions(
        self,
        topic: str,
        level: str,
        new_questions: Sequence[Question | Mapping[str, Any]],
        metadata: Mapping[str, Any] | None = None,
    ) -> None:
        """
        Write (or merge) questions into the shared pool.

        New questions take priority over existing ones, stems are deduplicated
        and the pool is capped at ``max_questions_per_topic``.

        Args:
            topic: Raw topic string
            level: Assessment level
            new_questions: Freshly generated questions
            metadata: Optional {"model_used": ..., "quality_score": ...}
        """
        if not new_questions:
            return

        metadata = metadata or {}
        cache_key = build_cache_key(topic, level)

        try:
            now = utcnow()
            existing = await self.store.get(QUESTIONS_COLLECTION, cache_key)
            existing_questions = questions_from_documents((existing or {}).get("questions"))

            default_model = metadata.get("model_used") or "unknown"
            stamped = [
                q.model_copy(
                    update={
                        "generated_at": q.generated_at or now,
                        "model_used": q.model_used or default_model,
                    }
                )
                for q in questions_from_documents(list(new_questions))
            ]

            merged = merge_question_sets([stamped, existing_questions], self.max_questions_per_topic)

            payload: dict[str, Any] = {
                **self._identity_fields(topic, level, existing),
                "questions": questions_to_documents(merged),
                "questionCount": len(merged),
                "lastGeneratedAt": now.isoformat(),
                "updatedAt": now.isoformat(),
            }
            if existing is None:
                payload["createdAt"] = now.isoformat()
                payload["hits"] = 0

            await self.store.set(QUESTIONS_COLLECTION, cache_key, payload, merge=True)

            await self.mark_gap_filled(topic, level, ContentType.QUESTIONS)

            logger.info(
                "Knowledge cache: questions written to {} (new={}, total={}, model={})",
                cache_key,
                len(new_questions),
                len(merged),
                metadata.get("model_used"),
            )
        except Exception as e:
            logger.warning("Knowledge cache: question write failed for {}: {}", cache_key, e)

    def _identity_fields(
        self,
        topic: str,
        level: str,
        existing: Mapping[str, Any] | None,
    ) -> dict[str, Any]:
        """Topic identity and alias ring buffer for a merge-write."""
        existing = existing or {}
        topic_original = existing.get("topicOriginal") or topic

        aliases = list(existing.get("topicAliases") or [])
        if existing.get("topicOriginal") and topic != topic_original and topic not in aliases:
            aliases.append(topic)
            while len(aliases) > self.alias_limit:
                aliases.pop(0)

        return {
            "topicNormalized": normalize_topic_key(topic),
            "topicOriginal": topic_original,
            "topicAliases": aliases,
            "level": level,
        }

    # ========================================
    # Insight Cache
    # ========================================

    async def lookup_insight(
        self,
        topic: str,
        level: str,
        exam_type: str | None = None,
    ) -> InsightLookup:
        """Look up a cached topic insight (identity includes the exam type)."""
        cache_key = build_cache_key(topic, level, exam_type or None)

        try:
            data = await self.store.get(INSIGHTS_COLLECTION, cache_key)
            if data is not None and data.get("insight"):
                self._spawn(self._record_hit(INSIGHTS_COLLECTION, cache_key))
                return InsightLookup(hit=True, cache_key=cache_key, insight=data["insight"])
        except Exception as e:
            logger.warning("Cache insight lookup failed for {}: {}", cache_key, e)

        self._spawn(self.track_gap(topic, level, ContentType.INSIGHTS))
        return InsightLookup(hit=False, cache_key=cache_key)

    async def write_insight(
        self,
        topic: str,
        level: str,
        exam_type: str | None,
        insight: Mapping[str, Any] | None,
        metadata: Mapping[str, Any] | None = None,
    ) -> None:
        """Write a topic insight; one insight per identity, replaced on rewrite."""
        if not insight:
            return

        metadata = metadata or {}
        cache_key = build_cache_key(topic, level, exam_type or None)

        try:
            now = utcnow().isoformat()
            existing = await self.store.get(INSIGHTS_COLLECTION, cache_key)

            payload: dict[str, Any] = {
                **self._identity_fields(topic, level, existing),
                "examType": exam_type or None,
                "insight": dict(insight),
                "modelUsed": metadata.get("model_used") or "unknown",
                "updatedAt": now,
            }
            if existing is None:
                payload["createdAt"] = now
                payload["hits"] = 0

            await self.store.set(INSIGHTS_COLLECTION, cache_key, payload, merge=True)

            await self.mark_gap_filled(topic, level, ContentType.INSIGHTS)

            logger.info(
                "Knowledge cache: insight written to {} (model={})",
                cache_key,
                metadata.get("model_used"),
            )
        except Exception as e:
            logger.warning("Knowledge cache: insight write failed for {}: {}", cache_key, e)

    # ========================================
    # Gap Tracking
    # ========================================

    async def track_gap(self, topic: str, level: str, content_type: ContentType | str) -> None:
        """Record a cache miss so the topic can be pre-warmed. Never raises."""
        content_type = ContentType(content_type)
        gap_id = build_gap_id(topic, level, content_type.value)

        try:
            now = utcnow()
            record = GapRecord(
                topic_normalized=normalize_topic_key(topic),
                topic_original=topic,
                level=level,
                content_type=content_type,
                first_requested_at=now,
                last_requested_at=now,
                filled=False,
            )
            await self.store.upsert_increment(
                GAPS_COLLECTION,
                gap_id,
                "requestCount",
                1,
                extra={"topicOriginal": topic, "lastRequestedAt": now.isoformat()},
                defaults=record.to_document(exclude_none=False),
            )
        except Exception as e:
            logger.warning("Gap tracking failed for {}: {}", gap_id, e)

    async def mark_gap_filled(self, topic: str, level: str, content_type: ContentType | str) -> None:
        """Flip a gap record to filled. A missing record is not an error."""
        gap_id = build_gap_id(topic, level, ContentType(content_type).value)
        try:
            await self.store.update(
                GAPS_COLLECTION,
                gap_id,
                {"filled": True, "filledAt": utcnow().isoformat()},
            )
        except DocumentNotFoundError:
            # No miss was ever tracked for this identity
            pass
        except Exception as e:
            logger.warning("Marking gap {} filled failed: {}", gap_id, e)

    async def list_gaps(
        self,
        content_type: ContentType | str | None = None,
        include_filled: bool = False,
        limit: int = 20,
    ) -> list[GapRecord]:
        """
        Most-requested gaps, for pre-warming.

        Args:
            content_type: Restrict to "questions" or "insights"
            include_filled: Include gaps that have since been filled
            limit: Maximum records to return

        Returns:
            Gap records ordered by request count (descending)
        """
        wanted = ContentType(content_type) if content_type else None
        gaps: list[GapRecord] = []
        for gap_id, data in await self.store.scan(GAPS_COLLECTION):
            try:
                gap = GapRecord.from_document(data)
            except ValueError as e:
                logger.warning("Skipping malformed gap record {}: {}", gap_id, e)
                continue
            if wanted and gap.content_type != wanted:
                continue
            if gap.filled and not include_filled:
                continue
            gaps.append(gap)

        gaps.sort(key=lambda g: g.request_count, reverse=True)
        return gaps[:limit]
