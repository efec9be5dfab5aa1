"""
Background worker that tops up Explore quizzes after the fast synchronous start.

Job lifecycle: PENDING -> RUNNING -> COMPLETED | FAILED. Terminal states are
never reopened.

The trigger may fire more than once for the same job. The PENDING -> RUNNING
transition is a single compare-and-set on the job record, so exactly one
invocation proceeds and duplicates return without calling the generation
service.
"""
from __future__ import annotations

import asyncio
import time
from dataclasses import dataclass
from typing import Any

from loguru import logger
from pydantic import ValidationError

from config import Settings
from explore_cache.cache.merge import merge_question_sets
from explore_cache.db.store import KeyedStore
from explore_cache.errors import GenerationError
from explore_cache.explore.quality_gate import ExploreQualityGate, QualityEvaluation, QualityGate
from explore_cache.integrations.generation_client import GenerationService
from explore_cache.levels import get_assessment_level
from explore_cache.models import (
    EXPLORE_BACKFILL_JOB_TYPE,
    BackfillJob,
    JobStatus,
    questions_from_documents,
    questions_to_documents,
    utcnow,
)

JOBS_COLLECTION = "jobs"

MIN_TARGET_COUNT = 3
MAX_TARGET_COUNT = 20
DEFAULT_TIME_BUDGET_SECONDS = 120.0

# Request fields read from a job record; results written by earlier runs are ignored
JOB_HEADER_FIELDS = ("type", "uid", "topic", "level", "targetCount", "modelUsed")


def clamp_int(value: Any, low: int, high: int) -> int:
    try:
        number = int(float(value))
    except (TypeError, ValueError):
        number = 0
    return min(high, max(low, number))


def job_status(data: dict[str, Any]) -> JobStatus | None:
    try:
        return JobStatus(data.get("status"))
    except ValueError:
        return None


@dataclass
class BackfillOutcome:
    """What happened to one trigger invocation."""
    job_id: str
    claimed: bool
    status: JobStatus | None = None
    final_count: int = 0
    remaining_count: int = 0


class BackfillJobProcessor:
    """
    Claims and completes Explore backfill jobs.

    Handles:
    - Exactly-once claim under at-least-once delivery
    - Short-circuit when the seed set already meets the target
    - Time-bounded generation and newest-preferred merge into the seed set
    - Quality gate evaluation and terminal status write
    - Failure recording that preserves the seed set
    """

    def __init__(
        self,
        store: KeyedStore,
        generator: GenerationService,
        quality_gate: QualityGate | None = None,
        time_budget_seconds: float = DEFAULT_TIME_BUDGET_SECONDS,
    ):
        self.store = store
        self.generator = generator
        self.quality_gate = quality_gate or ExploreQualityGate()
        self.time_budget_seconds = time_budget_seconds

    @classmethod
    def from_settings(
        cls,
        store: KeyedStore,
        generator: GenerationService,
        settings: Settings,
        quality_gate: QualityGate | None = None,
    ) -> BackfillJobProcessor:
        return cls(
            store,
            generator,
            quality_gate=quality_gate,
            time_budget_seconds=settings.backfill_time_budget_seconds,
        )

    async def claim(self, job_id: str) -> bool:
        """Atomically move a job from PENDING to RUNNING. False if already taken or gone."""
        now = utcnow().isoformat()
        return await self.store.compare_and_set(
            JOBS_COLLECTION,
            job_id,
            expected={"status": JobStatus.PENDING.value},
            updates={
                "status": JobStatus.RUNNING.value,
                "startedAt": now,
                "updatedAt": now,
            },
        )

    async def process(self, job_id: str) -> BackfillOutcome:
        """
        Run one backfill job.

        Args:
            job_id: Key of the job record in the jobs collection

        Returns:
            BackfillOutcome; ``claimed`` is False when another invocation
            owns (or already finished) the job
        """
        t0 = time.monotonic()

        data = await self.store.get(JOBS_COLLECTION, job_id)
        if data is None:
            return BackfillOutcome(job_id=job_id, claimed=False)

        if data.get("type", EXPLORE_BACKFILL_JOB_TYPE) != EXPLORE_BACKFILL_JOB_TYPE:
            return BackfillOutcome(job_id=job_id, claimed=False, status=job_status(data))

        if not await self.claim(job_id):
            logger.info("Backfill job {} already claimed or finished, skipping", job_id)
            return BackfillOutcome(job_id=job_id, claimed=False, status=job_status(data))

        seed_questions = questions_from_documents(data.get("questions"))

        try:
            job = BackfillJob.from_document({k: v for k, v in data.items() if k in JOB_HEADER_FIELDS})
        except ValidationError as e:
            logger.error("Backfill job {} has an unreadable payload: {}", job_id, e)
            await self._finish(
                job_id,
                t0,
                {
                    "status": JobStatus.FAILED.value,
                    "error": f"Unreadable backfill job payload: {e.error_count()} invalid field(s).",
                },
            )
            return BackfillOutcome(
                job_id=job_id,
                claimed=True,
                status=JobStatus.FAILED,
                final_count=len(seed_questions),
            )

        topic = job.topic.strip()
        target_count = clamp_int(job.target_count, MIN_TARGET_COUNT, MAX_TARGET_COUNT)

        if not topic:
            await self._finish(
                job_id,
                t0,
                {
                    "status": JobStatus.FAILED.value,
                    "error": "Missing topic in backfill job payload.",
                },
            )
            return BackfillOutcome(
                job_id=job_id,
                claimed=True,
                status=JobStatus.FAILED,
                final_count=len(seed_questions),
            )

        level_profile = get_assessment_level(job.level)
        remaining_count = max(0, target_count - len(seed_questions))

        try:
            if remaining_count == 0:
                evaluation = self.quality_gate.evaluate(seed_questions, level_profile, target_count)
                await self._finish(
                    job_id,
                    t0,
                    {
                        "status": JobStatus.COMPLETED.value,
                        "questions": questions_to_documents(seed_questions),
                        "generatedCount": len(seed_questions),
                        "remainingCount": 0,
                        **self._quality_fields(evaluation),
                        "message": "Backfill skipped: target was already satisfied.",
                    },
                )
                return BackfillOutcome(
                    job_id=job_id,
                    claimed=True,
                    status=JobStatus.COMPLETED,
                    final_count=len(seed_questions),
                )

            generation_count = min(MAX_TARGET_COUNT, max(MIN_TARGET_COUNT, remaining_count + 1))
            exclude_stems = [" ".join(q.stem.split()) for q in seed_questions if q.stem.strip()]

            generated = await asyncio.wait_for(
                self.generator.generate(
                    topic,
                    level_profile,
                    generation_count,
                    exclude_stems,
                    self.time_budget_seconds,
                ),
                timeout=self.time_budget_seconds,
            )
            if not generated.success:
                raise GenerationError(generated.error or "Backfill generation failed.")

            merged = merge_question_sets([generated.questions, seed_questions], target_count)
            final_remaining = max(0, target_count - len(merged))
            evaluation = self.quality_gate.evaluate(merged, level_profile, target_count)
            model_used = f"{job.model_used or 'fast-start'}+{generated.model_used or 'backfill'}"

            await self._finish(
                job_id,
                t0,
                {
                    "status": JobStatus.COMPLETED.value,
                    "questions": questions_to_documents(merged),
                    "generatedCount": len(merged),
                    "remainingCount": final_remaining,
                    "modelUsed": model_used,
                    **self._quality_fields(evaluation),
                    "phaseDurationsMs": generated.phase_durations_ms or {},
                    "backfillSucceeded": final_remaining == 0,
                    "message": (
                        "Backfill completed and target count reached."
                        if final_remaining == 0
                        else f"Backfill completed with {len(merged)}/{target_count} questions."
                    ),
                    "error": None,
                },
            )

            logger.info(
                "Explore backfill job {} completed: topic='{}' level={} target={} ready_at_start={} "
                "final={} remaining={} model={} gate_passed={} score={}",
                job_id,
                topic,
                level_profile.id,
                target_count,
                len(seed_questions),
                len(merged),
                final_remaining,
                model_used,
                evaluation.quality_gate_passed,
                evaluation.quality_score,
            )
            return BackfillOutcome(
                job_id=job_id,
                claimed=True,
                status=JobStatus.COMPLETED,
                final_count=len(merged),
                remaining_count=final_remaining,
            )

        except Exception as e:
            error = str(e) or type(e).__name__
            if isinstance(e, asyncio.TimeoutError):
                error = f"Backfill generation timed out after {self.time_budget_seconds:g}s"
            logger.error(
                "Explore backfill job {} failed: topic='{}' level={} error={}",
                job_id,
                topic,
                level_profile.id,
                error,
            )

            await self._finish(
                job_id,
                t0,
                {
                    "status": JobStatus.FAILED.value,
                    "questions": questions_to_documents(seed_questions),
                    "generatedCount": len(seed_questions),
                    "remainingCount": remaining_count,
                    "error": error,
                },
            )
            return BackfillOutcome(
                job_id=job_id,
                claimed=True,
                status=JobStatus.FAILED,
                final_count=len(seed_questions),
                remaining_count=remaining_count,
            )

    @staticmethod
    def _quality_fields(evaluation: QualityEvaluation) -> dict[str, Any]:
        return {
            "qualityGatePassed": evaluation.quality_gate_passed,
            "qualityScore": evaluation.quality_score,
            "metrics": evaluation.metrics,
            "targets": evaluation.targets,
        }

    async def _finish(self, job_id: str, t0: float, fields: dict[str, Any]) -> None:
        """Write a terminal state with timing fields."""
        now = utcnow().isoformat()
        await self.store.update(
            JOBS_COLLECTION,
            job_id,
            {
                **fields,
                "finishedAt": now,
                "updatedAt": now,
                "durationMs": int((time.monotonic() - t0) * 1000),
            },
        )
