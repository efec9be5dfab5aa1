"""
Unit tests for the Explore backfill job processor.
"""

import asyncio
from unittest.mock import AsyncMock, Mock

import pytest

from explore_cache.explore.backfill_processor import JOBS_COLLECTION, BackfillJobProcessor
from explore_cache.integrations.generation_client import GenerationResult
from explore_cache.models import JobStatus, questions_to_documents


@pytest.fixture
def generator():
    return AsyncMock()


@pytest.fixture
def processor(memory_store, generator):
    return BackfillJobProcessor(memory_store, generator, time_budget_seconds=1.0)


async def _create_job(store, job_id="job-1", seed=(), **fields):
    document = {
        "type": "EXPLORE_QUIZ_BACKFILL",
        "uid": "user-1",
        "status": "PENDING",
        "topic": "Heart failure",
        "level": "MD3",
        "targetCount": 5,
        "modelUsed": "flash",
        "questions": questions_to_documents(list(seed)),
        **fields,
    }
    await store.set(JOBS_COLLECTION, job_id, document)
    return job_id


@pytest.mark.asyncio
async def test_completes_and_merges_generated_questions(processor, memory_store, generator, question_factory):
    seed = [question_factory(f"Seed {i}") for i in range(2)]
    await _create_job(memory_store, seed=seed)
    generator.generate.return_value = GenerationResult(
        success=True,
        questions=[question_factory(f"New {i}", difficulty=4) for i in range(4)],
        model_used="pro",
        phase_durations_ms={"draft": 10},
    )

    outcome = await processor.process("job-1")

    assert outcome.claimed is True
    assert outcome.status == JobStatus.COMPLETED
    job = await memory_store.get(JOBS_COLLECTION, "job-1")
    assert job["status"] == "COMPLETED"
    assert [q["stem"] for q in job["questions"]] == ["New 0", "New 1", "New 2", "New 3", "Seed 0"]
    assert job["generatedCount"] == 5
    assert job["remainingCount"] == 0
    assert job["backfillSucceeded"] is True
    assert job["modelUsed"] == "flash+pro"
    assert job["error"] is None
    assert job["phaseDurationsMs"] == {"draft": 10}
    assert job["message"] == "Backfill completed and target count reached."
    assert {"qualityGatePassed", "qualityScore", "metrics", "targets", "finishedAt", "durationMs"} <= set(job)


@pytest.mark.asyncio
async def test_requests_remaining_plus_one_excluding_seed(processor, memory_store, generator, question_factory):
    seed = [question_factory("Seed  stem one")]
    await _create_job(memory_store, seed=seed, targetCount=8)
    generator.generate.return_value = GenerationResult(success=True, questions=[question_factory("New")])

    await processor.process("job-1")

    topic, level_profile, count, exclude_stems, time_budget = generator.generate.call_args.args
    assert topic == "Heart failure"
    assert level_profile.id == "MD3"
    assert count == 8
    assert exclude_stems == ["Seed stem one"]
    assert time_budget == 1.0


@pytest.mark.asyncio
async def test_partial_generation_reports_remaining(processor, memory_store, generator, question_factory):
    await _create_job(memory_store, seed=[question_factory("Seed")], modelUsed=None)
    generator.generate.return_value = GenerationResult(success=True, questions=[question_factory("New")])

    outcome = await processor.process("job-1")

    job = await memory_store.get(JOBS_COLLECTION, "job-1")
    assert outcome.remaining_count == 3
    assert job["status"] == "COMPLETED"
    assert job["remainingCount"] == 3
    assert job["backfillSucceeded"] is False
    assert job["modelUsed"] == "fast-start+backfill"
    assert job["message"] == "Backfill completed with 2/5 questions."


@pytest.mark.asyncio
async def test_duplicate_trigger_is_a_no_op(processor, memory_store, generator, question_factory):
    await _create_job(memory_store)
    generator.generate.return_value = GenerationResult(
        success=True, questions=[question_factory(f"New {i}") for i in range(6)]
    )

    first = await processor.process("job-1")
    completed = await memory_store.get(JOBS_COLLECTION, "job-1")
    second = await processor.process("job-1")

    assert first.claimed is True
    assert second.claimed is False
    assert second.status == JobStatus.COMPLETED
    assert generator.generate.await_count == 1
    assert await memory_store.get(JOBS_COLLECTION, "job-1") == completed


@pytest.mark.asyncio
async def test_concurrent_triggers_generate_once(processor, memory_store, generator, question_factory):
    await _create_job(memory_store)
    generator.generate.return_value = GenerationResult(
        success=True, questions=[question_factory(f"New {i}") for i in range(6)]
    )

    outcomes = await asyncio.gather(*(processor.process("job-1") for _ in range(5)))

    assert sum(o.claimed for o in outcomes) == 1
    assert generator.generate.await_count == 1


@pytest.mark.asyncio
async def test_target_already_met_skips_generation(processor, memory_store, generator, question_factory):
    seed = [question_factory(f"Seed {i}") for i in range(5)]
    await _create_job(memory_store, seed=seed)

    outcome = await processor.process("job-1")

    job = await memory_store.get(JOBS_COLLECTION, "job-1")
    generator.generate.assert_not_called()
    assert outcome.status == JobStatus.COMPLETED
    assert job["remainingCount"] == 0
    assert job["message"] == "Backfill skipped: target was already satisfied."
    assert len(job["questions"]) == 5


@pytest.mark.asyncio
async def test_target_count_is_clamped(processor, memory_store, generator, question_factory):
    seed = [question_factory(f"Seed {i}") for i in range(3)]
    await _create_job(memory_store, seed=seed, targetCount=1)

    outcome = await processor.process("job-1")

    generator.generate.assert_not_called()
    assert outcome.status == JobStatus.COMPLETED


@pytest.mark.asyncio
async def test_missing_topic_fails(processor, memory_store, generator):
    await _create_job(memory_store, topic="   ")

    outcome = await processor.process("job-1")

    job = await memory_store.get(JOBS_COLLECTION, "job-1")
    generator.generate.assert_not_called()
    assert outcome.status == JobStatus.FAILED
    assert job["status"] == "FAILED"
    assert job["error"] == "Missing topic in backfill job payload."


@pytest.mark.asyncio
async def test_generation_failure_preserves_seed(processor, memory_store, generator, question_factory):
    seed = [question_factory("Seed 0"), question_factory("Seed 1")]
    await _create_job(memory_store, seed=seed)
    generator.generate.return_value = GenerationResult(success=False, error="quota exceeded")

    outcome = await processor.process("job-1")

    job = await memory_store.get(JOBS_COLLECTION, "job-1")
    assert outcome.status == JobStatus.FAILED
    assert job["status"] == "FAILED"
    assert job["error"] == "quota exceeded"
    assert [q["stem"] for q in job["questions"]] == ["Seed 0", "Seed 1"]
    assert job["remainingCount"] == 3
    assert job["generatedCount"] == 2


@pytest.mark.asyncio
async def test_generation_exception_is_recorded(processor, memory_store, generator):
    await _create_job(memory_store)
    generator.generate.side_effect = RuntimeError("boom")

    outcome = await processor.process("job-1")

    job = await memory_store.get(JOBS_COLLECTION, "job-1")
    assert outcome.status == JobStatus.FAILED
    assert job["error"] == "boom"


@pytest.mark.asyncio
async def test_generation_timeout_fails_job(memory_store, question_factory):
    async def slow_generate(*args):
        await asyncio.Event().wait()

    generator = AsyncMock()
    generator.generate.side_effect = slow_generate
    processor = BackfillJobProcessor(memory_store, generator, time_budget_seconds=0.05)
    await _create_job(memory_store, seed=[question_factory("Seed")])

    outcome = await processor.process("job-1")

    job = await memory_store.get(JOBS_COLLECTION, "job-1")
    assert outcome.status == JobStatus.FAILED
    assert job["error"] == "Backfill generation timed out after 0.05s"
    assert [q["stem"] for q in job["questions"]] == ["Seed"]


@pytest.mark.asyncio
async def test_other_job_types_and_missing_jobs_are_ignored(processor, memory_store, generator):
    await _create_job(memory_store, type="TOPIC_INSIGHT")

    ignored = await processor.process("job-1")
    missing = await processor.process("nope")

    assert ignored.claimed is False
    assert missing.claimed is False
    assert (await memory_store.get(JOBS_COLLECTION, "job-1"))["status"] == "PENDING"
    generator.generate.assert_not_called()


@pytest.mark.asyncio
async def test_running_job_is_left_alone(processor, memory_store, generator):
    await _create_job(memory_store, status="RUNNING")
    before = await memory_store.get(JOBS_COLLECTION, "job-1")

    outcome = await processor.process("job-1")

    assert outcome.claimed is False
    assert outcome.status == JobStatus.RUNNING
    assert await memory_store.get(JOBS_COLLECTION, "job-1") == before
    generator.generate.assert_not_called()


@pytest.mark.asyncio
async def test_null_topic_is_claimed_and_failed(processor, memory_store, generator):
    await _create_job(memory_store, topic=None)

    outcome = await processor.process("job-1")

    job = await memory_store.get(JOBS_COLLECTION, "job-1")
    generator.generate.assert_not_called()
    assert outcome.claimed is True
    assert job["status"] == "FAILED"
    assert job["error"] == "Missing topic in backfill job payload."


@pytest.mark.asyncio
async def test_null_level_falls_back_to_md3(processor, memory_store, generator, question_factory):
    await _create_job(memory_store, level=None)
    generator.generate.return_value = GenerationResult(
        success=True, questions=[question_factory(f"New {i}") for i in range(5)]
    )

    outcome = await processor.process("job-1")

    level_profile = generator.generate.call_args.args[1]
    assert outcome.status == JobStatus.COMPLETED
    assert level_profile.id == "MD3"


@pytest.mark.asyncio
async def test_null_target_count_is_clamped_to_minimum(processor, memory_store, generator, question_factory):
    await _create_job(memory_store, seed=[question_factory(f"Seed {i}") for i in range(3)], targetCount=None)

    outcome = await processor.process("job-1")

    job = await memory_store.get(JOBS_COLLECTION, "job-1")
    generator.generate.assert_not_called()
    assert outcome.status == JobStatus.COMPLETED
    assert job["status"] == "COMPLETED"
    assert job["remainingCount"] == 0


@pytest.mark.asyncio
async def test_quality_gate_error_on_satisfied_target_fails_job(memory_store, generator, question_factory):
    quality_gate = Mock()
    quality_gate.evaluate.side_effect = RuntimeError("gate exploded")
    processor = BackfillJobProcessor(memory_store, generator, quality_gate=quality_gate, time_budget_seconds=1.0)
    await _create_job(memory_store, seed=[question_factory(f"Seed {i}") for i in range(5)])

    outcome = await processor.process("job-1")

    job = await memory_store.get(JOBS_COLLECTION, "job-1")
    generator.generate.assert_not_called()
    assert outcome.status == JobStatus.FAILED
    assert job["status"] == "FAILED"
    assert job["error"] == "gate exploded"
    assert [q["stem"] for q in job["questions"]] == [f"Seed {i}" for i in range(5)]
    assert job["remainingCount"] == 0
