"""
Client for the external question generation service.

The service is slow and unreliable: every call is bounded by a total time
budget, timeouts and 5xx responses are retried with exponential backoff, and
failures come back as an unsuccessful GenerationResult rather than raising.
"""
from __future__ import annotations

import asyncio
import time
from dataclasses import dataclass, field
from typing import Any, Iterable, Protocol

import httpx
from loguru import logger

from config import Settings
from explore_cache.cache.normalize import normalize_stem_key, to_stem_key_set
from explore_cache.levels import LevelProfile
from explore_cache.models import Question


@dataclass
class GenerationResult:
    """Outcome of one generation request."""

    success: bool
    questions: list[Question] = field(default_factory=list)
    model_used: str | None = None
    error: str | None = None
    phase_durations_ms: dict[str, Any] = field(default_factory=dict)


class GenerationService(Protocol):
    async def generate(
        self,
        topic: str,
        level_profile: LevelProfile,
        count: int,
        exclude_stems: Iterable[str],
        time_budget: float,
    ) -> GenerationResult:
        ...


def normalise_generated_questions(
    raw_questions: Any,
    exclude_stems: Iterable[str] | None = None,
) -> list[Question]:
    """Parse raw payloads, dropping malformed, excluded and duplicate stems."""
    if not isinstance(raw_questions, list):
        return []

    blocked = to_stem_key_set(exclude_stems)
    questions: list[Question] = []
    for raw in raw_questions:
        question = Question.from_raw(raw)
        if question is None:
            continue
        key = normalize_stem_key(question.stem)
        if not key or key in blocked:
            continue
        blocked.add(key)
        questions.append(question)
    return questions


class HttpGenerationClient:
    """HTTP client for the question generation service."""

    def __init__(
        self,
        api_url: str,
        api_key: str = "",
        timeout_ms: int = 45000,
        retry_attempts: int = 2,
    ):
        """
        Initialize generation client.

        Args:
            api_url: Base URL for the generation API
            api_key: Bearer token (empty for none)
            timeout_ms: Per-request timeout in milliseconds
            retry_attempts: Attempts on timeouts, 5xx and connection errors
        """
        self.api_url = api_url.rstrip("/")
        self.timeout_seconds = timeout_ms / 1000.0
        self.retry_attempts = retry_attempts
        headers = {"Authorization": f"Bearer {api_key}"} if api_key else {}
        self.client = httpx.AsyncClient(
            timeout=httpx.Timeout(self.timeout_seconds),
            headers=headers,
            follow_redirects=True,
        )

    @classmethod
    def from_settings(cls, settings: Settings) -> HttpGenerationClient:
        return cls(
            api_url=settings.generation_api_url,
            api_key=settings.generation_api_key,
            timeout_ms=settings.generation_timeout_ms,
            retry_attempts=settings.generation_retry_attempts,
        )

    async def close(self) -> None:
        """Close the HTTP client."""
        await self.client.aclose()

    async def generate(
        self,
        topic: str,
        level_profile: LevelProfile,
        count: int,
        exclude_stems: Iterable[str],
        time_budget: float,
    ) -> GenerationResult:
        """
        Request ``count`` new questions for a topic.

        Args:
            topic: Raw topic string
            level_profile: Target level band
            count: Number of questions to request
            exclude_stems: Stems the service must not repeat
            time_budget: Total seconds allowed, retries included

        Returns:
            GenerationResult; ``success`` is False on timeout, HTTP failure or
            when no valid question came back
        """
        exclude = [s for s in exclude_stems if s]
        payload = {
            "topic": topic,
            "level": level_profile.id,
            "levelLabel": level_profile.label,
            "levelDescription": level_profile.description,
            "minDifficulty": level_profile.min_difficulty,
            "maxDifficulty": level_profile.max_difficulty,
            "count": count,
            "excludeStems": exclude,
        }

        t0 = time.monotonic()
        try:
            data = await asyncio.wait_for(self._post_with_retries(payload), timeout=time_budget)
        except asyncio.TimeoutError:
            return GenerationResult(
                success=False,
                error=f"Generation timed out after {int(time_budget * 1000)}ms",
            )
        except (httpx.HTTPError, ValueError) as e:
            return GenerationResult(success=False, error=f"Generation request failed: {e}")

        questions = normalise_generated_questions(data.get("questions"), exclude)
        duration_ms = int((time.monotonic() - t0) * 1000)
        phases = dict(data.get("phaseDurationsMs") or {})
        phases.setdefault("request", duration_ms)

        if not questions:
            return GenerationResult(
                success=False,
                model_used=data.get("modelUsed"),
                error=data.get("error") or "Generation service returned no valid questions.",
                phase_durations_ms=phases,
            )

        logger.info(
            "Generated {} questions for '{}' ({}) via {} in {}ms",
            len(questions),
            topic,
            level_profile.id,
            data.get("modelUsed"),
            duration_ms,
        )
        return GenerationResult(
            success=True,
            questions=questions,
            model_used=data.get("modelUsed"),
            phase_durations_ms=phases,
        )

    async def _post_with_retries(self, payload: dict[str, Any]) -> dict[str, Any]:
        last_error: Exception | None = None

        for attempt in range(self.retry_attempts):
            try:
                response = await self.client.post(f"{self.api_url}/generate", json=payload)
                response.raise_for_status()
                data = response.json()
                return data if isinstance(data, dict) else {}

            except httpx.TimeoutException as e:
                last_error = e
                logger.warning(
                    f"Generation timeout on attempt {attempt + 1}/{self.retry_attempts}"
                )

            except httpx.HTTPStatusError as e:
                last_error = e
                if e.response.status_code < 500:
                    # Don't retry on 4xx client errors
                    logger.error(f"Generation client error: {e.response.status_code}")
                    raise
                logger.warning(
                    f"Generation server error {e.response.status_code} on attempt "
                    f"{attempt + 1}/{self.retry_attempts}"
                )

            except httpx.RequestError as e:
                last_error = e
                logger.warning(
                    f"Generation request error on attempt {attempt + 1}/{self.retry_attempts}: {e}"
                )

            if attempt < self.retry_attempts - 1:
                await asyncio.sleep(2 ** attempt)  # Exponential backoff: 1s, 2s, 4s

        raise httpx.RequestError(
            f"Generation failed after {self.retry_attempts} attempts: {last_error}"
        )
