"""External service integrations."""

from .generation_client import GenerationResult, GenerationService, HttpGenerationClient

__all__ = [
    "GenerationResult",
    "GenerationService",
    "HttpGenerationClient",
]
