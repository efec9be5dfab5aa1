"""
explore-cache: shared quiz-content cache, per-user variation and backfill worker.

Modules:
- cache: topic key normalisation, shared question/insight pools, gap tracking,
  per-user variation of cached questions
- explore: background backfill jobs and the quality gate
- db: keyed document store (in-memory and SQLAlchemy)
- integrations: external question generation service client
- cli: operator commands (explore-cache)
"""

__version__ = "1.0.0"
