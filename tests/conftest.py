"""
Pytest Configuration and Fixtures.

This file configures pytest and provides shared fixtures for all tests.
"""
import pytest
import pytest_asyncio
import sys
from pathlib import Path

# Add project root to path
PROJECT_ROOT = Path(__file__).parent.parent
sys.path.insert(0, str(PROJECT_ROOT))

from explore_cache.db.database import create_engine_for, create_session_factory, init_db  # noqa: E402
from explore_cache.db.sql_store import SqlKeyedStore  # noqa: E402
from explore_cache.db.store import MemoryKeyedStore  # noqa: E402
from explore_cache.models import Question  # noqa: E402


def pytest_configure(config):
    """Configure pytest markers."""
    config.addinivalue_line("markers", "unit: Unit tests")
    config.addinivalue_line("markers", "integration: Integration tests (require database)")
    config.addinivalue_line("markers", "slow: Slow tests")


def pytest_collection_modifyitems(config, items):
    """Automatically mark tests based on their location."""
    for item in items:
        if "unit" in str(item.fspath):
            item.add_marker(pytest.mark.unit)
        elif "integration" in str(item.fspath):
            item.add_marker(pytest.mark.integration)


@pytest.fixture(scope="session")
def project_root():
    """Return the project root directory."""
    return PROJECT_ROOT


@pytest.fixture
def memory_store():
    """Fresh in-process keyed store."""
    return MemoryKeyedStore()


@pytest_asyncio.fixture
async def sql_store(tmp_path):
    """SQL keyed store on a temporary SQLite database."""
    engine = create_engine_for(f"sqlite+aiosqlite:///{tmp_path / 'store.db'}")
    await init_db(engine)
    yield SqlKeyedStore(create_session_factory(engine), max_attempts=50)
    await engine.dispose()


@pytest.fixture(params=["memory", "sql"])
def store_kind(request):
    return request.param


@pytest_asyncio.fixture
async def store(store_kind, sql_store):
    """Each keyed store implementation in turn."""
    if store_kind == "memory":
        return MemoryKeyedStore()
    return sql_store


def make_question(stem: str, difficulty: float = 3, correct_index: int = 1, **extra) -> Question:
    """Build a four-option question with per-option explanations."""
    options = [f"{stem} option {c}" for c in "ABCD"]
    return Question(
        stem=stem,
        options=options,
        correct_index=correct_index,
        explanation={
            "correct_why": f"Because {options[correct_index]}",
            "why_others_wrong": [f"Why {c} is wrong" for c in "ABCD"],
            "key_takeaway": "Remember the mechanism.",
        },
        difficulty=difficulty,
        **extra,
    )


@pytest.fixture
def question_factory():
    """Factory for sample questions."""
    return make_question


@pytest.fixture
def sample_question():
    """Provide a sample question for testing."""
    return make_question(
        "A 54-year-old man presents with crushing chest pain. What is the first investigation?",
        difficulty=3,
        correct_index=2,
        citations=[{"source": "NICE", "title": "Chest pain of recent onset"}],
    )


@pytest.fixture
def sample_raw_question():
    """Raw generation payload in the service's camelCase shape."""
    return {
        "stem": "  Which nerve is injured in wrist drop?  ",
        "options": ["Ulnar", "Median", "Radial", "Axillary"],
        "correctIndex": 2,
        "explanation": {
            "correctWhy": "The radial nerve supplies the wrist extensors.",
            "whyOthersWrong": ["Claw hand", "Ape hand"],
            "keyTakeaway": "Radial nerve: extensors.",
        },
        "difficulty": 2,
        "citations": [{"source": "Gray's Anatomy"}],
        "tags": ["upper limb"],
    }
