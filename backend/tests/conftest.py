import os
import shutil
import tempfile
from pathlib import Path
from unittest.mock import AsyncMock

import pytest
import pytest_asyncio

# Point the global database service at a throwaway file before importing
# ideascan modules. Tests use their own per-test database.
_SESSION_DIR = Path(tempfile.mkdtemp(prefix="ideascan_pytest_"))
os.environ.setdefault("DATABASE_URL", f"sqlite+aiosqlite:///{_SESSION_DIR}/global.db")
os.environ.setdefault("ANTHROPIC_API_KEY", "test-anthropic-key")
os.environ.setdefault("OPENAI_API_KEY", "test-openai-key")
os.environ.setdefault("CELERY_BROKER_URL", "redis://localhost:6379/0")

from fakes import FakeLockService, RecordingDispatcher, Seeder  # noqa: E402

from ideascan.core.pipeline.batch_guard import BatchGuard  # noqa: E402
from ideascan.core.pipeline.retry_policy import RetryPolicy  # noqa: E402
from ideascan.core.pipeline.scan_state_service import ScanStateService  # noqa: E402
from ideascan.core.shared.database_service import DatabaseService  # noqa: E402


def pytest_sessionfinish(session, exitstatus):
    """Cleanup temporary test files after the test session."""
    shutil.rmtree(_SESSION_DIR, ignore_errors=True)


# ============================================================================
# Fixtures
# ============================================================================


@pytest_asyncio.fixture
async def db(tmp_path):
    """Fresh SQLite database per test."""
    service = DatabaseService(f"sqlite+aiosqlite:///{tmp_path}/ideascan_test.db")
    await service.init_db()
    yield service
    await service.close()


@pytest.fixture
def seed(db) -> Seeder:
    return Seeder(db)


@pytest.fixture
def state() -> ScanStateService:
    return ScanStateService()


@pytest.fixture
def dispatcher() -> RecordingDispatcher:
    return RecordingDispatcher()


@pytest.fixture
def sleep() -> AsyncMock:
    return AsyncMock()


@pytest.fixture
def retry_policy(sleep) -> RetryPolicy:
    return RetryPolicy(max_attempts=3, max_backoff=30, sleep=sleep)


@pytest.fixture
def locks() -> FakeLockService:
    return FakeLockService()


@pytest.fixture
def guard(locks) -> BatchGuard:
    return BatchGuard(locks=locks, stale_after_seconds=7200)
