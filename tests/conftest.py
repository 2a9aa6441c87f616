"""
Shared fixtures for the test suite.

The environment is set before any ``app`` module is imported so that the
cached settings and the module-level engine point at a throwaway SQLite
database.
"""

import os
import tempfile
import uuid

import pytest

_DB_DIR = tempfile.mkdtemp(prefix="eisenhower-tests-")
os.environ["DATABASE_URL"] = f"sqlite+aiosqlite:///{_DB_DIR}/test.db"
os.environ["CREATE_TABLES_ON_STARTUP"] = "true"
os.environ["DATABASE_RETRY_BASE_SECONDS"] = "0"
os.environ["AI_API_KEY"] = "test-key"

from fastapi.testclient import TestClient  # noqa: E402


class FakeClock:
    """Monotonic clock that only moves when a test advances it."""

    def __init__(self, start: float = 1000.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class FakeAIClient:
    """Stands in for AIClient; returns ``reply`` or raises ``error``."""

    def __init__(self, reply: str = "{}", error: Exception | None = None) -> None:
        self.reply = reply
        self.error = error
        self.prompts: list[str] = []

    async def generate(self, prompt: str) -> str:
        self.prompts.append(prompt)
        if self.error is not None:
            raise self.error
        return self.reply


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def client():
    from app.main import app

    with TestClient(app) as test_client:
        yield test_client
    app.dependency_overrides.clear()


@pytest.fixture
def user_headers() -> dict[str, str]:
    return {"X-User-Id": f"user-{uuid.uuid4().hex[:12]}"}
