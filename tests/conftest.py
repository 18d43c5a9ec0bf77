"""Test fixtures using a throwaway SQLite database per test (aiosqlite)."""

import time

import jwt
import pytest
import pytest_asyncio

from marginalia.config import Settings
from marginalia.storage.database import Database

JWT_SECRET = "test-jwt-secret-with-at-least-32-bytes"
ADMIN_ID = "admin-user"


# ---------------------------------------------------------------------------
# Settings
# ---------------------------------------------------------------------------


@pytest.fixture
def make_settings(tmp_path):
    """Factory for Settings pointing at a per-test SQLite file."""

    def _make(**overrides) -> Settings:
        values = {
            "DATABASE_URL": f"sqlite+aiosqlite:///{tmp_path / 'test.db'}",
            "SUPABASE_JWT_SECRET": JWT_SECRET,
            "ADMIN_USER_IDS": ADMIN_ID,
            "ANTHROPIC_API_KEY": "test-key",
        }
        values.update(overrides)
        return Settings(_env_file=None, **values)

    return _make


@pytest.fixture
def settings(make_settings) -> Settings:
    return make_settings()


# ---------------------------------------------------------------------------
# Database fixtures
# ---------------------------------------------------------------------------


@pytest_asyncio.fixture
async def db(settings):
    """Database with the schema created, disposed after the test."""
    database = Database(settings)
    await database.create_schema()
    yield database
    await database.disconnect()


# ---------------------------------------------------------------------------
# Auth helpers
# ---------------------------------------------------------------------------


def make_token(user_id: str, secret: str = JWT_SECRET, expires_in: int = 3600) -> str:
    return jwt.encode(
        {"sub": user_id, "aud": "authenticated", "exp": int(time.time()) + expires_in},
        secret,
        algorithm="HS256",
    )


def auth_headers(user_id: str) -> dict[str, str]:
    return {"Authorization": f"Bearer {make_token(user_id)}"}
