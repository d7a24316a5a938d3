import itertools
import os
from typing import AsyncGenerator

import pytest_asyncio
from httpx import ASGITransport, AsyncClient

# In-memory Mongo has no multi-document transactions
os.environ.setdefault("MONGODB_DB_NAME", "orbit_credits_test")
os.environ.setdefault("MONGODB_TRANSACTIONS", "false")


@pytest_asyncio.fixture
async def db() -> AsyncGenerator[None, None]:
    """Fresh in-memory database per test."""
    from mongomock_motor import AsyncMongoMockClient

    from orbit_credits.core.config import get_settings
    from orbit_credits.db.init import init_db
    from orbit_credits.services import pricing as pricing_service

    get_settings.cache_clear()
    pricing_service.invalidate_cache()
    await init_db(client=AsyncMongoMockClient())
    yield
    pricing_service.invalidate_cache()


@pytest_asyncio.fixture
async def make_user(db):
    from orbit_credits.models.user import User

    counter = itertools.count(1)

    async def _make(**fields) -> User:
        fields.setdefault("email", f"student{next(counter)}@example.com")
        user = User(**fields)
        await user.insert()
        return user

    return _make


@pytest_asyncio.fixture
async def client(db) -> AsyncGenerator[AsyncClient, None]:
    from orbit_credits.main import create_app
    app = create_app(use_lifespan=False)
    async with AsyncClient(
        transport=ASGITransport(app=app),
        base_url="http://test",
    ) as ac:
        yield ac
