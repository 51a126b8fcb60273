"""Shared test fixtures."""

from collections.abc import AsyncIterator
from unittest.mock import AsyncMock, MagicMock

import pytest
from httpx import ASGITransport, AsyncClient

from src.main import app


def make_session_mock(in_transaction: bool = False) -> MagicMock:
    """AsyncSession stand-in whose begin()/begin_nested() work as async context managers."""
    db = MagicMock()
    db.in_transaction.return_value = in_transaction
    tx = MagicMock()
    tx.__aenter__ = AsyncMock(return_value=tx)
    tx.__aexit__ = AsyncMock(return_value=False)
    db.begin.return_value = tx
    db.begin_nested.return_value = tx
    return db


@pytest.fixture
def db() -> MagicMock:
    return make_session_mock()


@pytest.fixture
async def client() -> AsyncIterator[AsyncClient]:
    """Async HTTP client for the FastAPI app (lifespan not run, so no DB needed)."""
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac
