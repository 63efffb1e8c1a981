"""
Pytest configuration and shared fixtures.
"""
import os

# Set DATABASE_URL for unit tests (must be before any copytrade imports).
# get_db is mocked below for unit tests so we never connect.
if "DATABASE_URL" not in os.environ:
    os.environ["DATABASE_URL"] = "postgresql://localhost/unit_test"

from unittest.mock import MagicMock, patch

import pytest

from tests.helpers import FakeExchange


def pytest_configure(config):
    """Register custom marks. Async tests require pytest-asyncio."""
    config.addinivalue_line("markers", "asyncio: mark test as async (pytest-asyncio).")


@pytest.fixture(autouse=True)
def _mock_db_for_unit(request):
    """
    Auto-mock get_db in unit tests so they run without a real DB.
    Skip for integration tests (they use an in-memory SQLite database).
    """
    if "integration" in str(request.node.fspath):
        yield
        return

    def _make_mock_db():
        mock_db = MagicMock()
        mock_session = MagicMock()
        mock_session.query.return_value.filter.return_value.count.return_value = 0
        mock_session.query.return_value.filter.return_value.all.return_value = []
        mock_session.query.return_value.filter.return_value.first.return_value = None
        cm = MagicMock()
        cm.__enter__ = MagicMock(return_value=mock_session)
        cm.__exit__ = MagicMock(return_value=False)
        mock_db.get_session.return_value = cm
        mock_db.database_url = "postgresql://localhost/unit_test"
        return mock_db

    with patch("copytrade.storage.repository.get_db", side_effect=_make_mock_db):
        yield


@pytest.fixture
def sqlite_db():
    """Fresh in-memory database installed as the global instance."""
    from copytrade.storage.db import init_db, reset_db

    db = init_db("sqlite://")
    yield db
    db.drop_all()
    reset_db()


@pytest.fixture
def fake_exchange():
    return FakeExchange()
