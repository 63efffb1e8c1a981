"""
Tests for the exception taxonomy callers branch on.
"""
import inspect

import pytest

from copytrade import exceptions
from copytrade.exceptions import (
    APIError,
    AuthenticationError,
    CopyTradeError,
    DataError,
    DuplicatePositionError,
    OperationalError,
    RateLimitError,
    SettingsResolutionError,
    ValidationError,
)


def test_module_defines_exactly_the_documented_classes():
    defined = {
        name for name, obj in inspect.getmembers(exceptions, inspect.isclass)
        if obj.__module__ == exceptions.__name__
    }
    assert defined == {
        "CopyTradeError",
        "OperationalError",
        "APIError",
        "AuthenticationError",
        "RateLimitError",
        "DataError",
        "ValidationError",
        "SettingsResolutionError",
        "DuplicatePositionError",
    }


@pytest.mark.parametrize("cls", [APIError, AuthenticationError, RateLimitError])
def test_exchange_errors_are_operational(cls):
    assert issubclass(cls, OperationalError)
    assert not issubclass(cls, DataError)


@pytest.mark.parametrize("cls", [ValidationError, SettingsResolutionError, DuplicatePositionError])
def test_input_errors_are_data_errors(cls):
    assert issubclass(cls, DataError)
    assert issubclass(cls, CopyTradeError)


def test_api_error_keeps_venue_code():
    error = RateLimitError("too many requests", code="10006")
    assert str(error) == "too many requests"
    assert error.code == "10006"


def test_duplicate_position_names_the_slot():
    error = DuplicatePositionError("user-1", "BTCUSDT", "long")
    assert "user-1/BTCUSDT/long" in str(error)
    assert (error.user_id, error.symbol, error.side) == ("user-1", "BTCUSDT", "long")
