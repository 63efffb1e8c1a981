"""
Custom exception hierarchy for the copy-trading engine.

Provides clear, specific exceptions for different error scenarios
so callers can decide between failing a signal and rejecting a record.

Hierarchy:

    CopyTradeError (base)
    ├── OperationalError  : transient (exchange, network, timeouts)
    │   └── APIError    : exchange returned an error or was unreachable
    │       ├── AuthenticationError
    │       └── RateLimitError
    └── DataError       : bad input, reject this signal/record
        ├── ValidationError
        ├── SettingsResolutionError
        └── DuplicatePositionError

Rules:
    - OperationalError: no retry inside the core. The caller owns retry policy;
      the affected signal is marked failed with the raw message.
    - DataError: log, record the reason on the affected record, continue.
    - Everything else (AttributeError, TypeError, etc.): let crash.
"""


class CopyTradeError(Exception):
    """Base exception for all copy-trading errors."""
    pass


# ============ OPERATIONAL (transient) ============

class OperationalError(CopyTradeError):
    """Transient error: exchange API, network, timeouts.

    Treatment: propagate to the caller, mark the signal failed.
    """
    pass


class APIError(OperationalError):
    """API-specific operational error (exchange returned error)."""

    def __init__(self, message: str, code: str | None = None):
        super().__init__(message)
        self.code = code


class AuthenticationError(APIError):
    """Raised when API authentication fails or credentials are missing."""
    pass


class RateLimitError(APIError):
    """Raised when API rate limit is exceeded."""
    pass


# ============ DATA (bad input, reject) ============

class DataError(CopyTradeError):
    """Bad data: malformed signal, unparseable exchange payload, impossible settings.

    Treatment: log, record a reason string, continue with the next item.
    """
    pass


class ValidationError(DataError):
    """Raised when validation checks fail (bad input data)."""
    pass


class SettingsResolutionError(DataError):
    """Raised when user/admin settings cannot be merged into a complete record."""
    pass


class DuplicatePositionError(DataError):
    """An open position already exists for (user, symbol, side).

    Raised by the repository when the storage uniqueness constraint fires.
    """

    def __init__(self, user_id: str, symbol: str, side: str):
        super().__init__(f"Open position already exists for {user_id}/{symbol}/{side}")
        self.user_id = user_id
        self.symbol = symbol
        self.side = side

