"""
Domain protocols (interfaces) for dependency inversion.

The execution and reconciliation layers depend on these contracts rather
than on ccxt or on the storage module, so tests can pass fakes.
"""
from typing import Dict, Optional, Protocol, runtime_checkable
from datetime import datetime
from decimal import Decimal

from copytrade.domain.models import BracketKind, HistoryPage, TradeAction


@runtime_checkable
class ExchangeAdapter(Protocol):
    """
    Order and history access for one user's exchange account.

    Implemented by copytrade.exchange.ccxt_adapter.CCXTExchangeAdapter.
    Every method raises an APIError subclass on failure.
    """

    async def get_account(self) -> Decimal:
        """Account equity in the margin coin."""
        ...

    async def place_order(self, symbol: str, side: TradeAction, size: Decimal) -> str:
        """Market order; returns the venue order id."""
        ...

    async def place_bracket_order(
        self,
        symbol: str,
        side: TradeAction,
        trigger_price: Decimal,
        size: Decimal,
        kind: BracketKind,
    ) -> str:
        """Stop-loss or take-profit trigger order; returns the venue order id."""
        ...

    async def get_position_history(
        self,
        symbol: Optional[str],
        start_time: datetime,
        end_time: datetime,
        cursor: Optional[str] = None,
    ) -> HistoryPage:
        """One page of closed-position history."""
        ...


@runtime_checkable
class EventRecorder(Protocol):
    """
    Protocol for recording audit events (rejections, corrections, deletions).

    Implemented by copytrade.storage.repository.record_event in production.
    Can be replaced with a no-op or in-memory recorder in tests.
    """

    def __call__(
        self,
        event_type: str,
        symbol: str,
        details: Dict,
        user_id: Optional[str] = None,
        timestamp: Optional[datetime] = None,
    ) -> None: ...


def _noop_event_recorder(
    event_type: str,
    symbol: str,
    details: Dict,
    user_id: Optional[str] = None,
    timestamp: Optional[datetime] = None,
) -> None:
    """No-op event recorder for use in tests or when persistence is unavailable."""
    pass
