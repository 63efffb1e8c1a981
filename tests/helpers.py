"""
Shared test builders and an in-memory exchange adapter.
"""
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from typing import Optional

from copytrade.domain.models import (
    BracketKind,
    ExchangeHistoryEntry,
    HistoryPage,
    Side,
    Signal,
    TradeAction,
)
from copytrade.exceptions import APIError


NOW = datetime(2026, 3, 15, 12, 0, tzinfo=timezone.utc)


def make_signal(
    symbol: str = "BTCUSDT",
    side: Side = Side.LONG,
    price: str = "100000",
    user_id: str = "user-1",
    timestamp: Optional[datetime] = None,
    **kwargs,
) -> Signal:
    return Signal(
        user_id=user_id,
        symbol=symbol,
        side=side,
        price=Decimal(price),
        timestamp=timestamp or NOW,
        **kwargs,
    )


def make_entry(
    symbol: str = "BTCUSDT",
    side: Side = Side.LONG,
    open_price: str = "100000",
    close_price: str = "103000",
    quantity: str = "0.001",
    leverage: int = 10,
    net_profit: str = "2.9",
    opened_at: Optional[datetime] = None,
    closed_at: Optional[datetime] = None,
    venue_position_id: Optional[str] = None,
) -> ExchangeHistoryEntry:
    closed_at = closed_at or NOW
    return ExchangeHistoryEntry(
        symbol=symbol,
        side=side,
        open_price=Decimal(open_price),
        close_price=Decimal(close_price),
        quantity=Decimal(quantity),
        leverage=leverage,
        net_profit=Decimal(net_profit),
        opened_at=opened_at or closed_at - timedelta(hours=2),
        closed_at=closed_at,
        venue_position_id=venue_position_id,
    )


class FakeExchange:
    """
    In-memory ExchangeAdapter.

    Records every call; failures are injected per method or per bracket
    kind/leg index; history is served in pages of ``page_size``.
    """

    def __init__(
        self,
        equity: Decimal = Decimal("10000"),
        history: Optional[list[ExchangeHistoryEntry]] = None,
        page_size: int = 100,
    ):
        self.equity = equity
        self.history = list(history or [])
        self.page_size = page_size
        self.calls: list[tuple] = []
        self.fail_entry: Optional[Exception] = None
        self.fail_brackets: dict[int, Exception] = {}  # bracket call index -> error
        self.fail_history_at_cursor: Optional[str] = None
        self._bracket_count = 0

    async def get_account(self) -> Decimal:
        self.calls.append(("get_account",))
        return self.equity

    async def place_order(self, symbol: str, side: TradeAction, size: Decimal) -> str:
        self.calls.append(("place_order", symbol, side, size))
        if self.fail_entry is not None:
            raise self.fail_entry
        return "entry-1"

    async def place_bracket_order(
        self,
        symbol: str,
        side: TradeAction,
        trigger_price: Decimal,
        size: Decimal,
        kind: BracketKind,
    ) -> str:
        index = self._bracket_count
        self._bracket_count += 1
        self.calls.append(("place_bracket_order", symbol, side, trigger_price, size, kind))
        if index in self.fail_brackets:
            raise self.fail_brackets[index]
        return f"{kind.value}-{index}"

    async def get_position_history(self, symbol, start_time, end_time, cursor=None) -> HistoryPage:
        self.calls.append(("get_position_history", start_time, end_time, cursor))
        if self.fail_history_at_cursor is not None and cursor == self.fail_history_at_cursor:
            raise APIError("history endpoint unavailable")
        in_span = [e for e in self.history if start_time <= e.closed_at < end_time]
        offset = int(cursor) if cursor else 0
        page = in_span[offset:offset + self.page_size]
        next_offset = offset + self.page_size
        return HistoryPage(
            entries=page,
            next_cursor=str(next_offset) if next_offset < len(in_span) else None,
        )

    def count(self, method: str) -> int:
        return sum(1 for call in self.calls if call[0] == method)

