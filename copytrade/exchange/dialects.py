"""
Exchange dialects: translate the internal order vocabulary into each venue's
REST payloads and parse the venue's responses back.

Internal vocabulary: open_long / open_short / close_long / close_short,
stop / profit brackets, one canonical symbol key (BTCUSDT).

    action        Bitget (side + tradeSide, posSide)   Bybit (side, positionIdx)
    open_long     buy  + open,  long                   Buy,  1
    open_short    sell + open,  short                  Sell, 2
    close_long    sell + close, long                   Sell, 1
    close_short   buy  + close, short                  Buy,  2

Dialects are pure: they build ``ExchangeRequest`` objects (a ccxt implicit
API method name plus params) and parse raw JSON. Transport lives in
copytrade.exchange.ccxt_adapter.
"""
from dataclasses import dataclass, field
from datetime import datetime, timezone
from decimal import Decimal, InvalidOperation
from typing import Any, Optional

from copytrade.constants import (
    BITGET_MARGIN_COIN,
    BITGET_PRODUCT_TYPE,
    BITGET_SUCCESS_CODE,
    BYBIT_CATEGORY,
)
from copytrade.data.symbol_utils import normalize_symbol
from copytrade.domain.models import (
    BracketKind,
    ExchangeHistoryEntry,
    HistoryPage,
    Side,
    TradeAction,
)
from copytrade.exceptions import APIError, DataError


@dataclass(frozen=True)
class ExchangeRequest:
    """One REST call: the ccxt implicit method to invoke and its params."""
    method: str
    params: dict = field(default_factory=dict)


def _fmt(value: Decimal) -> str:
    """Plain decimal string without exponent or trailing zeros."""
    text = format(Decimal(value).normalize(), "f")
    return text


def _ms(dt: datetime) -> str:
    return str(int(dt.timestamp() * 1000))


def _from_ms(value: Any) -> datetime:
    return datetime.fromtimestamp(int(value) / 1000, tz=timezone.utc)


def _dec(value: Any, name: str) -> Decimal:
    try:
        return Decimal(str(value))
    except (InvalidOperation, TypeError) as e:
        raise DataError(f"Unparseable {name}: {value!r}") from e


class ExchangeDialect:
    """Base class; one subclass per venue."""

    name: str = ""
    ccxt_id: str = ""

    def check_response(self, response: Any) -> Any:
        """Raise APIError for a venue-level error; return the payload otherwise."""
        raise NotImplementedError

    def account_request(self) -> ExchangeRequest:
        raise NotImplementedError

    def parse_equity(self, response: Any) -> Decimal:
        raise NotImplementedError

    def order_request(self, symbol: str, action: TradeAction, size: Decimal) -> ExchangeRequest:
        raise NotImplementedError

    def bracket_request(
        self,
        symbol: str,
        action: TradeAction,
        trigger_price: Decimal,
        size: Decimal,
        kind: BracketKind,
    ) -> ExchangeRequest:
        raise NotImplementedError

    def parse_order_id(self, response: Any, request: ExchangeRequest) -> str:
        raise NotImplementedError

    def history_request(
        self,
        symbol: Optional[str],
        start_time: datetime,
        end_time: datetime,
        cursor: Optional[str],
        limit: int,
    ) -> ExchangeRequest:
        raise NotImplementedError

    def parse_history(self, response: Any, limit: int) -> HistoryPage:
        raise NotImplementedError


class BitgetDialect(ExchangeDialect):
    """Bitget v2 USDT-M futures, hedge mode."""

    name = "bitget"
    ccxt_id = "bitget"

    @staticmethod
    def order_sides(action: TradeAction) -> tuple[str, str, str]:
        """(side, tradeSide, posSide) for an internal action."""
        is_long = action.side == Side.LONG
        side = "buy" if action.is_open == is_long else "sell"
        trade_side = "open" if action.is_open else "close"
        return side, trade_side, action.side.value

    def check_response(self, response: Any) -> Any:
        if not isinstance(response, dict):
            raise APIError(f"Unexpected Bitget response: {response!r}")
        code = str(response.get("code", ""))
        if code != BITGET_SUCCESS_CODE:
            raise APIError(f"Bitget API error ({code}): {response.get('msg') or 'Unknown error'}", code=code)
        return response.get("data")

    def account_request(self) -> ExchangeRequest:
        return ExchangeRequest("privateMixGetV2MixAccountAccounts", {"productType": BITGET_PRODUCT_TYPE})

    def parse_equity(self, response: Any) -> Decimal:
        data = self.check_response(response) or []
        for account in data:
            if account.get("marginCoin") == BITGET_MARGIN_COIN:
                return _dec(account.get("usdtEquity") or account.get("accountEquity") or "0", "equity")
        raise DataError(f"No {BITGET_MARGIN_COIN} account in Bitget response")

    def order_request(self, symbol: str, action: TradeAction, size: Decimal) -> ExchangeRequest:
        side, trade_side, pos_side = self.order_sides(action)
        return ExchangeRequest("privateMixPostV2MixOrderPlaceOrder", {
            "symbol": normalize_symbol(symbol),
            "productType": BITGET_PRODUCT_TYPE,
            "marginMode": "crossed",
            "marginCoin": BITGET_MARGIN_COIN,
            "size": _fmt(size),
            "side": side,
            "tradeSide": trade_side,
            "posSide": pos_side,
            "orderType": "market",
            "force": "ioc",
        })

    def bracket_request(
        self,
        symbol: str,
        action: TradeAction,
        trigger_price: Decimal,
        size: Decimal,
        kind: BracketKind,
    ) -> ExchangeRequest:
        return ExchangeRequest("privateMixPostV2MixOrderPlaceTpslOrder", {
            "symbol": normalize_symbol(symbol),
            "productType": BITGET_PRODUCT_TYPE,
            "marginCoin": BITGET_MARGIN_COIN,
            "planType": "pos_loss" if kind == BracketKind.STOP else "pos_profit",
            "triggerPrice": _fmt(trigger_price),
            "triggerType": "mark_price",
            "executePrice": "0",  # market on trigger
            "holdSide": action.side.value,
            "size": _fmt(size),
        })

    def parse_order_id(self, response: Any, request: ExchangeRequest) -> str:
        data = self.check_response(response) or {}
        order_id = data.get("orderId")
        if not order_id:
            raise APIError(f"Bitget response has no orderId: {data!r}")
        return str(order_id)

    def history_request(
        self,
        symbol: Optional[str],
        start_time: datetime,
        end_time: datetime,
        cursor: Optional[str],
        limit: int,
    ) -> ExchangeRequest:
        params = {
            "productType": BITGET_PRODUCT_TYPE,
            "startTime": _ms(start_time),
            "endTime": _ms(end_time),
            "limit": str(limit),
        }
        if symbol:
            params["symbol"] = normalize_symbol(symbol)
        if cursor:
            params["idLessThan"] = cursor
        return ExchangeRequest("privateMixGetV2MixPositionHistoryPosition", params)

    def parse_history(self, response: Any, limit: int) -> HistoryPage:
        data = self.check_response(response) or {}
        rows = data.get("list") or []
        entries = [self._entry(row) for row in rows]
        end_id = data.get("endId")
        next_cursor = str(end_id) if end_id and len(rows) >= limit else None
        return HistoryPage(entries=entries, next_cursor=next_cursor)

    @staticmethod
    def _entry(row: dict) -> ExchangeHistoryEntry:
        return ExchangeHistoryEntry(
            symbol=normalize_symbol(row.get("symbol")),
            side=Side.parse(row.get("holdSide")),
            open_price=_dec(row.get("openAvgPrice"), "openAvgPrice"),
            close_price=_dec(row.get("closeAvgPrice"), "closeAvgPrice"),
            quantity=_dec(row.get("closeTotalPos") or row.get("openTotalPos") or "0", "closeTotalPos"),
            leverage=int(Decimal(str(row.get("leverage") or "0"))),
            net_profit=_dec(row.get("netProfit") or "0", "netProfit"),
            opened_at=_from_ms(row.get("ctime")),
            closed_at=_from_ms(row.get("utime")),
            venue_position_id=str(row["positionId"]) if row.get("positionId") else None,
        )


class BybitDialect(ExchangeDialect):
    """Bybit v5 linear perpetuals, hedge mode."""

    name = "bybit"
    ccxt_id = "bybit"

    @staticmethod
    def order_sides(action: TradeAction) -> tuple[str, int]:
        """(side, positionIdx) for an internal action."""
        is_long = action.side == Side.LONG
        side = "Buy" if action.is_open == is_long else "Sell"
        return side, 1 if is_long else 2

    def check_response(self, response: Any) -> Any:
        if not isinstance(response, dict):
            raise APIError(f"Unexpected Bybit response: {response!r}")
        ret_code = response.get("retCode")
        if str(ret_code) != "0":
            raise APIError(
                f"Bybit API error ({ret_code}): {response.get('retMsg') or 'Unknown error'}",
                code=str(ret_code),
            )
        return response.get("result")

    def account_request(self) -> ExchangeRequest:
        return ExchangeRequest("privateGetV5AccountWalletBalance", {"accountType": "UNIFIED"})

    def parse_equity(self, response: Any) -> Decimal:
        result = self.check_response(response) or {}
        accounts = result.get("list") or []
        if not accounts:
            raise DataError("No account in Bybit wallet-balance response")
        for coin in accounts[0].get("coin") or []:
            if coin.get("coin") == "USDT":
                return _dec(coin.get("equity") or "0", "equity")
        return _dec(accounts[0].get("totalEquity") or "0", "totalEquity")

    def order_request(self, symbol: str, action: TradeAction, size: Decimal) -> ExchangeRequest:
        side, position_idx = self.order_sides(action)
        return ExchangeRequest("privatePostV5OrderCreate", {
            "category": BYBIT_CATEGORY,
            "symbol": normalize_symbol(symbol),
            "side": side,
            "orderType": "Market",
            "qty": _fmt(size),
            "positionIdx": position_idx,
            "timeInForce": "IOC",
        })

    def bracket_request(
        self,
        symbol: str,
        action: TradeAction,
        trigger_price: Decimal,
        size: Decimal,
        kind: BracketKind,
    ) -> ExchangeRequest:
        params = {
            "category": BYBIT_CATEGORY,
            "symbol": normalize_symbol(symbol),
            "positionIdx": 1 if action.side == Side.LONG else 2,
            "tpslMode": "Partial",
        }
        if kind == BracketKind.STOP:
            params.update({
                "stopLoss": _fmt(trigger_price),
                "slTriggerBy": "MarkPrice",
                "slSize": _fmt(size),
                "slOrderType": "Market",
            })
        else:
            params.update({
                "takeProfit": _fmt(trigger_price),
                "tpTriggerBy": "MarkPrice",
                "tpSize": _fmt(size),
                "tpOrderType": "Market",
            })
        return ExchangeRequest("privatePostV5PositionTradingStop", params)

    def parse_order_id(self, response: Any, request: ExchangeRequest) -> str:
        result = self.check_response(response) or {}
        order_id = result.get("orderId")
        if order_id:
            return str(order_id)
        if request.method == "privatePostV5PositionTradingStop":
            # trading-stop acknowledges without an id; derive a stable reference
            params = request.params
            if "stopLoss" in params:
                return f"sl:{params['symbol']}:{params['positionIdx']}:{params['stopLoss']}"
            return f"tp:{params['symbol']}:{params['positionIdx']}:{params['takeProfit']}"
        raise APIError(f"Bybit response has no orderId: {result!r}")

    def history_request(
        self,
        symbol: Optional[str],
        start_time: datetime,
        end_time: datetime,
        cursor: Optional[str],
        limit: int,
    ) -> ExchangeRequest:
        params = {
            "category": BYBIT_CATEGORY,
            "startTime": _ms(start_time),
            "endTime": _ms(end_time),
            "limit": str(limit),
        }
        if symbol:
            params["symbol"] = normalize_symbol(symbol)
        if cursor:
            params["cursor"] = cursor
        return ExchangeRequest("privateGetV5PositionClosedPnl", params)

    def parse_history(self, response: Any, limit: int) -> HistoryPage:
        result = self.check_response(response) or {}
        entries = [self._entry(row) for row in result.get("list") or []]
        return HistoryPage(entries=entries, next_cursor=result.get("nextPageCursor") or None)

    @staticmethod
    def _entry(row: dict) -> ExchangeHistoryEntry:
        position_idx = row.get("positionIdx")
        if position_idx in (1, 2, "1", "2"):
            side = Side.LONG if int(position_idx) == 1 else Side.SHORT
        else:
            side = Side.parse(row.get("side"))
        return ExchangeHistoryEntry(
            symbol=normalize_symbol(row.get("symbol")),
            side=side,
            open_price=_dec(row.get("avgEntryPrice"), "avgEntryPrice"),
            close_price=_dec(row.get("avgExitPrice"), "avgExitPrice"),
            quantity=_dec(row.get("closedSize") or "0", "closedSize"),
            leverage=int(Decimal(str(row.get("leverage") or "0"))),
            net_profit=_dec(row.get("closedPnl") or "0", "closedPnl"),
            opened_at=_from_ms(row.get("createdTime")),
            closed_at=_from_ms(row.get("updatedTime")),
            close_type=row.get("execType"),
            venue_position_id=str(row["orderId"]) if row.get("orderId") else None,
        )


DIALECTS: dict[str, type[ExchangeDialect]] = {
    BitgetDialect.name: BitgetDialect,
    BybitDialect.name: BybitDialect,
}


def get_dialect(name: str) -> ExchangeDialect:
    try:
        return DIALECTS[name.lower()]()
    except KeyError:
        raise ValueError(f"Unknown exchange dialect: {name!r}. Known: {sorted(DIALECTS)}") from None
