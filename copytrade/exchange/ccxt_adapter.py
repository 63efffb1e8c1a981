"""
ccxt-backed ExchangeAdapter.

Signing, rate limiting and HTTP transport are delegated to ccxt's async
exchange classes; each call goes through the venue's implicit REST method
named by the dialect. ccxt exceptions are translated into the engine's
APIError family so callers never import ccxt.
"""
from datetime import datetime
from decimal import Decimal
from typing import Any, Optional

import ccxt
import ccxt.async_support as ccxt_async

from copytrade.config.config import ExchangeConfig
from copytrade.domain.models import BracketKind, HistoryPage, TradeAction
from copytrade.exceptions import APIError, AuthenticationError, RateLimitError
from copytrade.exchange.dialects import ExchangeDialect, ExchangeRequest, get_dialect
from copytrade.monitoring.logger import get_logger

logger = get_logger(__name__)


class CCXTExchangeAdapter:
    """
    ExchangeAdapter over a ccxt async exchange instance.

    The ccxt instance is created lazily inside the running event loop.
    """

    def __init__(
        self,
        dialect: ExchangeDialect,
        api_key: Optional[str] = None,
        api_secret: Optional[str] = None,
        passphrase: Optional[str] = None,
        use_testnet: bool = False,
        *,
        timeout_ms: int = 30000,
        page_limit: int = 100,
        exchange: Any = None,
    ):
        """
        Args:
            dialect: Venue dialect building requests and parsing responses
            api_key: API key
            api_secret: API secret
            passphrase: API passphrase (Bitget)
            use_testnet: Route to the venue sandbox
            timeout_ms: ccxt transport timeout
            page_limit: History page size
            exchange: Pre-built ccxt instance (tests)
        """
        self.dialect = dialect
        self.api_key = api_key
        self.api_secret = api_secret
        self.passphrase = passphrase
        self.use_testnet = use_testnet
        self.timeout_ms = timeout_ms
        self.page_limit = page_limit
        self.exchange = exchange

    def _ensure_exchange(self) -> Any:
        if self.exchange is None:
            exchange_cls = getattr(ccxt_async, self.dialect.ccxt_id)
            options = {
                "apiKey": self.api_key,
                "secret": self.api_secret,
                "enableRateLimit": True,
                "timeout": self.timeout_ms,
            }
            if self.passphrase:
                options["password"] = self.passphrase
            self.exchange = exchange_cls(options)
            if self.use_testnet:
                self.exchange.set_sandbox_mode(True)
            logger.info("EXCHANGE_CLIENT_INIT", dialect=self.dialect.name, testnet=self.use_testnet)
        return self.exchange

    async def _call(self, request: ExchangeRequest) -> Any:
        exchange = self._ensure_exchange()
        method = getattr(exchange, request.method)
        try:
            return await method(request.params)
        except ccxt.AuthenticationError as e:
            raise AuthenticationError(f"{self.dialect.name} authentication failed: {e}") from e
        except ccxt.RateLimitExceeded as e:
            raise RateLimitError(f"{self.dialect.name} rate limit exceeded: {e}") from e
        except (ccxt.ExchangeError, ccxt.NetworkError) as e:
            logger.warning(
                "EXCHANGE_REQUEST_FAILED",
                dialect=self.dialect.name,
                method=request.method,
                error=str(e),
                error_type=type(e).__name__,
            )
            raise APIError(f"{self.dialect.name} {request.method} failed: {e}") from e

    async def get_account(self) -> Decimal:
        """Account equity in USDT."""
        response = await self._call(self.dialect.account_request())
        return self.dialect.parse_equity(response)

    async def place_order(self, symbol: str, side: TradeAction, size: Decimal) -> str:
        """Market order; returns the venue order id."""
        request = self.dialect.order_request(symbol, side, size)
        response = await self._call(request)
        order_id = self.dialect.parse_order_id(response, request)
        logger.info("ORDER_PLACED", dialect=self.dialect.name, symbol=symbol, action=side.value, size=str(size), order_id=order_id)
        return order_id

    async def place_bracket_order(
        self,
        symbol: str,
        side: TradeAction,
        trigger_price: Decimal,
        size: Decimal,
        kind: BracketKind,
    ) -> str:
        """Position-level stop or take-profit trigger; returns its id."""
        request = self.dialect.bracket_request(symbol, side, trigger_price, size, kind)
        response = await self._call(request)
        order_id = self.dialect.parse_order_id(response, request)
        logger.info(
            "BRACKET_PLACED",
            dialect=self.dialect.name,
            symbol=symbol,
            kind=kind.value,
            trigger_price=str(trigger_price),
            size=str(size),
            order_id=order_id,
        )
        return order_id

    async def get_position_history(
        self,
        symbol: Optional[str],
        start_time: datetime,
        end_time: datetime,
        cursor: Optional[str] = None,
    ) -> HistoryPage:
        """One page of closed-position history; follow next_cursor for more."""
        request = self.dialect.history_request(symbol, start_time, end_time, cursor, self.page_limit)
        response = await self._call(request)
        return self.dialect.parse_history(response, self.page_limit)

    async def close(self):
        """Cleanup resources."""
        if self.exchange is not None:
            await self.exchange.close()
            self.exchange = None


def create_adapter(config: ExchangeConfig, *, page_limit: int = 100) -> CCXTExchangeAdapter:
    """Build the adapter for the configured dialect."""
    if not config.has_credentials():
        raise AuthenticationError(f"{config.dialect} API credentials not configured")
    return CCXTExchangeAdapter(
        get_dialect(config.dialect),
        api_key=config.api_key,
        api_secret=config.api_secret,
        passphrase=config.passphrase,
        use_testnet=config.use_testnet,
        timeout_ms=config.request_timeout_ms,
        page_limit=page_limit,
    )
