"""
Spot USD prices for the configured token pair.

One upstream query per attempt, retried with capped exponential backoff.
When every attempt fails and the pool's own exchange ratio is supplied, an
estimated pair is derived from it instead of failing; estimated prices are
for display and sizing only, never for settlement.
"""
import asyncio
from decimal import Decimal, InvalidOperation
from typing import Any, Callable, Awaitable, Dict, Optional

import aiohttp

from repositioner.config.config import PriceConfig, TokenConfig
from repositioner.domain.models import PricePair
from repositioner.exceptions import PriceUnavailableError, RpcError
from repositioner.monitoring.logger import get_logger
from repositioner.utils.retry import RetryPolicy, exponential_backoff, retry_on

logger = get_logger(__name__)


class BadPriceRead(RpcError):
    """Upstream answered but a price was missing, malformed or exactly zero."""
    pass


NETWORK_ERRORS = (aiohttp.ClientError, asyncio.TimeoutError)
RETRYABLE_ERRORS = NETWORK_ERRORS + (RpcError,)


def is_network_error(exc: BaseException) -> bool:
    return isinstance(exc, NETWORK_ERRORS)


class PriceOracleClient:
    """Jupiter price API client with a pool-ratio fallback estimator."""

    def __init__(
        self,
        config: PriceConfig,
        tokens: TokenConfig,
        session: Optional[aiohttp.ClientSession] = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ):
        self.config = config
        self.tokens = tokens
        self._session = session
        self._sleep = sleep

    def _policy(self, max_attempts: int) -> RetryPolicy:
        return RetryPolicy(
            max_attempts=max_attempts,
            backoff=exponential_backoff(self.config.base_delay_seconds, self.config.max_delay_seconds),
            retryable=retry_on(*RETRYABLE_ERRORS),
            sleep=self._sleep,
        )

    async def fetch_prices(
        self,
        max_attempts: Optional[int] = None,
        fallback_pool_price: Optional[Decimal] = None,
    ) -> PricePair:
        """
        Fetch token X / token Y USD prices.

        Args:
            max_attempts: Attempt budget (defaults to config)
            fallback_pool_price: Pool exchange ratio (token Y per token X); when
                positive, used to estimate prices once all attempts fail

        Raises:
            PriceUnavailableError: all attempts failed and no usable fallback
        """
        attempts = self.config.max_attempts if max_attempts is None else max_attempts

        def on_retry(attempt: int, exc: BaseException) -> None:
            logger.warning(
                "PRICE_FETCH_RETRY",
                attempt=attempt,
                max_attempts=attempts,
                network_error=is_network_error(exc),
                error=str(exc) or exc.__class__.__name__,
            )

        try:
            return await self._policy(attempts).run(self._fetch_once, operation="fetch_prices", on_retry=on_retry)
        except RETRYABLE_ERRORS as e:
            last_error = e

        fallback = _positive_decimal(fallback_pool_price)
        if fallback is not None:
            estimated = self.estimate_from_pool_price(fallback)
            logger.warning(
                "PRICE_FALLBACK_ESTIMATED",
                pool_price=str(fallback),
                price_x=str(estimated.price_x),
                price_y=str(estimated.price_y),
                last_error=str(last_error) or last_error.__class__.__name__,
            )
            return estimated

        logger.error("PRICE_UNAVAILABLE", attempts=attempts, error=str(last_error) or last_error.__class__.__name__)
        raise PriceUnavailableError(
            f"Failed to fetch token prices after {attempts} attempts",
            last_error=last_error,
        )

    def estimate_from_pool_price(self, pool_price: Decimal) -> PricePair:
        """
        Approximate USD prices from the pool ratio.

        Token Y is valued at the configured reference price and token X at
        ``pool_price`` token Y each.
        """
        price_y = self.config.fallback_quote_price_usd
        return PricePair(price_x=pool_price * price_y, price_y=price_y, estimated=True)

    async def _fetch_once(self) -> PricePair:
        ids = f"{self.tokens.token_x_mint},{self.tokens.token_y_mint}"
        headers = {"Accept": "application/json"}
        if self.config.api_key:
            headers["x-api-key"] = self.config.api_key

        timeout = aiohttp.ClientTimeout(total=self.config.timeout_seconds)
        if self._session is not None:
            payload = await self._get_json(self._session, ids, headers, timeout)
        else:
            async with aiohttp.ClientSession(timeout=timeout) as session:
                payload = await self._get_json(session, ids, headers, timeout)

        price_x = self._extract_price(payload, self.tokens.token_x_mint, self.tokens.token_x_symbol)
        price_y = self._extract_price(payload, self.tokens.token_y_mint, self.tokens.token_y_symbol)
        logger.debug("PRICES_FETCHED", price_x=str(price_x), price_y=str(price_y))
        return PricePair(price_x=price_x, price_y=price_y)

    async def _get_json(
        self,
        session: aiohttp.ClientSession,
        ids: str,
        headers: Dict[str, str],
        timeout: aiohttp.ClientTimeout,
    ) -> Dict[str, Any]:
        async with session.get(self.config.api_url, params={"ids": ids}, headers=headers, timeout=timeout) as response:
            if response.status != 200:
                text = await response.text()
                raise RpcError(f"Price API error: HTTP {response.status}", text[:200])
            try:
                payload = await response.json(content_type=None)
            except ValueError as e:
                raise BadPriceRead("Price API returned invalid JSON", str(e))
        if not isinstance(payload, dict):
            raise BadPriceRead("Price API returned an unexpected payload")
        return payload

    @staticmethod
    def _extract_price(payload: Dict[str, Any], mint: str, symbol: str) -> Decimal:
        entry = payload.get(mint)
        if not isinstance(entry, dict):
            raise BadPriceRead(f"No price returned for {symbol}")
        price = _positive_decimal(entry.get("usdPrice"))
        if price is None:
            # Zero is a bad read, not a valid price
            raise BadPriceRead(f"Invalid price for {symbol}: {entry.get('usdPrice')!r}")
        return price


def _positive_decimal(value: Any) -> Optional[Decimal]:
    if value is None:
        return None
    try:
        d = Decimal(str(value))
    except (InvalidOperation, ValueError):
        return None
    if not d.is_finite() or d <= 0:
        return None
    return d
