# finsim/io/alpha_vantage.py
"""
Alpha Vantage GLOBAL_QUOTE client.
Every failure is raised as a ProviderError subclass; callers decide the fallback.
"""

import asyncio
import logging
from datetime import datetime
from decimal import Decimal, InvalidOperation
from typing import Any, Dict, Optional

import aiohttp

from finsim.db.models import utcnow
from finsim.domain.models import Provenance, Quote, to_cents

logger = logging.getLogger(__name__)


class ProviderError(Exception):
    """Raised when the quote provider cannot give a usable quote"""
    pass

class QuotaExceeded(ProviderError):
    """Raised when the provider answers with a rate-limit note"""
    pass

class InvalidSymbol(ProviderError):
    """Raised when the provider does not know the symbol"""
    pass

class MalformedQuote(ProviderError):
    """Raised when the payload is empty, unparsable or has no positive price"""
    pass

class ProviderUnavailable(ProviderError):
    """Raised when the provider is not configured or cannot be reached"""
    pass


def _decimal_field(quote: Dict[str, Any], key: str) -> Decimal:
    raw = str(quote.get(key) or "0").strip().rstrip("%")
    try:
        return Decimal(raw)
    except InvalidOperation:
        raise MalformedQuote(f"Field {key!r} is not a number: {raw!r}")


def parse_global_quote(symbol: str, payload: Any, retrieved_at: Optional[datetime] = None) -> Quote:
    """
    Convert a GLOBAL_QUOTE response body into a live Quote.

    Args:
        symbol: Symbol as known to the simulator (without exchange suffix)
        payload: Decoded JSON body

    Returns:
        Quote with LIVE provenance
    """
    if not isinstance(payload, dict):
        raise MalformedQuote(f"Unexpected payload type for {symbol}: {type(payload).__name__}")

    # Alpha Vantage reports quota exhaustion as a 200 with a Note/Information message
    notice = payload.get("Note") or payload.get("Information")
    if notice:
        raise QuotaExceeded(str(notice))

    if payload.get("Error Message"):
        raise InvalidSymbol(f"{symbol}: {payload['Error Message']}")

    quote = payload.get("Global Quote")
    if not isinstance(quote, dict) or not quote:
        raise MalformedQuote(f"No quote data returned for {symbol}")

    price = _decimal_field(quote, "05. price")
    if not price.is_finite() or price <= 0:
        raise MalformedQuote(f"Invalid price for {symbol}: {price}")

    return Quote(
        symbol=symbol,
        price=to_cents(price),
        previous_close=to_cents(_decimal_field(quote, "08. previous close")),
        change=to_cents(_decimal_field(quote, "09. change")),
        change_percent=to_cents(_decimal_field(quote, "10. change percent")),
        retrieved_at=retrieved_at or utcnow(),
        provenance=Provenance.LIVE,
    )


class AlphaVantageClient:
    """Async client for one quote per request."""

    def __init__(
        self,
        api_key: Optional[str],
        base_url: str = "https://www.alphavantage.co/query",
        exchange_suffix: str = ".BSE",
        timeout_seconds: float = 10.0,
        session: Optional[aiohttp.ClientSession] = None,
    ):
        self.api_key = api_key
        self.base_url = base_url
        self.exchange_suffix = exchange_suffix
        self.timeout_seconds = timeout_seconds
        self._session = session
        self._owns_session = session is None

    @classmethod
    def from_settings(cls, settings) -> "AlphaVantageClient":
        return cls(
            api_key=settings.api_key,
            base_url=settings.base_url,
            exchange_suffix=settings.exchange_suffix,
            timeout_seconds=settings.request_timeout_seconds,
        )

    def provider_symbol(self, symbol: str) -> str:
        """NSE symbol to the exchange-qualified form the provider expects."""
        return f"{symbol}{self.exchange_suffix}"

    async def fetch_quote(self, symbol: str) -> Quote:
        if not self.api_key:
            raise ProviderUnavailable("Alpha Vantage API key not configured")

        params = {
            "function": "GLOBAL_QUOTE",
            "symbol": self.provider_symbol(symbol),
            "apikey": self.api_key,
        }

        try:
            session = self._get_session()
            async with session.get(
                self.base_url,
                params=params,
                timeout=aiohttp.ClientTimeout(total=self.timeout_seconds),
            ) as response:
                if response.status != 200:
                    response_text = await response.text()
                    raise ProviderUnavailable(
                        f"Provider returned status {response.status} for {symbol}: {response_text[:200]}"
                    )
                payload = await response.json(content_type=None)
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            raise ProviderUnavailable(f"HTTP error fetching {symbol}: {e!r}") from e
        except ValueError as e:
            raise MalformedQuote(f"Undecodable response for {symbol}: {e}") from e

        quote = parse_global_quote(symbol, payload)
        logger.debug(f"Live quote {symbol}: {quote.price}")
        return quote

    def _get_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession()
            self._owns_session = True
        return self._session

    async def close(self) -> None:
        if self._owns_session and self._session is not None and not self._session.closed:
            await self._session.close()
        self._session = None
