# entryguard/exchange/price_gateway.py
from __future__ import annotations

import logging
import random
import time
from dataclasses import dataclass
from datetime import datetime
from typing import Callable, Optional, Protocol

import requests

from entryguard.core.errors import TransientFetchError
from entryguard.core.ttl_cache import TTLCache
from entryguard.persistence.db import utc_now

log = logging.getLogger("entryguard.price")


@dataclass(frozen=True)
class PriceQuote:
    last: float
    timestamp: datetime


class PriceGateway(Protocol):
    def get_price(self, venue: str, symbol: str) -> Optional[PriceQuote]:
        """
        Latest price, or None when the venue has no data for the symbol.
        Raises TransientFetchError when the read itself failed.
        """
        ...


class BinancePriceGateway:
    """Public spot ticker reads. No credentials."""

    VENUE = "BINANCE"

    def __init__(
        self,
        base_url: str = "https://api.binance.com",
        timeout_s: float = 5.0,
        max_retries: int = 2,
        session: Optional[requests.Session] = None,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.base_url = base_url.rstrip("/")
        self.timeout_s = float(timeout_s)
        self.max_retries = int(max_retries)
        self.session = session or requests.Session()
        self._sleep = sleep

    def _request(self, path: str, params=None):
        url = f"{self.base_url}{path}"
        last_err: Optional[str] = None

        for attempt in range(self.max_retries + 1):
            try:
                r = self.session.get(url, params=dict(params or {}), timeout=self.timeout_s)

                # Rate limit / temp ban
                if r.status_code in (418, 429):
                    ra = r.headers.get("Retry-After")
                    sleep_s = float(ra) if ra else (0.2 * (2**attempt))
                    sleep_s += random.uniform(0, 0.1)
                    last_err = f"HTTP {r.status_code}"
                    self._sleep(min(sleep_s, 2.0))
                    continue

                # Server errors
                if r.status_code >= 500:
                    last_err = f"HTTP {r.status_code}"
                    self._sleep(min(0.2 * (2**attempt), 2.0))
                    continue

                return r

            except (requests.Timeout, requests.ConnectionError) as e:
                last_err = str(e)
                self._sleep(min(0.2 * (2**attempt), 2.0))
                continue

        raise TransientFetchError(
            f"price request failed after retries: GET {path} ({last_err})",
            details={"path": path},
        )

    def get_price(self, venue: str, symbol: str) -> Optional[PriceQuote]:
        if (venue or self.VENUE).upper() != self.VENUE:
            raise TransientFetchError(f"venue {venue} not served by this gateway")

        sym = symbol.upper()
        r = self._request("/api/v3/ticker/price", {"symbol": sym})

        # -1121 Invalid symbol: the venue has nothing for it
        if r.status_code == 400:
            try:
                body = r.json()
            except ValueError:
                body = {}
            if isinstance(body, dict) and body.get("code") == -1121:
                return None
            raise TransientFetchError(f"price request rejected: HTTP 400 {r.text[:200]}")

        if r.status_code >= 400:
            raise TransientFetchError(f"price request failed: HTTP {r.status_code}")

        try:
            data = r.json()
            price = float(data["price"])
        except (ValueError, KeyError, TypeError) as e:
            raise TransientFetchError(f"malformed ticker payload for {sym}: {e}") from e

        if price <= 0:
            return None
        return PriceQuote(last=price, timestamp=utc_now())


class CachedPriceGateway:
    """
    Short-TTL read-through cache shared by every alert on the same (venue, symbol).
    Failures and "no data" are not cached.
    """

    def __init__(self, inner: PriceGateway, cache: TTLCache):
        self.inner = inner
        self.cache = cache

    def get_price(self, venue: str, symbol: str) -> Optional[PriceQuote]:
        key = (venue.upper(), symbol.upper())
        hit = self.cache.get(key)
        if hit is not None:
            return hit

        quote = self.inner.get_price(venue, symbol)
        if quote is not None:
            self.cache.set(key, quote)
        return quote

    def invalidate(self, venue: Optional[str] = None, symbol: Optional[str] = None) -> None:
        if venue and symbol:
            self.cache.invalidate((venue.upper(), symbol.upper()))
        else:
            self.cache.invalidate()
