import logging
import threading
import time
from typing import Callable, Optional

from errors import ProviderUnavailable, SyncError
from models import CachedPrice
from providers import HttpProvider

logger = logging.getLogger(__name__)

UNKNOWN_RATE = 0.0


class TickerClient(HttpProvider):
    """
    BTC exchange rate from the Blockchain.com ticker.
    """
    name = "blockchain.com-ticker"

    def __init__(self, url: str = "https://blockchain.info/ticker", currency: str = "USD", **kwargs):
        super().__init__(url, **kwargs)
        self.currency = currency.upper()

    def fetch_rate(self) -> float:
        payload = self._get("", address_lookup=False)
        try:
            rate = float(payload[self.currency]["last"])
        except (KeyError, TypeError, ValueError) as e:
            raise ProviderUnavailable(f"No {self.currency} rate in ticker response", provider=self.name) from e
        if rate <= 0:
            raise ProviderUnavailable(f"Ticker returned non-positive {self.currency} rate", provider=self.name)
        return rate


class PriceCache:
    """
    Memoized exchange rate with a time-to-live.

    A fresh value is returned without I/O. Only one fetch runs at a time:
    callers arriving during a fetch get the previous value if there is one,
    otherwise they wait for the fetch to finish. A failed fetch yields the
    last known value, or UNKNOWN_RATE (0.0) if nothing was ever fetched.
    """

    def __init__(
        self,
        fetch: Callable[[], float],
        ttl: float = 60.0,
        clock: Callable[[], float] = time.monotonic,
    ):
        self._fetch = fetch
        self.ttl = ttl
        self._clock = clock
        self._cached: Optional[CachedPrice] = None
        self._fetch_lock = threading.Lock()

    @property
    def cached(self) -> Optional[CachedPrice]:
        return self._cached

    def _is_fresh(self, cached: Optional[CachedPrice]) -> bool:
        return cached is not None and self._clock() - cached.fetched_at <= self.ttl

    def get_rate(self) -> float:
        cached = self._cached
        if self._is_fresh(cached):
            return cached.value

        if not self._fetch_lock.acquire(blocking=cached is None):
            # Someone else is refreshing; stale beats a duplicate request
            return cached.value

        try:
            cached = self._cached
            if self._is_fresh(cached):
                return cached.value

            try:
                value = self._fetch()
            except SyncError as e:
                logger.warning("Price fetch failed: %s", e)
                return cached.value if cached is not None else UNKNOWN_RATE

            self._cached = CachedPrice(value=value, fetched_at=self._clock())
            logger.debug("Price cache refreshed: %s", value)
            return value
        finally:
            self._fetch_lock.release()

    def clear(self) -> None:
        self._cached = None
