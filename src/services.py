import logging
from typing import List, Tuple

from config import Settings
from errors import AddressNotFound, RateLimited, SyncError, UnknownSyncError
from models import Balance, SyncResult, Transaction, transaction_id, utcnow
from price_cache import PriceCache, TickerClient
from providers import FallbackProvider, PrimaryProvider, ProviderClient
from rate_limiter import RateLimiter
from store import Store

logger = logging.getLogger(__name__)


class SyncService:
    """
    Refreshes tracked addresses from the blockchain providers.

    The primary provider is always tried first, through the shared rate
    limiter. Only when it stays rate limited after every retry does a sync
    switch to the fallback provider, and then it uses the fallback for both
    the balance and the transactions.
    """

    def __init__(self, store: Store, primary: ProviderClient, fallback: FallbackProvider, limiter: RateLimiter):
        self.store = store
        self.primary = primary
        self.fallback = fallback
        self.limiter = limiter

    def sync(self, address_id: str) -> SyncResult:
        address_obj = self.store.get_address(address_id)
        if not address_obj:
            return SyncResult.failed(address_id, str(AddressNotFound("Address not found")))

        provider = self.primary.name
        try:
            try:
                balance, transactions = self._fetch_primary(address_obj.address)
            except RateLimited as e:
                logger.warning(
                    "Primary provider still rate limited for %s (%s), using %s",
                    address_obj.address, e, self.fallback.name,
                )
                provider = self.fallback.name
                balance, transactions = self.fallback.fetch_address(address_obj.address)

            balance, transactions = rekey(address_id, balance, transactions)

            added = self.store.apply_sync(address_id, transactions, balance, utcnow())
            if added is None:
                raise AddressNotFound("Address not found")

        except SyncError as e:
            logger.error("Sync failed for %s via %s: %s", address_id, provider, e)
            return SyncResult.failed(address_id, str(e), provider=provider)
        except Exception as e:
            logger.exception("Unexpected error syncing %s", address_id)
            return SyncResult.failed(address_id, str(UnknownSyncError.wrap(e)), provider=provider)

        logger.info(
            "Sync complete. Added %d new transactions for address %s via %s. Balance=%d sats",
            added, address_obj.address, provider, balance.confirmed_amount,
        )
        return SyncResult(
            success=True,
            address_id=address_id,
            transactions_added=added,
            balance_updated=True,
            provider=provider,
        )

    def sync_all(self) -> List[SyncResult]:
        """
        Sync every tracked address one after another.

        Running them sequentially keeps the whole batch behind the single
        rate gate. A failed address does not stop the rest.
        """
        results = []
        for address_obj in self.store.list_addresses():
            results.append(self.sync(address_obj.id))
        failed = sum(1 for r in results if not r.success)
        logger.info("Batch sync finished: %d addresses, %d failed", len(results), failed)
        return results

    def sync_in_background(self, address_id: str) -> None:
        """
        Fire-and-forget entry point: the outcome is only logged.
        """
        result = self.sync(address_id)
        if result.success:
            logger.info("Background sync for %s added %d transactions", address_id, result.transactions_added)
        else:
            logger.warning("Background sync for %s failed: %s", address_id, result.error)

    def _fetch_primary(self, address: str) -> Tuple[Balance, List[Transaction]]:
        balance = self.limiter.run(lambda: self.primary.fetch_balance(address))
        # Extra spacing between the two calls on top of the gate
        self.limiter.pause()
        transactions = self.limiter.run(lambda: self.primary.fetch_transactions(address))
        return balance, transactions


def rekey(address_id: str, balance: Balance, transactions: List[Transaction]) -> Tuple[Balance, List[Transaction]]:
    """
    Move provider records from the raw address string to the tracked id.
    """
    balance.address_id = address_id
    for tx in transactions:
        tx.address_id = address_id
        tx.id = transaction_id(address_id, tx.tx_hash)
    return balance, transactions


def build_sync_service(settings: Settings, store: Store) -> SyncService:
    limiter = RateLimiter(
        min_interval=settings.min_request_interval,
        max_attempts=settings.max_attempts,
        base_delay=settings.backoff_base_delay,
    )
    ticker = TickerClient(
        settings.price_api_url,
        currency=settings.fiat_currency,
        timeout=settings.fallback_timeout,
        user_agent=settings.user_agent,
    )
    price_cache = PriceCache(ticker.fetch_rate, ttl=settings.price_ttl)
    primary = PrimaryProvider(
        settings.primary_api_url,
        gate=limiter,
        page_size=settings.page_size,
        timeout=settings.primary_timeout,
        user_agent=settings.user_agent,
    )
    fallback = FallbackProvider(
        settings.fallback_api_url,
        price_cache=price_cache,
        page_size=settings.page_size,
        timeout=settings.fallback_timeout,
        user_agent=settings.user_agent,
    )
    return SyncService(store, primary, fallback, limiter)
