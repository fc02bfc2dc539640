"""
Blockchain data providers.

Both clients return records keyed by the raw address string they were asked
about; re-keying to the tracked address id is the caller's job.
"""
import logging
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Protocol

import requests

from errors import AddressNotFound, ProviderUnavailable, RateLimited
from models import CONFIRMED_DEPTH, SATOSHIS_PER_BTC, Balance, Direction, Transaction, transaction_id, utcnow

logger = logging.getLogger(__name__)


class ProviderClient(Protocol):
    name: str

    def fetch_balance(self, address: str) -> Balance:
        ...

    def fetch_transactions(self, address: str) -> List[Transaction]:
        ...


class HttpProvider:
    """
    Shared request/error mapping for JSON-over-HTTP providers.
    """
    name = "http"
    rate_limit_status_codes: tuple = (429,)
    not_found_status_codes: tuple = (400, 404)

    def __init__(
        self,
        base_url: str,
        timeout: float = 10.0,
        user_agent: str = "BitSync/1.0",
        session: Optional[requests.Session] = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self.user_agent = user_agent
        self._session = session or requests.Session()

    def _before_request(self) -> None:
        pass

    def _get(self, path: str, params: Optional[Dict[str, Any]] = None, address_lookup: bool = True) -> Any:
        self._before_request()
        url = f"{self.base_url}{path}"
        try:
            resp = self._session.get(
                url,
                params=params,
                timeout=self.timeout,
                headers={"User-Agent": self.user_agent},
            )
        except requests.RequestException as e:
            raise ProviderUnavailable(f"{self.name} request failed: {e}", provider=self.name) from e

        status = resp.status_code
        if status in self.rate_limit_status_codes:
            raise RateLimited(f"{self.name} rate limit hit (HTTP {status})", provider=self.name, status_code=status)
        if address_lookup and status in self.not_found_status_codes:
            raise AddressNotFound(f"{self.name} has no record for {path}", provider=self.name, status_code=status)
        try:
            resp.raise_for_status()
        except requests.HTTPError as e:
            raise ProviderUnavailable(f"{self.name} returned HTTP {status}", provider=self.name, status_code=status) from e

        try:
            return resp.json()
        except ValueError as e:
            raise ProviderUnavailable(f"{self.name} returned invalid JSON", provider=self.name) from e


class PrimaryProvider(HttpProvider):
    """
    Blockchair dashboards API.

    Every HTTP request first passes through the shared rate gate, if one is
    given.
    """
    name = "blockchair"
    # 402: plan limit exceeded, 430: temporarily blacklisted for flooding
    rate_limit_status_codes = (402, 429, 430)

    def __init__(self, base_url: str = "https://api.blockchair.com/bitcoin", gate=None, page_size: int = 100, **kwargs):
        super().__init__(base_url, **kwargs)
        self.gate = gate
        self.page_size = page_size

    def _before_request(self) -> None:
        if self.gate is not None:
            self.gate.acquire()

    def _address_data(self, address: str, params: Dict[str, Any]) -> dict:
        payload = self._get(f"/dashboards/address/{address}", params=params)
        address_data = (payload.get("data") or {}).get(address)
        if not address_data:
            raise AddressNotFound(f"Address {address} not found", provider=self.name)
        return address_data

    def fetch_balance(self, address: str) -> Balance:
        address_data = self._address_data(address, {"limit": 0})
        summary = address_data.get("address") or {}
        return Balance(
            address_id=address,
            confirmed_amount=int(summary.get("balance") or 0),
            unconfirmed_amount=0,
            last_updated=utcnow(),
        )

    def fetch_transactions(self, address: str) -> List[Transaction]:
        """
        Fetch one page of transactions: the address dashboard lists them with
        their net balance change, then one batch call resolves the details.
        """
        address_data = self._address_data(
            address,
            {"limit": self.page_size, "offset": 0, "transaction_details": "true"},
        )
        summaries = [tx for tx in (address_data.get("transactions") or []) if isinstance(tx, dict) and tx.get("hash")]
        summaries = summaries[:self.page_size]
        if not summaries:
            return []

        hashes = ",".join(tx["hash"] for tx in summaries)
        payload = self._get(f"/dashboards/transactions/{hashes}", address_lookup=False)
        details = payload.get("data") or {}

        transactions = []
        for summary in summaries:
            detail = (details.get(summary["hash"]) or {}).get("transaction") or {}
            transactions.append(_normalize_blockchair(address, summary, detail))
        return transactions


def _normalize_blockchair(address: str, summary: dict, detail: dict) -> Transaction:
    change = int(summary.get("balance_change") or 0)
    block_id = detail.get("block_id", summary.get("block_id"))
    has_block = block_id is not None and block_id > 0
    fee = detail.get("fee")
    return Transaction(
        id=transaction_id(address, summary["hash"]),
        address_id=address,
        tx_hash=summary["hash"],
        block_height=block_id if has_block else None,
        timestamp=_parse_timestamp(detail.get("time") or summary.get("time")),
        amount=abs(change),
        direction=Direction.RECEIVED if change > 0 else Direction.SENT,
        confirmations=CONFIRMED_DEPTH if has_block else 0,
        fee=int(fee) if fee is not None else None,
    )


class FallbackProvider(HttpProvider):
    """
    Blockchain.com raw address API. Not throttled by the shared gate.

    Balances are annotated with a fiat value when the price cache knows the
    exchange rate.
    """
    name = "blockchain.com"

    def __init__(self, base_url: str = "https://blockchain.info", price_cache=None, page_size: int = 100, **kwargs):
        kwargs.setdefault("timeout", 30.0)
        super().__init__(base_url, **kwargs)
        self.price_cache = price_cache
        self.page_size = page_size

    def _raw_address(self, address: str) -> dict:
        data = self._get(f"/rawaddr/{address}", params={"limit": self.page_size})
        if not isinstance(data, dict):
            raise AddressNotFound(f"Address {address} not found", provider=self.name)
        return data

    def fetch_balance(self, address: str) -> Balance:
        return self._to_balance(address, self._raw_address(address))

    def fetch_transactions(self, address: str) -> List[Transaction]:
        return self._to_transactions(address, self._raw_address(address))

    def fetch_address(self, address: str):
        """Balance and transactions from a single request."""
        data = self._raw_address(address)
        return self._to_balance(address, data), self._to_transactions(address, data)

    def _to_balance(self, address: str, data: dict) -> Balance:
        balance = Balance(
            address_id=address,
            confirmed_amount=int(data.get("final_balance") or 0),
            unconfirmed_amount=0,
            last_updated=utcnow(),
        )
        rate = self.price_cache.get_rate() if self.price_cache is not None else 0.0
        # A zero rate means "unknown": leave the fiat fields empty
        if rate > 0:
            balance.confirmed_amount_fiat = to_fiat(balance.confirmed_amount, rate)
            balance.unconfirmed_amount_fiat = to_fiat(balance.unconfirmed_amount, rate)
        return balance

    def _to_transactions(self, address: str, data: dict) -> List[Transaction]:
        return [_normalize_blockchain_com(address, tx) for tx in (data.get("txs") or [])[:self.page_size]]


def _normalize_blockchain_com(address: str, tx: dict) -> Transaction:
    own_in = sum(
        (inp.get("prev_out") or {}).get("value") or 0
        for inp in tx.get("inputs") or []
        if (inp.get("prev_out") or {}).get("addr") == address
    )
    own_out = sum(
        out.get("value") or 0
        for out in tx.get("out") or []
        if out.get("addr") == address
    )
    block_height = tx.get("block_height")
    fee = tx.get("fee")
    return Transaction(
        id=transaction_id(address, tx["hash"]),
        address_id=address,
        tx_hash=tx["hash"],
        block_height=block_height,
        timestamp=_parse_timestamp(tx.get("time")),
        amount=abs(own_out - own_in),
        direction=Direction.RECEIVED if own_out > own_in else Direction.SENT,
        confirmations=CONFIRMED_DEPTH if block_height else 0,
        fee=int(fee) if fee is not None else None,
    )


def to_fiat(satoshis: int, rate: float) -> float:
    return round(satoshis / SATOSHIS_PER_BTC * rate, 2)


def _parse_timestamp(value) -> datetime:
    """
    Parse a provider timestamp: Blockchair sends "YYYY-MM-DD HH:MM:SS" (UTC),
    Blockchain.com sends unix seconds. Falls back to now when missing.
    """
    if isinstance(value, (int, float)):
        return datetime.fromtimestamp(value, tz=timezone.utc)
    if isinstance(value, str):
        try:
            return datetime.strptime(value, "%Y-%m-%d %H:%M:%S").replace(tzinfo=timezone.utc)
        except ValueError:
            logger.debug("Unparseable timestamp %r", value)
    return utcnow()
