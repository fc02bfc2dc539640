from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Optional

from pydantic import BaseModel
from sqlalchemy import UniqueConstraint
from sqlmodel import Field, SQLModel

SATOSHIS_PER_BTC = 100_000_000

# Coarse confirmation model: any transaction with a block counts as settled.
CONFIRMED_DEPTH = 6


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def transaction_id(owner: str, tx_hash: str) -> str:
    return f"{owner}-{tx_hash}"


class Direction(str, Enum):
    SENT = "sent"
    RECEIVED = "received"


class Address(SQLModel, table=True):
    """
    Address table.
    """
    id: str = Field(primary_key=True)
    address: str = Field(nullable=False, unique=True, index=True)
    label: Optional[str] = None
    created_at: datetime = Field(default_factory=utcnow)

    # Sync metadata
    last_synced_at: Optional[datetime] = None


class Transaction(SQLModel, table=True):
    """
    Transaction table referencing Address by ID.

    Rows are never updated in place; a re-sync either finds the
    (address_id, tx_hash) pair and skips it, or inserts a new row.
    """
    __table_args__ = (UniqueConstraint("address_id", "tx_hash"),)

    id: str = Field(primary_key=True)
    address_id: str = Field(foreign_key="address.id", index=True)
    tx_hash: str = Field(nullable=False, index=True)
    block_height: Optional[int] = None
    timestamp: datetime = Field(default_factory=utcnow)
    amount: int = Field(default=0)  # satoshis, always >= 0
    direction: Direction
    confirmations: Optional[int] = None
    fee: Optional[int] = None


class Balance(SQLModel, table=True):
    """
    Latest known balance, one row per address, overwritten on every sync.
    """
    address_id: str = Field(foreign_key="address.id", primary_key=True)
    confirmed_amount: int = Field(default=0)
    unconfirmed_amount: int = Field(default=0)
    confirmed_amount_fiat: Optional[float] = None
    unconfirmed_amount_fiat: Optional[float] = None
    last_updated: datetime = Field(default_factory=utcnow)


class SyncResult(BaseModel):
    success: bool
    address_id: str
    transactions_added: int = 0
    balance_updated: bool = False
    error: Optional[str] = None
    provider: Optional[str] = None

    @classmethod
    def failed(cls, address_id: str, error: str, provider: Optional[str] = None) -> "SyncResult":
        return cls(success=False, address_id=address_id, error=error, provider=provider)


@dataclass(frozen=True)
class CachedPrice:
    value: float
    fetched_at: float
