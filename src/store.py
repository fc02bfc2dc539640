import logging
import threading
from datetime import datetime
from typing import Iterable, List, Optional
from uuid import uuid4

from sqlalchemy.pool import StaticPool
from sqlmodel import Session, SQLModel, create_engine, func, select

from errors import AddressExists
from models import Address, Balance, Transaction, utcnow

logger = logging.getLogger(__name__)

IN_MEMORY_URLS = ("sqlite://", "sqlite:///:memory:")


def build_engine(database_url: str = "sqlite://", echo: bool = False):
    if database_url in IN_MEMORY_URLS:
        # One connection shared by every thread, otherwise each thread
        # would get its own empty in-memory database.
        return create_engine(
            database_url,
            echo=echo,
            connect_args={"check_same_thread": False},
            poolclass=StaticPool,
        )
    return create_engine(database_url, echo=echo)


class Store:
    """
    Keyed address/transaction/balance state.

    Every method opens its own Session; the lock serializes access to the
    shared connection between request threads and background syncs.
    """

    def __init__(self, engine=None):
        self.engine = engine if engine is not None else build_engine()
        self._lock = threading.RLock()
        SQLModel.metadata.create_all(self.engine)

    def _session(self) -> Session:
        return Session(self.engine, expire_on_commit=False)

    # Addresses

    def add_address(
        self,
        address: str,
        label: Optional[str] = None,
        *,
        address_id: Optional[str] = None,
        created_at: Optional[datetime] = None,
    ) -> Address:
        address = address.strip()
        with self._lock, self._session() as session:
            existing = session.exec(select(Address).where(Address.address == address)).first()
            if existing:
                raise AddressExists(address, existing.id)

            new_address = Address(
                id=address_id or str(uuid4()),
                address=address,
                label=label,
                created_at=created_at or utcnow(),
            )
            session.add(new_address)
            session.commit()
            return new_address

    def get_address(self, address_id: str) -> Optional[Address]:
        with self._lock, self._session() as session:
            return session.get(Address, address_id)

    def get_address_by_string(self, address: str) -> Optional[Address]:
        with self._lock, self._session() as session:
            return session.exec(select(Address).where(Address.address == address.strip())).first()

    def list_addresses(self) -> List[Address]:
        with self._lock, self._session() as session:
            return list(session.exec(select(Address).order_by(Address.created_at)).all())

    def update_label(self, address_id: str, label: Optional[str]) -> Optional[Address]:
        with self._lock, self._session() as session:
            address_obj = session.get(Address, address_id)
            if not address_obj:
                return None
            address_obj.label = label
            session.add(address_obj)
            session.commit()
            return address_obj

    def touch_address(self, address_id: str, synced_at: Optional[datetime] = None) -> Optional[Address]:
        with self._lock, self._session() as session:
            address_obj = session.get(Address, address_id)
            if not address_obj:
                return None
            address_obj.last_synced_at = synced_at or utcnow()
            session.add(address_obj)
            session.commit()
            return address_obj

    def delete_address(self, address_id: str) -> bool:
        with self._lock, self._session() as session:
            address_obj = session.get(Address, address_id)
            if not address_obj:
                return False

            for tx in session.exec(select(Transaction).where(Transaction.address_id == address_id)).all():
                session.delete(tx)
            balance = session.get(Balance, address_id)
            if balance:
                session.delete(balance)
            session.delete(address_obj)
            session.commit()
            return True

    # Transactions

    def add_transactions(self, transactions: Iterable[Transaction]) -> int:
        """
        Insert the transactions whose (address_id, tx_hash) is not stored yet.

        Known pairs are skipped without touching the stored row, so running
        the same batch twice adds nothing the second time. Returns the number
        of rows inserted.
        """
        with self._lock, self._session() as session:
            added = self._insert_new(session, transactions)
            session.commit()
        return added

    def apply_sync(
        self,
        address_id: str,
        transactions: Iterable[Transaction],
        balance: Balance,
        synced_at: Optional[datetime] = None,
    ) -> Optional[int]:
        """
        Merge one sync's results for an address in a single session.

        Returns the number of new transactions, or None without writing
        anything if the address no longer exists.
        """
        with self._lock, self._session() as session:
            address_obj = session.get(Address, address_id)
            if not address_obj:
                return None

            added = self._insert_new(session, transactions)
            session.merge(Balance(**balance.model_dump()))
            address_obj.last_synced_at = synced_at or utcnow()
            session.add(address_obj)
            session.commit()
            return added

    @staticmethod
    def _insert_new(session: Session, transactions: Iterable[Transaction]) -> int:
        added = 0
        for tx in transactions:
            stmt = select(Transaction).where(
                Transaction.address_id == tx.address_id,
                Transaction.tx_hash == tx.tx_hash
            )
            # Autoflush makes rows added earlier in this batch visible here
            if session.exec(stmt).first():
                continue

            session.add(Transaction(**tx.model_dump()))
            added += 1
        return added

    def get_transactions(self, address_id: str, limit: Optional[int] = None, offset: int = 0) -> List[Transaction]:
        with self._lock, self._session() as session:
            stmt = (
                select(Transaction)
                .where(Transaction.address_id == address_id)
                .order_by(Transaction.timestamp.desc())
                .offset(offset)
            )
            if limit is not None:
                stmt = stmt.limit(limit)
            return list(session.exec(stmt).all())

    def count_transactions(self, address_id: str) -> int:
        with self._lock, self._session() as session:
            stmt = select(func.count(Transaction.id)).where(Transaction.address_id == address_id)
            return session.exec(stmt).one()

    # Balances

    def upsert_balance(self, balance: Balance) -> Balance:
        with self._lock, self._session() as session:
            stored = session.merge(Balance(**balance.model_dump()))
            session.commit()
            return stored

    def get_balance(self, address_id: str) -> Optional[Balance]:
        with self._lock, self._session() as session:
            return session.get(Balance, address_id)

    def clear(self) -> None:
        with self._lock, self._session() as session:
            for model in (Transaction, Balance, Address):
                for row in session.exec(select(model)).all():
                    session.delete(row)
            session.commit()
        logger.debug("Store cleared")
