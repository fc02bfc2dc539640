from datetime import datetime, timezone

import pytest

from conftest import ADDRESS_1, ADDRESS_2, make_balance, make_tx
from errors import AddressExists
from models import Direction


def test_add_transactions_is_idempotent(store, wallet_address):
    txs = [make_tx("addr-1", "tx1"), make_tx("addr-1", "tx2", amount=5000, direction=Direction.SENT)]

    assert store.add_transactions(txs) == 2
    assert store.add_transactions(txs) == 0
    assert store.count_transactions("addr-1") == 2


def test_add_transactions_superset_counts_only_new(store, wallet_address):
    store.add_transactions([make_tx("addr-1", "tx1"), make_tx("addr-1", "tx2")])

    added = store.add_transactions([
        make_tx("addr-1", "tx1"),
        make_tx("addr-1", "tx2"),
        make_tx("addr-1", "tx3"),
    ])

    assert added == 1
    assert {tx.tx_hash for tx in store.get_transactions("addr-1")} == {"tx1", "tx2", "tx3"}


def test_duplicate_key_keeps_first_insert(store, wallet_address):
    store.add_transactions([make_tx("addr-1", "tx1", amount=100)])
    added = store.add_transactions([make_tx("addr-1", "tx1", amount=999, direction=Direction.SENT, fee=7)])

    assert added == 0
    stored = store.get_transactions("addr-1")
    assert len(stored) == 1
    assert stored[0].amount == 100
    assert stored[0].direction == Direction.RECEIVED
    assert stored[0].fee is None


def test_duplicates_within_one_batch_are_dropped(store, wallet_address):
    added = store.add_transactions([make_tx("addr-1", "tx1"), make_tx("addr-1", "tx1", amount=1)])

    assert added == 1
    assert store.count_transactions("addr-1") == 1


def test_same_hash_for_different_addresses_is_kept(store, wallet_address):
    store.add_address(ADDRESS_2, address_id="addr-2")

    added = store.add_transactions([make_tx("addr-1", "shared"), make_tx("addr-2", "shared")])

    assert added == 2
    assert store.count_transactions("addr-1") == 1
    assert store.count_transactions("addr-2") == 1


def test_upsert_balance_overwrites(store, wallet_address):
    store.upsert_balance(make_balance("addr-1", 1000, confirmed_amount_fiat=0.5))
    store.upsert_balance(make_balance("addr-1", 2500))

    balance = store.get_balance("addr-1")
    assert balance.confirmed_amount == 2500
    assert balance.confirmed_amount_fiat is None


def test_get_transactions_newest_first_with_paging(store, wallet_address):
    store.add_transactions([
        make_tx("addr-1", "old", timestamp=datetime(2023, 1, 1, tzinfo=timezone.utc)),
        make_tx("addr-1", "new", timestamp=datetime(2023, 3, 1, tzinfo=timezone.utc)),
        make_tx("addr-1", "mid", timestamp=datetime(2023, 2, 1, tzinfo=timezone.utc)),
    ])

    assert [tx.tx_hash for tx in store.get_transactions("addr-1")] == ["new", "mid", "old"]
    assert [tx.tx_hash for tx in store.get_transactions("addr-1", limit=1, offset=1)] == ["mid"]


def test_add_address_rejects_duplicates(store, wallet_address):
    with pytest.raises(AddressExists) as exc_info:
        store.add_address(ADDRESS_1)
    assert exc_info.value.existing_id == "addr-1"


def test_reverse_lookup_and_label(store, wallet_address):
    assert store.get_address_by_string(ADDRESS_1).id == "addr-1"
    assert store.get_address_by_string(ADDRESS_2) is None

    store.update_label("addr-1", "cold storage")
    assert store.get_address("addr-1").label == "cold storage"


def test_touch_address_stamps_last_synced_at(store, wallet_address):
    assert wallet_address.last_synced_at is None
    when = datetime(2024, 5, 1, 12, 0, 0, tzinfo=timezone.utc)

    store.touch_address("addr-1", when)

    assert store.get_address("addr-1").last_synced_at == when
    assert store.touch_address("missing", when) is None


def test_delete_address_cascades(store, wallet_address):
    store.add_address(ADDRESS_2, address_id="addr-2")
    store.add_transactions([make_tx("addr-1", "tx1"), make_tx("addr-2", "tx2")])
    store.upsert_balance(make_balance("addr-1", 1))
    store.upsert_balance(make_balance("addr-2", 2))

    assert store.delete_address("addr-1") is True

    assert store.get_address("addr-1") is None
    assert store.get_balance("addr-1") is None
    assert store.count_transactions("addr-1") == 0
    assert store.count_transactions("addr-2") == 1
    assert store.get_balance("addr-2").confirmed_amount == 2
    assert store.delete_address("addr-1") is False


def test_list_addresses_in_creation_order(store):
    store.add_address(ADDRESS_2, address_id="b", created_at=datetime(2024, 1, 2, tzinfo=timezone.utc))
    store.add_address(ADDRESS_1, address_id="a", created_at=datetime(2024, 1, 1, tzinfo=timezone.utc))

    assert [a.id for a in store.list_addresses()] == ["a", "b"]


def test_timestamps_are_stored_as_utc(store):
    store.add_address(ADDRESS_1, address_id="addr-1")
    store.add_transactions([make_tx("addr-1", "tx1", timestamp=datetime(2023, 1, 1, 10, 0, 0, tzinfo=timezone.utc))])
    store.upsert_balance(make_balance("addr-1", 1))
    store.touch_address("addr-1")

    address_obj = store.get_address("addr-1")
    assert address_obj.created_at.tzinfo is not None
    assert address_obj.last_synced_at.tzinfo is not None
    assert store.get_balance("addr-1").last_updated.tzinfo is not None
    assert store.get_transactions("addr-1")[0].timestamp == datetime(2023, 1, 1, 10, 0, 0, tzinfo=timezone.utc)


def test_apply_sync_merges_and_stamps(store, wallet_address):
    when = datetime(2024, 5, 1, 12, 0, 0, tzinfo=timezone.utc)

    added = store.apply_sync("addr-1", [make_tx("addr-1", "tx1")], make_balance("addr-1", 900), when)

    assert added == 1
    assert store.get_balance("addr-1").confirmed_amount == 900
    assert store.get_address("addr-1").last_synced_at == when
    assert store.apply_sync("addr-1", [make_tx("addr-1", "tx1")], make_balance("addr-1", 900), when) == 0


def test_apply_sync_writes_nothing_for_removed_address(store):
    added = store.apply_sync("gone", [make_tx("gone", "tx1")], make_balance("gone", 500))

    assert added is None
    assert store.get_balance("gone") is None
    assert store.count_transactions("gone") == 0
