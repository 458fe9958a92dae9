"""
Tests for the SealedKeyStore permission state machine.

Covers:
- Listing (ids, seeding the creator, input validation)
- Purchase (exact price, self-purchase, double-purchase, atomic payment)
- Manual grants (creator-only, idempotent)
- Reads, events and snapshots
- Concurrent purchases of the same item
"""

import os
import sys
import threading

import pytest

sys.path.insert(0, os.path.join(os.path.dirname(__file__), "..", "src"))

from conftest import PRICE, START_TIME
from errors import (
    AlreadyPurchasedError,
    InsufficientFundsError,
    InvalidInputError,
    NotAuthorizedError,
    NotFoundError,
    PriceMismatchError,
    SelfPurchaseError,
    TransferRejectedError,
)
from key_material import generate_identity_secret
from monitoring import metrics
from sealed_key_store import SealedKeyStore


def seal(sealing, wallet):
    return sealing.sealed_write(generate_identity_secret(), wallet.address)


class TestListing:
    """list_item."""

    def test_ids_are_monotonic(self, store, sealing, creator):
        first = store.list_item(creator.address, "pseudo-a", seal(sealing, creator))
        second = store.list_item(creator.address, "pseudo-b", seal(sealing, creator))
        assert (first, second) == (1, 2)
        assert store.count() == 2

    def test_creator_seeded(self, store, listed_item, creator, buyer, sealing):
        item_id, _ = listed_item
        item = store.get_item(item_id)
        assert store.is_authorized(item_id, creator.address)
        assert not store.is_authorized(item_id, buyer.address)
        assert store.get_permissions(item_id) == [creator.address]
        assert sealing.can_view(item.sealed_secret, creator.address)

    def test_item_fields(self, store, listed_item, creator):
        item = store.get_item(listed_item[0])
        assert item.creator == creator.address
        assert item.ciphertext_handle == "pseudo-test-ciphertext"
        assert item.price == PRICE
        assert item.created_at == START_TIME

    def test_listing_event(self, store, listed_item, creator):
        event = store.events[-1]
        assert event["event_type"] == "ItemListed"
        assert event["data"] == {
            "item_id": listed_item[0],
            "creator": creator.address,
            "ciphertext_handle": "pseudo-test-ciphertext",
        }
        assert metrics.get_counter("items_listed_total") == 1

    @pytest.mark.parametrize("handle", ["", "   ", None])
    def test_empty_ciphertext_handle(self, store, sealing, creator, handle):
        with pytest.raises(InvalidInputError):
            store.list_item(creator.address, handle, seal(sealing, creator))
        assert store.count() == 0

    def test_sealed_secret_backs_one_item(self, store, sealing, creator):
        handle = seal(sealing, creator)
        item_id = store.list_item(creator.address, "pseudo-a", handle)
        with pytest.raises(InvalidInputError, match=f"item {item_id}"):
            store.list_item(creator.address, "pseudo-b", handle)
        assert store.count() == 1
        assert [e["event_type"] for e in store.events] == ["ItemListed"]

    def test_unknown_sealed_secret(self, store, creator):
        with pytest.raises(InvalidInputError):
            store.list_item(creator.address, "pseudo-a", "0x" + "ef" * 32)

    def test_someone_elses_sealed_secret(self, store, sealing, creator, stranger):
        with pytest.raises(InvalidInputError):
            store.list_item(stranger.address, "pseudo-a", seal(sealing, creator))

    def test_malformed_creator(self, store, sealing, creator):
        with pytest.raises(InvalidInputError):
            store.list_item("creator", "pseudo-a", seal(sealing, creator))

    def test_negative_price_rejected(self, sealing, ledger):
        with pytest.raises(InvalidInputError):
            SealedKeyStore(sealing, ledger, access_price=-1)


class TestPurchase:
    """purchase."""

    def test_success(self, store, ledger, sealing, listed_item, creator, funded_buyer):
        item_id, _ = listed_item
        buyer_before = ledger.balance_of(funded_buyer.address)

        store.purchase(item_id, funded_buyer.address, PRICE)

        assert store.is_authorized(item_id, funded_buyer.address)
        assert store.has_purchased(item_id, funded_buyer.address)
        assert ledger.balance_of(creator.address) == PRICE
        assert ledger.balance_of(funded_buyer.address) == buyer_before - PRICE
        assert sealing.can_view(store.get_item(item_id).sealed_secret, funded_buyer.address)
        assert metrics.get_counter("purchases_total") == 1

    def test_events_purchase_then_grant(self, store, listed_item, funded_buyer):
        item_id, _ = listed_item
        store.purchase(item_id, funded_buyer.address, PRICE)
        assert [e["event_type"] for e in store.events[-2:]] == ["ItemPurchased", "AccessGranted"]
        assert store.events[-2]["data"] == {
            "item_id": item_id,
            "buyer": funded_buyer.address,
            "amount": PRICE,
        }

    @pytest.mark.parametrize("payment", [PRICE - 1, PRICE + 1, 0])
    def test_price_must_match_exactly(self, store, ledger, listed_item, funded_buyer, payment):
        item_id, _ = listed_item
        balance = ledger.balance_of(funded_buyer.address)
        with pytest.raises(PriceMismatchError):
            store.purchase(item_id, funded_buyer.address, payment)
        assert not store.is_authorized(item_id, funded_buyer.address)
        assert ledger.balance_of(funded_buyer.address) == balance

    def test_non_integer_payment(self, store, listed_item, funded_buyer):
        with pytest.raises(InvalidInputError):
            store.purchase(listed_item[0], funded_buyer.address, float(PRICE))

    def test_self_purchase(self, store, ledger, listed_item, creator):
        ledger.deposit(creator.address, PRICE)
        with pytest.raises(SelfPurchaseError):
            store.purchase(listed_item[0], creator.address, PRICE)
        assert store.is_authorized(listed_item[0], creator.address)
        assert not store.has_purchased(listed_item[0], creator.address)

    def test_double_purchase_rejected(self, store, ledger, listed_item, creator, funded_buyer):
        item_id, _ = listed_item
        store.purchase(item_id, funded_buyer.address, PRICE)
        permissions = store.get_permissions(item_id)
        event_count = len(store.events)

        with pytest.raises(AlreadyPurchasedError):
            store.purchase(item_id, funded_buyer.address, PRICE)

        assert ledger.balance_of(creator.address) == PRICE
        assert store.get_permissions(item_id) == permissions
        assert store.has_purchased(item_id, funded_buyer.address)
        assert len(store.events) == event_count

    def test_unknown_item(self, store, funded_buyer):
        with pytest.raises(NotFoundError):
            store.purchase(99, funded_buyer.address, PRICE)

    def test_insufficient_funds_changes_nothing(self, store, listed_item, buyer):
        item_id, _ = listed_item
        event_count = len(store.events)
        with pytest.raises(InsufficientFundsError):
            store.purchase(item_id, buyer.address, PRICE)
        assert not store.is_authorized(item_id, buyer.address)
        assert not store.has_purchased(item_id, buyer.address)
        assert len(store.events) == event_count

    def test_rejected_payout_rolls_back(self, store, ledger, sealing, listed_item, creator, funded_buyer):
        item_id, _ = listed_item
        balance = ledger.balance_of(funded_buyer.address)
        ledger.set_accepts_payments(creator.address, False)

        with pytest.raises(TransferRejectedError):
            store.purchase(item_id, funded_buyer.address, PRICE)

        assert ledger.balance_of(funded_buyer.address) == balance
        assert not store.is_authorized(item_id, funded_buyer.address)
        assert not sealing.can_view(store.get_item(item_id).sealed_secret, funded_buyer.address)

    def test_failed_view_grant_refunds_payment(self, store, ledger, sealing, listed_item, creator, funded_buyer, monkeypatch):
        item_id, _ = listed_item
        balance = ledger.balance_of(funded_buyer.address)

        def broken_grant(handle, principal):
            raise RuntimeError("sealing host unavailable")

        monkeypatch.setattr(sealing, "sealed_grant_view", broken_grant)
        with pytest.raises(RuntimeError):
            store.purchase(item_id, funded_buyer.address, PRICE)

        assert ledger.balance_of(funded_buyer.address) == balance
        assert ledger.balance_of(creator.address) == 0
        assert not store.has_purchased(item_id, funded_buyer.address)

    def test_concurrent_purchases_single_success(self, store, ledger, listed_item, creator, funded_buyer):
        item_id, _ = listed_item
        outcomes = []
        barrier = threading.Barrier(8)

        def attempt():
            barrier.wait()
            try:
                store.purchase(item_id, funded_buyer.address, PRICE)
                outcomes.append("ok")
            except AlreadyPurchasedError:
                outcomes.append("already")

        threads = [threading.Thread(target=attempt) for _ in range(8)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert outcomes.count("ok") == 1
        assert outcomes.count("already") == 7
        assert ledger.balance_of(creator.address) == PRICE


class TestGrantAccess:
    """grant_access."""

    def test_creator_grants(self, store, listed_item, creator, buyer):
        item_id, _ = listed_item
        store.grant_access(item_id, buyer.address, creator.address)
        assert store.is_authorized(item_id, buyer.address)
        assert not store.has_purchased(item_id, buyer.address)
        assert store.events[-1]["event_type"] == "AccessGranted"
        assert metrics.get_counter("grants_total") == 1

    def test_regrant_is_noop(self, store, listed_item, creator, buyer):
        item_id, _ = listed_item
        store.grant_access(item_id, buyer.address, creator.address)
        event_count = len(store.events)
        store.grant_access(item_id, buyer.address, creator.address)
        store.grant_access(item_id, creator.address, creator.address)
        assert len(store.events) == event_count
        assert store.get_permissions(item_id) == sorted([creator.address, buyer.address])

    def test_non_creator_cannot_grant(self, store, listed_item, buyer, stranger):
        with pytest.raises(NotAuthorizedError):
            store.grant_access(listed_item[0], stranger.address, buyer.address)
        assert not store.is_authorized(listed_item[0], stranger.address)

    @pytest.mark.parametrize("principal", [None, "", "0x123"])
    def test_malformed_principal(self, store, listed_item, creator, principal):
        with pytest.raises(InvalidInputError):
            store.grant_access(listed_item[0], principal, creator.address)

    def test_unknown_item(self, store, creator, buyer):
        with pytest.raises(NotFoundError):
            store.grant_access(5, buyer.address, creator.address)

    def test_granted_principal_may_still_purchase(self, store, listed_item, creator, funded_buyer):
        item_id, _ = listed_item
        store.grant_access(item_id, funded_buyer.address, creator.address)
        store.purchase(item_id, funded_buyer.address, PRICE)
        assert store.has_purchased(item_id, funded_buyer.address)


class TestReads:
    """Read operations and monotonicity."""

    def test_unknown_item_reads(self, store, buyer):
        with pytest.raises(NotFoundError):
            store.get_item(1)
        with pytest.raises(NotFoundError):
            store.is_authorized(1, buyer.address)
        assert store.count() == 0

    def test_list_items_with_viewer(self, store, sealing, creator, funded_buyer):
        first = store.list_item(creator.address, "pseudo-a", seal(sealing, creator))
        store.list_item(creator.address, "pseudo-b", seal(sealing, creator))
        store.purchase(first, funded_buyer.address, PRICE)

        items = store.list_items(funded_buyer.address)
        assert [i["item_id"] for i in items] == [1, 2]
        assert [i["has_access"] for i in items] == [True, False]
        assert all(not i["has_access"] for i in store.list_items())

    def test_permissions_only_grow(self, store, sealing, creator, funded_buyer, stranger):
        first = store.list_item(creator.address, "pseudo-a", seal(sealing, creator))
        store.purchase(first, funded_buyer.address, PRICE)

        second = store.list_item(creator.address, "pseudo-b", seal(sealing, creator))
        store.grant_access(second, stranger.address, creator.address)
        store.purchase(second, funded_buyer.address, PRICE)

        assert store.is_authorized(first, funded_buyer.address)
        assert store.is_authorized(first, creator.address)
        assert not store.is_authorized(first, stranger.address)

    def test_audit_trail_newest_first(self, store, listed_item, creator, buyer):
        store.grant_access(listed_item[0], buyer.address, creator.address)
        trail = store.get_audit_trail(limit=2)
        assert [e["event_type"] for e in trail] == ["AccessGranted", "ItemListed"]


class TestSubscribers:
    """Event observers."""

    def test_subscriber_receives_events(self, store, sealing, creator):
        received = []
        store.subscribe(received.append)
        store.list_item(creator.address, "pseudo-a", seal(sealing, creator))
        assert [e["event_type"] for e in received] == ["ItemListed"]

    def test_failing_subscriber_does_not_block(self, store, sealing, creator):
        def broken(event):
            raise ValueError("indexer down")

        store.subscribe(broken)
        item_id = store.list_item(creator.address, "pseudo-a", seal(sealing, creator))
        assert store.get_item(item_id).creator == creator.address


class TestSnapshot:
    """to_dict / load_dict."""

    def test_round_trip(self, store, sealing, ledger, listed_item, creator, funded_buyer, stranger):
        item_id, _ = listed_item
        store.purchase(item_id, funded_buyer.address, PRICE)
        store.grant_access(item_id, stranger.address, creator.address)

        restored = SealedKeyStore(sealing, ledger, access_price=PRICE)
        restored.load_dict(store.to_dict())

        assert restored.count() == 1
        assert restored.get_item(item_id) == store.get_item(item_id)
        assert restored.has_purchased(item_id, funded_buyer.address)
        assert restored.is_authorized(item_id, stranger.address)
        assert not restored.has_purchased(item_id, stranger.address)
        assert len(restored.events) == len(store.events)

    def test_next_id_survives(self, store, sealing, ledger, listed_item, creator):
        restored = SealedKeyStore(sealing, ledger, access_price=PRICE)
        restored.load_dict(store.to_dict())
        assert restored.list_item(creator.address, "pseudo-next", seal(sealing, creator)) == 2

    def test_malformed_snapshot(self, store):
        with pytest.raises(InvalidInputError):
            store.load_dict({"items": [{"item_id": 1}]})

    def test_restored_store_refuses_relisting(self, store, sealing, ledger, listed_item, creator):
        restored = SealedKeyStore(sealing, ledger, access_price=PRICE)
        restored.load_dict(store.to_dict())
        handle = store.get_item(listed_item[0]).sealed_secret
        with pytest.raises(InvalidInputError):
            restored.list_item(creator.address, "pseudo-again", handle)

    def test_shared_sealed_secret_in_snapshot(self, store, listed_item):
        snapshot = store.to_dict()
        copy = dict(snapshot["items"][0], item_id=2)
        snapshot["items"].append(copy)
        with pytest.raises(InvalidInputError):
            store.load_dict(snapshot)
        assert store.count() == 1

    def test_events_capped(self, sealing, ledger, creator, monkeypatch):
        import sealed_key_store

        monkeypatch.setattr(sealed_key_store, "MAX_EVENTS", 3)
        store = SealedKeyStore(sealing, ledger, access_price=PRICE)
        ids = [store.list_item(creator.address, f"pseudo-{n}", seal(sealing, creator)) for n in range(5)]

        assert [e["data"]["item_id"] for e in store.events] == ids[-3:]
        assert len(store.to_dict()["events"]) == 3

        restored = SealedKeyStore(sealing, ledger, access_price=PRICE)
        snapshot = store.to_dict()
        snapshot["events"] = snapshot["events"] * 4
        restored.load_dict(snapshot)
        assert len(restored.events) == 3
