"""
SealedGallery - Sealed Key Store

The permission state machine for encrypted content items.

Per item:
    Unlisted -> Listed -> (Purchased | Granted)*

Listing is reached once; after that the item accumulates permissions
forever. For every item:
- the creator is authorized from the moment of listing
- the permission set only grows (no revocation: a released key cannot be
  un-learned; rotating access means re-listing under a fresh secret)
- a principal holds at most one purchase record, and a second purchase is
  rejected rather than ignored (double-spend guard)
- a purchase routes the exact fixed price to the creator; payment, sealed
  view grant and permission change commit together or not at all

Mutations are serialized per item. Reads do not take the write lock and may
be momentarily stale; the authority re-checks at submit time.
"""

import logging
import threading
import time
from dataclasses import asdict, dataclass
from datetime import UTC, datetime
from typing import Any, Callable

from errors import (
    AlreadyPurchasedError,
    InvalidInputError,
    NotAuthorizedError,
    NotFoundError,
    PriceMismatchError,
    SelfPurchaseError,
)
from identity import normalize_address
from monitoring import metrics
from payments import PaymentLedger
from sealing import SealingBackend

logger = logging.getLogger(__name__)

# 0.001 ETH in wei
DEFAULT_ACCESS_PRICE = 10**15

# Newest events kept in the audit trail and in saved snapshots
MAX_EVENTS = 1000


@dataclass(frozen=True)
class ContentItem:
    """Immutable listing record. Permissions live beside it in the store."""

    item_id: int
    creator: str
    ciphertext_handle: str
    sealed_secret: str
    price: int
    created_at: int

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


class SealedKeyStore:
    """
    Tracks listed items, purchase records and permission sets.

    Args:
        sealing: Sealed-value backend holding the items' secrets
        ledger: Payment ledger used to route purchase payments
        access_price: Fixed price of one grant, in the smallest unit
        clock: Returns the current unix time (injectable for tests)
    """

    def __init__(
        self,
        sealing: SealingBackend,
        ledger: PaymentLedger,
        access_price: int = DEFAULT_ACCESS_PRICE,
        clock: Callable[[], float] = time.time,
    ):
        if isinstance(access_price, bool) or not isinstance(access_price, int) or access_price < 0:
            raise InvalidInputError("Access price must be a non-negative integer")

        self.sealing = sealing
        self.ledger = ledger
        self.access_price = access_price
        self._clock = clock

        self._items: dict[int, ContentItem] = {}
        self._items_by_secret: dict[str, int] = {}
        self._permissions: dict[int, set[str]] = {}
        self._purchases: dict[int, set[str]] = {}
        self._item_locks: dict[int, threading.Lock] = {}
        self._next_id = 1
        self._counter_lock = threading.Lock()

        # Audit trail
        self.events: list[dict[str, Any]] = []
        self._max_events = MAX_EVENTS
        self._subscribers: list[Callable[[dict[str, Any]], None]] = []

    # ==================== MUTATIONS ====================

    def list_item(self, creator: str, ciphertext_handle: str, sealed_secret: str) -> int:
        """
        List a new encrypted content item.

        Args:
            creator: Creator's address
            ciphertext_handle: Blob store locator of the encrypted content
            sealed_secret: Sealed handle of the item's identity secret, owned by the creator

        Returns:
            The new item id (monotonic, starting at 1, never reused)

        Raises:
            InvalidInputError: If the handle is empty, the creator malformed,
                the sealed secret unknown or owned by someone else, or the
                sealed secret already backs another item
        """
        creator = normalize_address(creator)
        if not isinstance(ciphertext_handle, str) or not ciphertext_handle.strip():
            raise InvalidInputError("Ciphertext handle must be a non-empty string")
        if not isinstance(sealed_secret, str) or not self.sealing.exists(sealed_secret):
            raise InvalidInputError("Sealed secret handle is not known to the sealing backend")
        sealed_secret = sealed_secret.lower()
        if self.sealing.owner_of(sealed_secret) != creator:
            raise InvalidInputError("Sealed secret was not sealed by the creator")

        with self._counter_lock:
            if sealed_secret in self._items_by_secret:
                raise InvalidInputError(
                    f"Sealed secret is already listed on item {self._items_by_secret[sealed_secret]}"
                )
            item_id = self._next_id
            item = ContentItem(
                item_id=item_id,
                creator=creator,
                ciphertext_handle=ciphertext_handle,
                sealed_secret=sealed_secret,
                price=self.access_price,
                created_at=int(self._clock()),
            )
            self.sealing.sealed_grant_view(sealed_secret, creator)
            self._item_locks[item_id] = threading.Lock()
            self._permissions[item_id] = {creator}
            self._purchases[item_id] = set()
            self._items[item_id] = item
            self._items_by_secret[sealed_secret] = item_id
            self._next_id += 1

        logger.info("Item %d listed by %s", item_id, creator)
        metrics.increment("items_listed_total")
        self._emit_event("ItemListed", {
            "item_id": item_id,
            "creator": creator,
            "ciphertext_handle": ciphertext_handle,
        })
        return item_id

    def purchase(self, item_id: int, principal: str, payment: int) -> None:
        """
        Buy access to an item at the fixed price.

        The payment goes to the creator in full. Payment, sealed view grant,
        purchase record and permission change are one atomic unit.

        Raises:
            NotFoundError: Unknown item
            SelfPurchaseError: The creator tried to buy their own item
            PriceMismatchError: Payment differs from the price
            AlreadyPurchasedError: A purchase record already exists
            PaymentError: The transfer failed; nothing changed
        """
        item = self.get_item(item_id)
        principal = normalize_address(principal)
        if isinstance(payment, bool) or not isinstance(payment, int):
            raise InvalidInputError("Payment must be an integer amount")

        with self._item_locks[item.item_id]:
            if principal == item.creator:
                raise SelfPurchaseError("Creator already has access to this item")
            if payment != item.price:
                logger.warning(
                    "Rejected purchase of item %d by %s: paid %d, price %d",
                    item.item_id, principal, payment, item.price,
                )
                raise PriceMismatchError(
                    "Payment must equal the access price exactly",
                    {"price": item.price, "paid": payment},
                )
            if principal in self._purchases[item.item_id]:
                logger.warning("Rejected repeat purchase of item %d by %s", item.item_id, principal)
                raise AlreadyPurchasedError("Already purchased")

            with self.ledger.transaction():
                self.ledger.transfer(principal, item.creator, payment)
                self.sealing.sealed_grant_view(item.sealed_secret, principal)

            self._purchases[item.item_id].add(principal)
            self._permissions[item.item_id].add(principal)

        logger.info("Item %d purchased by %s for %d", item.item_id, principal, payment)
        metrics.increment("purchases_total")
        self._emit_event("ItemPurchased", {
            "item_id": item.item_id,
            "buyer": principal,
            "amount": payment,
        })
        self._emit_event("AccessGranted", {"item_id": item.item_id, "principal": principal})

    def grant_access(self, item_id: int, principal: str, requester: str) -> None:
        """
        Creator grants a principal access without payment.

        Re-granting is a no-op, not an error.

        Raises:
            NotFoundError: Unknown item
            NotAuthorizedError: Requester is not the creator
            InvalidInputError: Malformed principal
        """
        item = self.get_item(item_id)
        requester = normalize_address(requester)
        if requester != item.creator:
            logger.warning("Rejected grant on item %d by non-creator %s", item.item_id, requester)
            raise NotAuthorizedError("Only the creator can grant access")
        if principal is None:
            raise InvalidInputError("Principal is required")
        principal = normalize_address(principal)

        with self._item_locks[item.item_id]:
            if principal in self._permissions[item.item_id]:
                return
            self.sealing.sealed_grant_view(item.sealed_secret, principal)
            self._permissions[item.item_id].add(principal)

        logger.info("Item %d: access granted to %s", item.item_id, principal)
        metrics.increment("grants_total")
        self._emit_event("AccessGranted", {"item_id": item.item_id, "principal": principal})

    # ==================== READS ====================

    def get_item(self, item_id: int) -> ContentItem:
        """Raises NotFoundError if the item was never listed."""
        item = self._items.get(item_id) if isinstance(item_id, int) else None
        if item is None:
            raise NotFoundError(f"Item not found: {item_id}")
        return item

    def count(self) -> int:
        """Total items ever listed."""
        return self._next_id - 1

    def is_authorized(self, item_id: int, principal: str) -> bool:
        item = self.get_item(item_id)
        principal = normalize_address(principal)
        return principal == item.creator or principal in self._permissions[item.item_id]

    def has_purchased(self, item_id: int, principal: str) -> bool:
        item = self.get_item(item_id)
        return normalize_address(principal) in self._purchases[item.item_id]

    def get_permissions(self, item_id: int) -> list[str]:
        """Sorted snapshot of the item's permission set."""
        item = self.get_item(item_id)
        with self._item_locks[item.item_id]:
            return sorted(self._permissions[item.item_id])

    def list_items(self, viewer: str | None = None) -> list[dict[str, Any]]:
        """
        All items in id order, flagged with whether `viewer` has access.

        Args:
            viewer: Optional address; without one every has_access is False
        """
        if viewer is not None:
            viewer = normalize_address(viewer)
        results = []
        for item_id in range(1, self.count() + 1):
            item = self._items.get(item_id)
            if item is None:
                continue
            entry = item.to_dict()
            entry["has_access"] = viewer is not None and self.is_authorized(item_id, viewer)
            results.append(entry)
        return results

    # ==================== EVENTS ====================

    def subscribe(self, callback: Callable[[dict[str, Any]], None]) -> None:
        """Register an observer called with every emitted event."""
        self._subscribers.append(callback)

    def get_audit_trail(self, limit: int = 100) -> list[dict[str, Any]]:
        """Recent events, newest first."""
        return list(reversed(self.events[-limit:]))

    def _emit_event(self, event_type: str, data: dict[str, Any]) -> None:
        event = {
            "event_type": event_type,
            "timestamp": datetime.now(UTC).isoformat(),
            "data": data,
        }
        self.events.append(event)
        if len(self.events) > self._max_events:
            del self.events[:-self._max_events]
        for callback in list(self._subscribers):
            try:
                callback(event)
            except Exception:
                # observers index events; they never veto a committed transition
                logger.exception("Event subscriber failed for %s", event_type)

    # ==================== PERSISTENCE ====================

    def to_dict(self) -> dict[str, Any]:
        with self._counter_lock:
            return {
                "next_id": self._next_id,
                "access_price": self.access_price,
                "items": [
                    {
                        **item.to_dict(),
                        "permissions": sorted(self._permissions[item_id]),
                        "purchases": sorted(self._purchases[item_id]),
                    }
                    for item_id, item in sorted(self._items.items())
                ],
                "events": list(self.events),
            }

    def load_dict(self, data: dict[str, Any]) -> None:
        """
        Replace store state with a to_dict() snapshot.

        Raises:
            InvalidInputError: If the snapshot is malformed
        """
        items, permissions, purchases, by_secret = {}, {}, {}, {}
        try:
            for record in data.get("items", []):
                item = ContentItem(
                    item_id=int(record["item_id"]),
                    creator=normalize_address(record["creator"]),
                    ciphertext_handle=record["ciphertext_handle"],
                    sealed_secret=record["sealed_secret"].lower(),
                    price=int(record["price"]),
                    created_at=int(record["created_at"]),
                )
                if item.sealed_secret in by_secret:
                    raise InvalidInputError(
                        f"Items {by_secret[item.sealed_secret]} and {item.item_id} share a sealed secret"
                    )
                by_secret[item.sealed_secret] = item.item_id
                items[item.item_id] = item
                permissions[item.item_id] = {normalize_address(p) for p in record["permissions"]}
                permissions[item.item_id].add(item.creator)
                purchases[item.item_id] = {normalize_address(p) for p in record["purchases"]}
            next_id = int(data.get("next_id", max(items, default=0) + 1))
        except (KeyError, TypeError, ValueError, AttributeError) as e:
            raise InvalidInputError(f"Malformed store snapshot: {e}") from e

        with self._counter_lock:
            self._items = items
            self._items_by_secret = by_secret
            self._permissions = permissions
            self._purchases = purchases
            self._item_locks = {item_id: threading.Lock() for item_id in items}
            self._next_id = max(next_id, max(items, default=0) + 1)
            self.events = list(data.get("events", []))[-self._max_events:]
