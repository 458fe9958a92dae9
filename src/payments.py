"""
SealedGallery - Payment Ledger

Account balances and transfers for access purchases.

Amounts are integers in the smallest currency unit (wei-like), so no
rounding ever enters the price check. A recipient may refuse incoming
transfers, which is how a failed payout is modelled. transaction() gives
callers an all-or-nothing scope: any exception inside it restores every
balance to its value on entry.
"""

import logging
import threading
from collections import defaultdict
from contextlib import contextmanager
from datetime import UTC, datetime
from typing import Any

from errors import InsufficientFundsError, InvalidInputError, TransferRejectedError
from identity import normalize_address

logger = logging.getLogger(__name__)

# Newest ledger events kept in memory
MAX_EVENTS = 1000


def _check_amount(amount: int) -> int:
    if isinstance(amount, bool) or not isinstance(amount, int):
        raise InvalidInputError("Amount must be an integer")
    if amount < 0:
        raise InvalidInputError("Amount must not be negative")
    return amount


class PaymentLedger:
    """Balances keyed by principal address."""

    def __init__(self):
        self._balances: dict[str, int] = defaultdict(int)
        self._rejecting: set[str] = set()
        # RLock: transaction() holds it while transfers re-enter
        self._lock = threading.RLock()

        # Audit trail
        self.events: list[dict[str, Any]] = []
        self._max_events = MAX_EVENTS

    def deposit(self, account: str, amount: int) -> int:
        """Credit an account. Returns the new balance."""
        account = normalize_address(account)
        amount = _check_amount(amount)
        with self._lock:
            self._balances[account] += amount
            self._emit_event("Deposit", {"account": account, "amount": amount})
            return self._balances[account]

    def balance_of(self, account: str) -> int:
        account = normalize_address(account)
        with self._lock:
            return self._balances.get(account, 0)

    def set_accepts_payments(self, account: str, accepts: bool = True) -> None:
        """Mark an account as accepting or refusing incoming transfers."""
        account = normalize_address(account)
        with self._lock:
            if accepts:
                self._rejecting.discard(account)
            else:
                self._rejecting.add(account)

    def transfer(self, sender: str, recipient: str, amount: int) -> None:
        """
        Move `amount` from sender to recipient.

        Raises:
            InsufficientFundsError: If the sender cannot cover the amount
            TransferRejectedError: If the recipient refuses payments
        """
        sender = normalize_address(sender)
        recipient = normalize_address(recipient)
        amount = _check_amount(amount)

        with self._lock:
            if self._balances.get(sender, 0) < amount:
                raise InsufficientFundsError(
                    "Insufficient balance for transfer",
                    {"required": amount, "available": self._balances.get(sender, 0)},
                )
            if recipient in self._rejecting:
                raise TransferRejectedError("Recipient rejected the transfer")

            self._balances[sender] -= amount
            self._balances[recipient] += amount
            self._emit_event("Transfer", {"from": sender, "to": recipient, "amount": amount})

        logger.debug("Transferred %d from %s to %s", amount, sender, recipient)

    @contextmanager
    def transaction(self):
        """
        All-or-nothing scope over balances.

        Usage:
            with ledger.transaction():
                ledger.transfer(buyer, creator, price)
                grant_view(...)  # if this raises, the transfer is undone
        """
        with self._lock:
            balances = dict(self._balances)
            events = list(self.events)
            try:
                yield self
            except BaseException:
                self._balances = defaultdict(int, balances)
                self.events[:] = events
                logger.info("Ledger transaction rolled back")
                raise

    # ==================== PERSISTENCE ====================

    def to_dict(self) -> dict[str, Any]:
        with self._lock:
            return {
                "balances": {a: b for a, b in self._balances.items() if b},
                "rejecting": sorted(self._rejecting),
            }

    def load_dict(self, data: dict[str, Any]) -> None:
        data = data or {}
        balances = defaultdict(int)
        for account, amount in data.get("balances", {}).items():
            balances[normalize_address(account)] = _check_amount(amount)
        with self._lock:
            self._balances = balances
            self._rejecting = {normalize_address(a) for a in data.get("rejecting", [])}

    def _emit_event(self, event_type: str, data: dict[str, Any]) -> None:
        self.events.append({
            "event_type": event_type,
            "timestamp": datetime.now(UTC).isoformat(),
            "data": data,
        })
        if len(self.events) > self._max_events:
            del self.events[:-self._max_events]
