#!/usr/bin/env python3
"""
SealedGallery Quickstart Example

This example walks through the whole access-control flow in one process:
1. Creating a gallery node and two wallets
2. Listing encrypted content
3. Checking that a stranger cannot unlock it
4. Purchasing access and unlocking
5. Inspecting the audit trail

Run this example:
    python examples/quickstart.py

Nothing is written to disk - this uses in-memory storage and blobs.
"""

import os
import sys

# Add src to path so we can import the gallery
sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..', 'src'))

from config import GalleryConfig
from errors import NotAuthorizedError
from identity import WalletIdentity
from node import GalleryNode

PNG_HEADER = b"\x89PNG\r\n\x1a\n"


def main():
    print("=" * 60)
    print("SealedGallery Quickstart")
    print("=" * 60)
    print()

    # ==========================================================================
    # Step 1: Create a node and wallets
    # ==========================================================================

    print("Step 1: Creating node and wallets...")
    config = GalleryConfig(storage_backend="memory", blob_backend="memory", sealing_key=os.urandom(32))
    node = GalleryNode(config)

    alice = WalletIdentity.generate("alice")
    bob = WalletIdentity.generate("bob")
    node.ledger.deposit(bob.address, 10 * node.store.access_price)
    print(f"  Creator (alice): {alice.address}")
    print(f"  Buyer (bob):     {bob.address}")
    print(f"  Access price:    {node.store.access_price}")
    print()

    # ==========================================================================
    # Step 2: List encrypted content
    # ==========================================================================

    print("Step 2: Listing content...")
    artwork = PNG_HEADER + b"not really a picture, but the header says so"
    receipt = node.session.list_content(alice, artwork)
    print(f"  Item id:        {receipt.item_id}")
    print(f"  Ciphertext:     {receipt.ciphertext_handle}")
    print(f"  Sealed secret:  {receipt.sealed_secret[:18]}...")
    print()

    # ==========================================================================
    # Step 3: Bob cannot unlock before paying
    # ==========================================================================

    print("Step 3: Unlocking without access...")
    try:
        node.session.unlock(bob, receipt.item_id)
    except NotAuthorizedError as e:
        print(f"  Refused: {e}")
    print()

    # ==========================================================================
    # Step 4: Purchase and unlock
    # ==========================================================================

    print("Step 4: Purchasing and unlocking...")
    unlocked = node.session.purchase_and_unlock(bob, receipt.item_id)
    print(f"  Recovered {len(unlocked.data)} bytes ({unlocked.mime_type})")
    print(f"  Matches original: {unlocked.data == artwork}")
    print(f"  Alice's balance:  {node.ledger.balance_of(alice.address)}")
    print()

    # ==========================================================================
    # Step 5: Audit trail
    # ==========================================================================

    print("Step 5: Events (oldest first)")
    for event in reversed(node.store.get_audit_trail()):
        print(f"  {event['event_type']}: {event['data']}")
    print()

    print("=" * 60)
    print("Quickstart complete!")
    print()
    print("Next steps:")
    print("  1. Start the API server: python run_server.py")
    print("  2. Visit http://localhost:5000/health")
    print("  3. Try the CLI: sealed-gallery --help")
    print("=" * 60)


if __name__ == "__main__":
    main()
