#!/usr/bin/env python3
"""
SealedGallery Command Line Interface.

Commands for running a gallery node and driving the listing / purchase /
unlock workflow against its local state:
    - serve: Start the API server
    - check: Verify installation and configuration
    - info: Display node information
    - keygen / address: Manage wallet keystores
    - deposit: Credit an account on the payment ledger
    - list / items / get / count: List content and inspect items
    - purchase / grant / unlock: Buy, share and decrypt content

Usage:
    sealed-gallery keygen --out alice.key
    sealed-gallery list --file art.png --key alice.key
    sealed-gallery purchase --id 1 --key bob.key
    sealed-gallery unlock --id 1 --key bob.key --out art.png

State is loaded before and saved after every mutating command. Keystore
passphrases come from --passphrase or SEALEDGALLERY_KEY_PASSPHRASE.
"""

import argparse
import json
import os
import sys

__version__ = "0.1.0"


def _load_env() -> None:
    from dotenv import load_dotenv

    load_dotenv()


def _passphrase(args) -> str | None:
    return getattr(args, "passphrase", None) or os.getenv("SEALEDGALLERY_KEY_PASSPHRASE") or None


def _load_wallet(args):
    from identity import WalletIdentity

    return WalletIdentity.load(args.key, passphrase=_passphrase(args))


def _load_node():
    from node import GalleryNode

    node = GalleryNode.from_env()
    node.load()
    return node


# ============================================================
# Server commands
# ============================================================

def cmd_serve(args):
    """Start the SealedGallery API server."""
    from api import create_app

    host = args.host or os.getenv("HOST", "0.0.0.0")
    port = args.port or int(os.getenv("PORT", 5000))
    debug = args.debug or os.getenv("FLASK_DEBUG", "").lower() == "true"

    flask_app = create_app(_load_node())
    print(f"Starting SealedGallery API server on {host}:{port}")

    if not args.production:
        flask_app.run(host=host, port=port, debug=debug)
        return 0

    try:
        import gunicorn.app.base
    except ImportError:
        print("Error: gunicorn not installed. Install with: pip install sealed-gallery[production]")
        return 1

    class StandaloneApplication(gunicorn.app.base.BaseApplication):
        """Gunicorn wrapper serving the already-built Flask app."""

        def __init__(self, app, options=None):
            self.options = options or {}
            self.application = app
            super().__init__()

        def load_config(self):
            for key, value in self.options.items():
                if key in self.cfg.settings and value is not None:
                    self.cfg.set(key.lower(), value)

        def load(self):
            return self.application

    # a single worker: node state lives in process memory
    options = {
        "bind": f"{host}:{port}",
        "workers": 1,
        "threads": args.threads or int(os.getenv("THREADS", 8)),
        "worker_class": "gthread",
        "timeout": 120,
        "accesslog": "-",
        "errorlog": "-",
    }
    StandaloneApplication(flask_app, options).run()
    return 0


def cmd_check(args):
    """Check installation and configuration."""
    print("SealedGallery Installation Check")
    print("=" * 40)

    checks = []

    try:
        from config import GalleryConfig

        config = GalleryConfig.from_env()
        checks.append(("Configuration", "OK"))
    except Exception as e:
        checks.append(("Configuration", f"FAIL: {e}"))
        config = None

    if config is not None:
        if config.sealing_key is None:
            checks.append(("Sealing key", "WARN (not set; sealed secrets will not survive restart)"))
        else:
            checks.append(("Sealing key", "OK"))

        from storage import get_storage_backend

        storage = get_storage_backend(config.storage_backend, config.data_file)
        status = "OK" if storage.is_available() else "WARN (not available)"
        checks.append((f"Storage ({storage.__class__.__name__})", status))

        if config.blob_backend == "memory" and config.storage_backend != "memory":
            checks.append(("Blob store (memory)", "WARN (ciphertext is lost between runs)"))
        else:
            checks.append((f"Blob store ({config.blob_backend})", "OK"))

        checks.append((
            "Authority",
            f"OK (remote: {config.authority_url})" if config.authority_url else "OK (in-process)",
        ))

    try:
        import flask  # noqa: F401

        checks.append(("Flask API", "OK"))
    except ImportError as e:
        checks.append(("Flask API", f"FAIL: {e}"))

    try:
        import gunicorn  # noqa: F401

        checks.append(("Gunicorn", "OK"))
    except ImportError:
        checks.append(("Gunicorn", "SKIP (gunicorn not installed)"))

    print()
    all_ok = True
    for name, status in checks:
        icon = "✓" if status.startswith("OK") else ("○" if status.startswith(("SKIP", "WARN")) else "✗")
        print(f"  {icon} {name}: {status}")
        if status.startswith("FAIL"):
            all_ok = False

    print()
    if all_ok:
        print("All checks passed!")
        return 0
    print("Some checks failed. See above for details.")
    return 1


def cmd_info(args):
    """Display node information."""
    import platform

    node = _load_node()
    print("SealedGallery Node Information")
    print("=" * 40)
    print(f"Version: {__version__}")
    print(f"Python: {platform.python_version()}")
    print()
    print(json.dumps(node.health(), indent=2, default=str))
    return 0


# ============================================================
# Wallet commands
# ============================================================

def cmd_keygen(args):
    from identity import WalletIdentity

    if os.path.exists(args.out) and not args.force:
        print(f"Error: {args.out} already exists (use --force to overwrite)", file=sys.stderr)
        return 1
    wallet = WalletIdentity.generate(label=os.path.splitext(os.path.basename(args.out))[0])
    wallet.save(args.out, passphrase=_passphrase(args))
    print(wallet.address)
    return 0


def cmd_address(args):
    print(_load_wallet(args).address)
    return 0


# ============================================================
# Gallery commands
# ============================================================

def cmd_deposit(args):
    node = _load_node()
    balance = node.ledger.deposit(args.account, args.amount)
    node.save()
    print(f"Balance of {args.account.lower()}: {balance}")
    return 0


def cmd_list(args):
    wallet = _load_wallet(args)
    with open(args.file, "rb") as f:
        content = f.read()

    node = _load_node()
    receipt = node.session.list_content(wallet, content)
    node.save()
    print(f"Listed item {receipt.item_id}")
    print(f"  ciphertext: {receipt.ciphertext_handle}")
    print(f"  sealed secret: {receipt.sealed_secret}")
    return 0


def cmd_items(args):
    node = _load_node()
    print(json.dumps(node.store.list_items(args.viewer), indent=2))
    return 0


def cmd_get(args):
    node = _load_node()
    item = node.store.get_item(args.id).to_dict()
    item["permissions"] = node.store.get_permissions(args.id)
    print(json.dumps(item, indent=2))
    return 0


def cmd_count(args):
    print(_load_node().store.count())
    return 0


def cmd_purchase(args):
    wallet = _load_wallet(args)
    node = _load_node()
    item = node.store.get_item(args.id)
    if node.store.is_authorized(item.item_id, wallet.address):
        print(f"{wallet.address} already has access to item {item.item_id}")
        return 0
    node.store.purchase(item.item_id, wallet.address, item.price)
    node.save()
    print(f"Purchased item {item.item_id} for {item.price}")
    return 0


def cmd_grant(args):
    wallet = _load_wallet(args)
    node = _load_node()
    node.store.grant_access(args.id, args.account, wallet.address)
    node.save()
    print(f"Granted {args.account.lower()} access to item {args.id}")
    return 0


def cmd_unlock(args):
    wallet = _load_wallet(args)
    node = _load_node()
    unlocked = node.session.unlock(wallet, args.id)
    with open(args.out, "wb") as f:
        f.write(unlocked.data)
    print(f"Wrote {len(unlocked.data)} bytes ({unlocked.mime_type}) to {args.out}")
    return 0


# ============================================================
# Entry point
# ============================================================

COMMANDS = {
    "serve": cmd_serve,
    "check": cmd_check,
    "info": cmd_info,
    "keygen": cmd_keygen,
    "address": cmd_address,
    "deposit": cmd_deposit,
    "list": cmd_list,
    "items": cmd_items,
    "get": cmd_get,
    "count": cmd_count,
    "purchase": cmd_purchase,
    "grant": cmd_grant,
    "unlock": cmd_unlock,
}


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="sealed-gallery",
        description="SealedGallery - encrypted content with ledger-mediated access",
    )
    parser.add_argument("--version", "-v", action="version", version=f"%(prog)s {__version__}")
    subparsers = parser.add_subparsers(dest="command", help="Commands")

    serve_parser = subparsers.add_parser("serve", help="Start the API server")
    serve_parser.add_argument("--host", help="Host to bind to (default: 0.0.0.0)")
    serve_parser.add_argument("--port", type=int, help="Port to bind to (default: 5000)")
    serve_parser.add_argument("--debug", action="store_true", help="Enable debug mode")
    serve_parser.add_argument("--production", action="store_true", help="Use gunicorn for production")
    serve_parser.add_argument("--threads", type=int, help="Worker threads (production mode)")

    subparsers.add_parser("check", help="Check installation and configuration")
    subparsers.add_parser("info", help="Display node information")

    def with_key(p):
        p.add_argument("--key", required=True, help="Path to the wallet keystore")
        p.add_argument("--passphrase", help="Keystore passphrase")
        return p

    keygen_parser = subparsers.add_parser("keygen", help="Generate a wallet keystore")
    keygen_parser.add_argument("--out", required=True, help="Keystore path to write")
    keygen_parser.add_argument("--passphrase", help="Encrypt the keystore with a passphrase")
    keygen_parser.add_argument("--force", action="store_true", help="Overwrite an existing file")

    with_key(subparsers.add_parser("address", help="Print a keystore's address"))

    deposit_parser = subparsers.add_parser("deposit", help="Credit an account")
    deposit_parser.add_argument("--account", required=True)
    deposit_parser.add_argument("--amount", type=int, required=True)

    list_parser = with_key(subparsers.add_parser("list", help="Encrypt and list a file"))
    list_parser.add_argument("--file", required=True, help="Content to list")

    items_parser = subparsers.add_parser("items", help="List all items")
    items_parser.add_argument("--viewer", help="Address to compute has_access for")

    get_parser = subparsers.add_parser("get", help="Show one item")
    get_parser.add_argument("--id", type=int, required=True)

    subparsers.add_parser("count", help="Total items listed")

    purchase_parser = with_key(subparsers.add_parser("purchase", help="Buy access to an item"))
    purchase_parser.add_argument("--id", type=int, required=True)

    grant_parser = with_key(subparsers.add_parser("grant", help="Grant an account access"))
    grant_parser.add_argument("--id", type=int, required=True)
    grant_parser.add_argument("--account", required=True)

    unlock_parser = with_key(subparsers.add_parser("unlock", help="Decrypt an item to a file"))
    unlock_parser.add_argument("--id", type=int, required=True)
    unlock_parser.add_argument("--out", required=True)

    return parser


def main(argv: list[str] | None = None) -> int:
    """Main CLI entry point."""
    parser = build_parser()
    args = parser.parse_args(argv)

    handler = COMMANDS.get(args.command)
    if handler is None:
        parser.print_help()
        return 1

    _load_env()
    from errors import GalleryError
    from monitoring import configure_logging
    from storage import StorageError

    configure_logging()
    try:
        return handler(args)
    except (GalleryError, StorageError, OSError) as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1


if __name__ == "__main__":
    sys.exit(main())
