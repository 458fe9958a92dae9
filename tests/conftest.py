"""
Pytest configuration and shared fixtures for SealedGallery tests.

This module provides shared fixtures and test configuration including:
- A controllable clock for validity-window tests
- Sealing backend, payment ledger and permission store instances
- Creator / buyer / stranger wallets
- A fully wired in-memory GalleryNode and its Flask test client
- Metrics and circuit breaker reset between tests
"""

import os
import sys

import pytest

# Add src to path
sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..', 'src'))

# Set up test environment before any imports
os.environ["SEALEDGALLERY_API_KEY"] = "test-api-key-12345"
os.environ["SEALEDGALLERY_REQUIRE_AUTH"] = "false"
os.environ["STORAGE_BACKEND"] = "memory"
os.environ["BLOB_BACKEND"] = "memory"

START_TIME = 1_700_000_000
PRICE = 10**15


class FakeClock:
    """Callable returning a settable unix time."""

    def __init__(self, now: float = START_TIME):
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture(autouse=True)
def reset_shared_state():
    """Reset the global metrics and circuit breakers around every test."""
    from retry import reset_circuit_breakers
    from monitoring import metrics

    metrics.reset()
    reset_circuit_breakers()
    yield
    metrics.reset()


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def sealing():
    from sealing import LocalSealingBackend
    return LocalSealingBackend(os.urandom(32))


@pytest.fixture
def ledger():
    from payments import PaymentLedger
    return PaymentLedger()


@pytest.fixture
def store(sealing, ledger, clock):
    from sealed_key_store import SealedKeyStore
    return SealedKeyStore(sealing, ledger, access_price=PRICE, clock=clock)


@pytest.fixture(scope="session")
def creator():
    from identity import WalletIdentity
    return WalletIdentity.generate("creator")


@pytest.fixture(scope="session")
def buyer():
    from identity import WalletIdentity
    return WalletIdentity.generate("buyer")


@pytest.fixture(scope="session")
def stranger():
    from identity import WalletIdentity
    return WalletIdentity.generate("stranger")


@pytest.fixture
def funded_buyer(ledger, buyer):
    """The buyer wallet with enough balance for a few purchases."""
    ledger.deposit(buyer.address, 5 * PRICE)
    return buyer


@pytest.fixture
def listed_item(store, sealing, creator):
    """
    An item listed by the creator.

    Returns:
        (item_id, raw_secret)
    """
    from key_material import generate_identity_secret

    secret = generate_identity_secret()
    handle = sealing.sealed_write(secret, creator.address)
    item_id = store.list_item(creator.address, "pseudo-test-ciphertext", handle)
    return item_id, secret


@pytest.fixture
def authority(store, sealing, clock):
    from authorization import AuthorityService
    return AuthorityService(store, sealing, clock=clock)


@pytest.fixture
def node(clock):
    """A GalleryNode with in-memory storage and blobs."""
    from blob_store import MemoryBlobStore
    from config import GalleryConfig
    from node import GalleryNode
    from storage import MemoryStorage

    config = GalleryConfig(
        access_price=PRICE,
        sealing_key=os.urandom(32),
        api_key="test-api-key-12345",
        require_auth=False,
        storage_backend="memory",
        blob_backend="memory",
    )
    return GalleryNode(config, storage=MemoryStorage(), blob_store=MemoryBlobStore(), clock=clock)


@pytest.fixture
def flask_app(node):
    """Create Flask test app around a fresh node."""
    from api import create_app

    app = create_app(node)
    app.config['TESTING'] = True
    return app


@pytest.fixture
def flask_client(flask_app):
    """Create Flask test client."""
    return flask_app.test_client()


@pytest.fixture
def test_auth_headers():
    """Headers for authenticated requests."""
    return {
        "Content-Type": "application/json",
        "X-API-Key": "test-api-key-12345"
    }
