"""
Tests for the SealedGallery HTTP API through the Flask test client.

Covers:
- Health and metrics endpoints
- Gallery reads and mutations, with error payloads per failure kind
- The authority decrypt endpoint
- API key enforcement on mutating routes
"""

import os
import sys

import pytest

sys.path.insert(0, os.path.join(os.path.dirname(__file__), "..", "src"))

from authorization import (
    SessionKeypair,
    build_grant,
    build_listing,
    build_purchase,
    build_request,
    open_response,
    sign_request,
)
from conftest import PRICE, START_TIME
from key_material import generate_identity_secret, secret_to_hex


@pytest.fixture
def listed(node, creator):
    """An item listed through the node's session; returns the receipt."""
    return node.session.list_content(creator, b"\x89PNG\r\n\x1a\nartwork")


class TestHealthAndMetrics:
    """Monitoring endpoints."""

    def test_health(self, flask_client):
        response = flask_client.get("/health")
        assert response.status_code == 200
        data = response.get_json()
        assert data["status"] == "healthy"
        assert data["service"] == "SealedGallery API"
        assert data["items"] == 0

    def test_liveness(self, flask_client):
        assert flask_client.get("/health/live").get_json() == {"status": "alive"}

    def test_prometheus_metrics(self, flask_client, listed):
        flask_client.get("/gallery/count")
        response = flask_client.get("/metrics")
        assert response.status_code == 200
        assert response.mimetype == "text/plain"
        text = response.get_data(as_text=True)
        assert "sealedgallery_items 1" in text
        assert "sealedgallery_items_listed_total 1" in text
        assert 'path="/gallery/count"' in text

    def test_json_metrics(self, flask_client):
        data = flask_client.get("/metrics/json").get_json()
        assert "counters" in data
        assert data["gauges"]["items"] == 0

    def test_request_id_echoed(self, flask_client):
        response = flask_client.get("/health", headers={"X-Request-ID": "req-42"})
        assert response.headers["X-Request-ID"] == "req-42"


class TestGalleryReads:
    """GET routes."""

    def test_count_and_price(self, flask_client, listed):
        assert flask_client.get("/gallery/count").get_json() == {"count": 1}
        assert flask_client.get("/gallery/price").get_json() == {"access_price": PRICE}

    def test_get_item(self, flask_client, listed, creator):
        data = flask_client.get(f"/gallery/items/{listed.item_id}").get_json()
        assert data["creator"] == creator.address
        assert data["ciphertext_handle"] == listed.ciphertext_handle
        assert data["price"] == PRICE
        assert data["created_at"] == START_TIME
        assert "content_key_hex" not in data

    def test_get_unknown_item(self, flask_client):
        response = flask_client.get("/gallery/items/99")
        assert response.status_code == 404
        assert response.get_json()["error"] == "not_found"

    def test_list_items_with_viewer(self, flask_client, listed, creator, buyer):
        data = flask_client.get(f"/gallery/items?viewer={creator.address}").get_json()
        assert data["count"] == 1
        assert data["items"][0]["has_access"] is True
        data = flask_client.get(f"/gallery/items?viewer={buyer.address}").get_json()
        assert data["items"][0]["has_access"] is False

    def test_list_items_bad_viewer(self, flask_client, listed):
        response = flask_client.get("/gallery/items?viewer=nobody")
        assert response.status_code == 400
        assert response.get_json()["error"] == "invalid_input"

    def test_access_and_permissions(self, flask_client, listed, creator, buyer):
        data = flask_client.get(f"/gallery/items/{listed.item_id}/access/{buyer.address}").get_json()
        assert data == {
            "item_id": listed.item_id,
            "principal": buyer.address,
            "authorized": False,
            "purchased": False,
        }
        data = flask_client.get(f"/gallery/items/{listed.item_id}/permissions").get_json()
        assert data["permissions"] == [creator.address]

    def test_events(self, flask_client, listed):
        data = flask_client.get("/gallery/events?limit=5").get_json()
        assert data["count"] == 1
        assert data["events"][0]["event_type"] == "ItemListed"

    def test_balance(self, flask_client, node, buyer):
        node.ledger.deposit(buyer.address, 7)
        data = flask_client.get(f"/gallery/accounts/{buyer.address}/balance").get_json()
        assert data == {"account": buyer.address, "balance": 7}


def signed_body(node, wallet, builder, *args, **kwargs):
    """Wire body of a typed message built with `builder` and signed by `wallet`."""
    kwargs.setdefault("issued_at", START_TIME)
    typed = builder(*args, domain=node.domain, **kwargs)
    return sign_request(wallet, typed).to_dict()


class TestGalleryMutations:
    """POST routes and the error taxonomy on the wire."""

    def purchase(self, client, node, wallet, item_id, payment=PRICE):
        return client.post(
            f"/gallery/items/{item_id}/purchase",
            json=signed_body(node, wallet, build_purchase, wallet.address, item_id, payment),
        )

    def grant(self, client, node, wallet, item_id, principal):
        return client.post(
            f"/gallery/items/{item_id}/grant",
            json=signed_body(node, wallet, build_grant, wallet.address, item_id, principal),
        )

    def test_seal_and_list(self, flask_client, node, creator, test_auth_headers):
        response = flask_client.post(
            "/gallery/sealed-values",
            json={"owner": creator.address, "value": secret_to_hex(generate_identity_secret())},
            headers=test_auth_headers,
        )
        assert response.status_code == 201
        handle = response.get_json()["sealed_handle"]

        response = flask_client.post(
            "/gallery/items",
            json=signed_body(node, creator, build_listing, creator.address, "pseudo-1", handle),
            headers=test_auth_headers,
        )
        assert response.status_code == 201
        assert response.get_json()["item_id"] == 1
        assert node.storage.load_state()["store"]["next_id"] == 2

    def test_list_unsigned(self, flask_client, creator):
        response = flask_client.post("/gallery/items", json={"creator": creator.address})
        assert response.status_code == 400
        assert "signature" in response.get_json()["message"]

    def test_list_non_json(self, flask_client):
        response = flask_client.post("/gallery/items", data="nope", content_type="text/plain")
        assert response.status_code == 400

    def test_list_foreign_sealed_secret(self, flask_client, node, listed, buyer):
        response = flask_client.post(
            "/gallery/items",
            json=signed_body(node, buyer, build_listing, buyer.address, "pseudo-x", listed.sealed_secret),
        )
        assert response.status_code == 400

    def test_relist_same_sealed_secret(self, flask_client, node, listed, creator):
        response = flask_client.post(
            "/gallery/items",
            json=signed_body(node, creator, build_listing, creator.address, "pseudo-x", listed.sealed_secret),
        )
        assert response.status_code == 400
        assert node.store.count() == 1

    def test_list_signed_by_someone_else(self, flask_client, node, creator, stranger):
        handle = node.sealing.sealed_write(generate_identity_secret(), creator.address)
        typed = build_listing(creator.address, "pseudo-x", handle, issued_at=START_TIME, domain=node.domain)
        response = flask_client.post("/gallery/items", json=sign_request(stranger, typed).to_dict())
        assert response.status_code == 401
        assert response.get_json()["error"] == "signature_invalid"
        assert node.store.count() == 0

    def test_purchase_flow(self, flask_client, node, listed, creator, buyer):
        flask_client.post(f"/gallery/accounts/{buyer.address}/deposit", json={"amount": 2 * PRICE})

        response = self.purchase(flask_client, node, buyer, listed.item_id)
        assert response.status_code == 200
        assert response.get_json() == {"item_id": listed.item_id, "buyer": buyer.address, "authorized": True}
        assert node.ledger.balance_of(creator.address) == PRICE

        # already have access
        response = self.purchase(flask_client, node, buyer, listed.item_id)
        assert response.status_code == 409
        assert response.get_json()["error"] == "already_purchased"

    def test_purchase_price_mismatch(self, flask_client, node, listed, buyer):
        flask_client.post(f"/gallery/accounts/{buyer.address}/deposit", json={"amount": 2 * PRICE})
        response = self.purchase(flask_client, node, buyer, listed.item_id, payment=PRICE + 1)
        assert response.status_code == 402
        body = response.get_json()
        assert body["error"] == "price_mismatch"
        assert body["details"] == {"price": PRICE, "paid": PRICE + 1}

    def test_self_purchase(self, flask_client, node, listed, creator):
        response = self.purchase(flask_client, node, creator, listed.item_id)
        assert response.status_code == 409
        assert response.get_json()["error"] == "self_purchase"

    def test_purchase_insufficient_funds(self, flask_client, node, listed, buyer):
        response = self.purchase(flask_client, node, buyer, listed.item_id)
        assert response.status_code == 402
        assert response.get_json()["error"] == "insufficient_funds"

    def test_purchase_rejects_boolean_payment(self, flask_client, node, listed, buyer):
        body = signed_body(node, buyer, build_purchase, buyer.address, listed.item_id, PRICE)
        body["typed_data"]["message"]["payment"] = True
        response = flask_client.post(f"/gallery/items/{listed.item_id}/purchase", json=body)
        assert response.status_code == 400

    def test_unsigned_purchase_rejected(self, flask_client, node, listed, buyer):
        flask_client.post(f"/gallery/accounts/{buyer.address}/deposit", json={"amount": PRICE})
        response = flask_client.post(
            f"/gallery/items/{listed.item_id}/purchase", json={"buyer": buyer.address, "payment": PRICE}
        )
        assert response.status_code == 400
        assert node.ledger.balance_of(buyer.address) == PRICE

    def test_purchase_for_another_buyer_rejected(self, flask_client, node, listed, buyer, stranger):
        flask_client.post(f"/gallery/accounts/{buyer.address}/deposit", json={"amount": PRICE})
        typed = build_purchase(buyer.address, listed.item_id, PRICE, issued_at=START_TIME, domain=node.domain)
        response = flask_client.post(
            f"/gallery/items/{listed.item_id}/purchase", json=sign_request(stranger, typed).to_dict()
        )
        assert response.status_code == 401
        assert response.get_json()["error"] == "signature_invalid"
        assert node.ledger.balance_of(buyer.address) == PRICE
        assert not node.store.has_purchased(listed.item_id, buyer.address)

    def test_purchase_item_id_must_match_route(self, flask_client, node, listed, buyer):
        flask_client.post(f"/gallery/accounts/{buyer.address}/deposit", json={"amount": PRICE})
        body = signed_body(node, buyer, build_purchase, buyer.address, listed.item_id + 1, PRICE)
        response = flask_client.post(f"/gallery/items/{listed.item_id}/purchase", json=body)
        assert response.status_code == 400
        assert not node.store.has_purchased(listed.item_id, buyer.address)

    def test_expired_purchase(self, flask_client, node, listed, buyer, clock):
        flask_client.post(f"/gallery/accounts/{buyer.address}/deposit", json={"amount": PRICE})
        body = signed_body(node, buyer, build_purchase, buyer.address, listed.item_id, PRICE, duration_seconds=30)
        clock.advance(30)
        response = flask_client.post(f"/gallery/items/{listed.item_id}/purchase", json=body)
        assert response.status_code == 401
        assert response.get_json()["error"] == "expired_request"

    def test_grant(self, flask_client, node, listed, creator, buyer, stranger):
        response = self.grant(flask_client, node, buyer, listed.item_id, stranger.address)
        assert response.status_code == 403
        assert response.get_json()["error"] == "not_authorized"

        response = self.grant(flask_client, node, creator, listed.item_id, stranger.address)
        assert response.status_code == 200
        access = flask_client.get(f"/gallery/items/{listed.item_id}/access/{stranger.address}").get_json()
        assert access["authorized"] is True
        assert access["purchased"] is False

    def test_grant_claiming_creator_rejected(self, flask_client, node, listed, creator, stranger):
        typed = build_grant(
            creator.address, listed.item_id, stranger.address, issued_at=START_TIME, domain=node.domain
        )
        response = flask_client.post(
            f"/gallery/items/{listed.item_id}/grant", json=sign_request(stranger, typed).to_dict()
        )
        assert response.status_code == 401
        assert not node.store.is_authorized(listed.item_id, stranger.address)

    def test_unsigned_grant_rejected(self, flask_client, node, listed, creator, stranger):
        response = flask_client.post(
            f"/gallery/items/{listed.item_id}/grant",
            json={"principal": stranger.address, "requester": creator.address},
        )
        assert response.status_code == 400
        assert not node.store.is_authorized(listed.item_id, stranger.address)

    def test_deposit_must_be_positive(self, flask_client, buyer):
        response = flask_client.post(f"/gallery/accounts/{buyer.address}/deposit", json={"amount": 0})
        assert response.status_code == 400


class TestAuthorityEndpoint:
    """POST /authority/decrypt."""

    def signed_payload(self, node, wallet, item_id, session, **kwargs):
        item = node.store.get_item(item_id)
        kwargs.setdefault("issued_at", START_TIME)
        typed = build_request(
            wallet.address, item_id, item.sealed_secret, session.public_key_bytes,
            domain=node.domain, **kwargs,
        )
        return sign_request(wallet, typed).to_dict()

    def test_domain(self, flask_client, node):
        assert flask_client.get("/authority/domain").get_json() == node.domain.to_dict()

    def test_release_to_creator(self, flask_client, node, listed, creator):
        session = SessionKeypair()
        response = flask_client.post(
            "/authority/decrypt", json=self.signed_payload(node, creator, listed.item_id, session)
        )
        assert response.status_code == 200
        secret = open_response(response.get_json(), session)
        assert secret == node.session.request_secret(creator, listed.item_id)

    def test_refused_for_stranger(self, flask_client, node, listed, stranger):
        response = flask_client.post(
            "/authority/decrypt", json=self.signed_payload(node, stranger, listed.item_id, SessionKeypair())
        )
        assert response.status_code == 403
        assert response.get_json()["error"] == "not_authorized"

    def test_expired(self, flask_client, node, listed, creator, clock):
        payload = self.signed_payload(node, creator, listed.item_id, SessionKeypair(), duration_seconds=30)
        clock.advance(31)
        response = flask_client.post("/authority/decrypt", json=payload)
        assert response.status_code == 401
        assert response.get_json()["error"] == "expired_request"

    def test_tampered_signature(self, flask_client, node, listed, creator):
        payload = self.signed_payload(node, creator, listed.item_id, SessionKeypair())
        payload["typed_data"]["message"]["item_id"] = 2
        response = flask_client.post("/authority/decrypt", json=payload)
        assert response.status_code == 401
        assert response.get_json()["error"] == "signature_invalid"

    def test_malformed(self, flask_client):
        response = flask_client.post("/authority/decrypt", json={"signature": "x"})
        assert response.status_code == 400

    def test_non_string_field_name(self, flask_client, node, listed, creator):
        payload = self.signed_payload(node, creator, listed.item_id, SessionKeypair())
        payload["typed_data"]["types"]["DecryptRequest"][0] = {"name": ["principal"], "type": "address"}
        response = flask_client.post("/authority/decrypt", json=payload)
        assert response.status_code == 400
        assert response.get_json()["error"] == "invalid_input"


class TestApiKey:
    """Mutating routes require the key when auth is on."""

    @pytest.fixture
    def secured_client(self, flask_app):
        flask_app.config["REQUIRE_AUTH"] = True
        return flask_app.test_client()

    def test_missing_key(self, secured_client, buyer):
        response = secured_client.post(f"/gallery/accounts/{buyer.address}/deposit", json={"amount": 1})
        assert response.status_code == 401

    def test_wrong_key(self, secured_client, buyer):
        response = secured_client.post(
            f"/gallery/accounts/{buyer.address}/deposit", json={"amount": 1}, headers={"X-API-Key": "wrong"}
        )
        assert response.status_code == 403

    def test_correct_key(self, secured_client, buyer, test_auth_headers):
        response = secured_client.post(
            f"/gallery/accounts/{buyer.address}/deposit", json={"amount": 1}, headers=test_auth_headers
        )
        assert response.status_code == 200

    def test_reads_stay_public(self, secured_client):
        assert secured_client.get("/gallery/count").status_code == 200

    def test_authority_not_behind_key(self, secured_client):
        response = secured_client.post("/authority/decrypt", json={})
        assert response.status_code == 400
