"""
Gallery blueprint.

Listing, purchase, grant and access-query routes over the node's
SealedKeyStore, plus the payment-ledger helpers a client needs to fund
purchases.

Mutating routes require the API key. Listing, purchase and grant also
require a typed message signed by the principal who acts, checked against
the node authority's domain and clock.
Item metadata, including purchase records, is readable without one.
"""

from flask import Blueprint, jsonify, request

from authorization import (
    GRANT_FIELDS,
    GRANT_TYPE,
    LIST_FIELDS,
    LIST_TYPE,
    PURCHASE_FIELDS,
    PURCHASE_TYPE,
    SignedRequest,
)
from errors import InvalidInputError
from key_material import secret_from_hex

from .utils import (
    MAX_HANDLE_LENGTH,
    bounded_limit,
    get_node,
    invalid_request,
    json_body,
    persist,
    require_api_key,
    validate_json_schema,
)

gallery_bp = Blueprint("gallery", __name__, url_prefix="/gallery")


# ============================================================
# Reads
# ============================================================

@gallery_bp.route("/items", methods=["GET"])
def list_items():
    """
    All items in id order.

    Query params:
        viewer: optional address; each item carries has_access for it
    """
    items = get_node().store.list_items(request.args.get("viewer") or None)
    return jsonify({"count": len(items), "items": items})


@gallery_bp.route("/items/<int:item_id>", methods=["GET"])
def get_item(item_id: int):
    return jsonify(get_node().store.get_item(item_id).to_dict())


@gallery_bp.route("/count", methods=["GET"])
def count():
    return jsonify({"count": get_node().store.count()})


@gallery_bp.route("/price", methods=["GET"])
def price():
    return jsonify({"access_price": get_node().store.access_price})


@gallery_bp.route("/items/<int:item_id>/access/<principal>", methods=["GET"])
def check_access(item_id: int, principal: str):
    store = get_node().store
    return jsonify({
        "item_id": item_id,
        "principal": principal.lower(),
        "authorized": store.is_authorized(item_id, principal),
        "purchased": store.has_purchased(item_id, principal),
    })


@gallery_bp.route("/items/<int:item_id>/permissions", methods=["GET"])
def permissions(item_id: int):
    return jsonify({"item_id": item_id, "permissions": get_node().store.get_permissions(item_id)})


@gallery_bp.route("/events", methods=["GET"])
def events():
    trail = get_node().store.get_audit_trail(limit=bounded_limit())
    return jsonify({"count": len(trail), "events": trail})


@gallery_bp.route("/accounts/<account>/balance", methods=["GET"])
def balance(account: str):
    return jsonify({"account": account.lower(), "balance": get_node().ledger.balance_of(account)})


# ============================================================
# Mutations
# ============================================================

@gallery_bp.route("/sealed-values", methods=["POST"])
@require_api_key
def seal_value():
    """
    Seal an identity secret on the host for its owner.

    Request body:
    {
        "owner": "0x...",
        "value": "0x<64 hex>"
    }
    """
    data = json_body()
    is_valid, error = validate_json_schema(data, {"owner": str, "value": str})
    if not is_valid:
        return invalid_request(error)

    handle = get_node().sealing.sealed_write(secret_from_hex(data["value"]), data["owner"])
    persist()
    return jsonify({"sealed_handle": handle}), 201


def _verified(primary_type: str, fields: list, signer_field: str) -> dict:
    signed = SignedRequest.from_dict(json_body())
    return get_node().authority.verify(signed, primary_type, fields, signer_field)


def _check_item_id(message: dict, item_id: int) -> None:
    if message["item_id"] != item_id:
        raise InvalidInputError("Signed item_id does not match the route")


@gallery_bp.route("/items", methods=["POST"])
@require_api_key
def list_item():
    """
    List an encrypted item. The body is a ListItem message signed by the creator.

    Request body:
    {
        "typed_data": {... "primary_type": "ListItem", "message": {"creator": "0x...", ...}},
        "signature": "<base64>",
        "public_key": "<base64>"
    }
    """
    message = _verified(LIST_TYPE, LIST_FIELDS, "creator")
    if len(message["ciphertext_handle"]) > MAX_HANDLE_LENGTH:
        return invalid_request(f"ciphertext_handle exceeds {MAX_HANDLE_LENGTH} characters")

    store = get_node().store
    item_id = store.list_item(message["creator"], message["ciphertext_handle"], message["sealed_secret"])
    persist()
    return jsonify({"item_id": item_id, "item": store.get_item(item_id).to_dict()}), 201


@gallery_bp.route("/items/<int:item_id>/purchase", methods=["POST"])
@require_api_key
def purchase(item_id: int):
    """
    Buy access. The body is a Purchase message signed by the buyer:
    {"buyer", "item_id", "payment", "start_timestamp", "duration_seconds"}.
    """
    message = _verified(PURCHASE_TYPE, PURCHASE_FIELDS, "buyer")
    _check_item_id(message, item_id)

    get_node().store.purchase(item_id, message["buyer"], message["payment"])
    persist()
    return jsonify({"item_id": item_id, "buyer": message["buyer"], "authorized": True})


@gallery_bp.route("/items/<int:item_id>/grant", methods=["POST"])
@require_api_key
def grant(item_id: int):
    """
    Grant access. The body is a GrantAccess message signed by the creator:
    {"requester", "item_id", "principal", "start_timestamp", "duration_seconds"}.
    """
    message = _verified(GRANT_TYPE, GRANT_FIELDS, "requester")
    _check_item_id(message, item_id)

    get_node().store.grant_access(item_id, message["principal"], message["requester"])
    persist()
    return jsonify({"item_id": item_id, "principal": message["principal"], "authorized": True})


@gallery_bp.route("/accounts/<account>/deposit", methods=["POST"])
@require_api_key
def deposit(account: str):
    data = json_body()
    is_valid, error = validate_json_schema(data, {"amount": int})
    if not is_valid:
        return invalid_request(error)
    if data["amount"] <= 0:
        raise InvalidInputError("Deposit amount must be positive")

    new_balance = get_node().ledger.deposit(account, data["amount"])
    persist()
    return jsonify({"account": account.lower(), "balance": new_balance})
