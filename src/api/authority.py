"""
Authority blueprint.

POST /authority/decrypt answers a signed DecryptRequest with the item's
secret encrypted to the requester's session key. The route is not behind
the API key: the signed request is the credential.
"""

from flask import Blueprint, jsonify

from authorization import SignedRequest

from .utils import get_node, json_body

authority_bp = Blueprint("authority", __name__, url_prefix="/authority")


@authority_bp.route("/domain", methods=["GET"])
def domain():
    """The signing domain requests must be bound to."""
    return jsonify(get_node().domain.to_dict())


@authority_bp.route("/decrypt", methods=["POST"])
def decrypt():
    """
    Request body: SignedRequest.to_dict()
    {
        "typed_data": {...},
        "signature": "<base64>",
        "public_key": "<base64>"
    }

    Returns:
        {"ephemeral_public_key": "<base64>", "ciphertext": "<base64>"}
    """
    signed = SignedRequest.from_dict(json_body())
    return jsonify(get_node().authority.submit(signed))
