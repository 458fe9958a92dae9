"""
Shared utilities for the SealedGallery API.

Common helpers and decorators used across the blueprints.
"""

import secrets
from functools import wraps
from typing import Any

from flask import current_app, jsonify, request

MAX_RESULTS = 500
MAX_HANDLE_LENGTH = 512


# ============================================================
# Validation Utilities
# ============================================================

def validate_json_schema(
    data: dict[str, Any],
    required_fields: dict[str, type | tuple],
    optional_fields: dict[str, type | tuple] | None = None,
    max_lengths: dict[str, int] | None = None,
) -> tuple:
    """
    Validate a JSON payload against a simple schema.

    Args:
        data: The JSON data to validate
        required_fields: Dict mapping field names to expected types
        optional_fields: Dict mapping optional field names to expected types
        max_lengths: Dict mapping field names to maximum string lengths

    Returns:
        Tuple of (is_valid, error_message)
    """
    if not isinstance(data, dict):
        return False, "Request body must be a JSON object"

    def type_name(expected) -> str:
        if isinstance(expected, tuple):
            return " or ".join(t.__name__ for t in expected)
        return expected.__name__

    for field_name, expected_type in required_fields.items():
        if field_name not in data:
            return False, f"Missing required field: {field_name}"
        value = data[field_name]
        # JSON true/false must not pass as integers
        if isinstance(value, bool) and expected_type is not bool:
            return False, f"Field '{field_name}' must be of type {type_name(expected_type)}"
        if not isinstance(value, expected_type):
            return False, f"Field '{field_name}' must be of type {type_name(expected_type)}"

    if optional_fields:
        for field_name, expected_type in optional_fields.items():
            if data.get(field_name) is not None and not isinstance(data[field_name], expected_type):
                return False, f"Field '{field_name}' must be of type {type_name(expected_type)}"

    if max_lengths:
        for field_name, max_len in max_lengths.items():
            if isinstance(data.get(field_name), str) and len(data[field_name]) > max_len:
                return False, f"Field '{field_name}' exceeds maximum length of {max_len}"

    return True, None


def json_body() -> Any:
    """Parsed JSON body, or None when absent or not JSON."""
    return request.get_json(silent=True)


def invalid_request(message: str):
    return jsonify({"error": "invalid_input", "message": message}), 400


def bounded_limit(default: int = 100) -> int:
    limit = request.args.get("limit", default, type=int)
    return max(1, min(limit, MAX_RESULTS))


# ============================================================
# Node Access
# ============================================================

def get_node():
    """The GalleryNode this app serves."""
    return current_app.config["GALLERY_NODE"]


def persist() -> None:
    """Save node state after a mutation. StorageError propagates to the error handler."""
    get_node().save()


# ============================================================
# Authentication Decorator
# ============================================================

def require_api_key(f):
    """Require the X-API-Key header on mutating routes."""

    @wraps(f)
    def decorated_function(*args, **kwargs):
        if not current_app.config.get("REQUIRE_AUTH", True):
            return f(*args, **kwargs)

        provided_key = request.headers.get("X-API-Key")
        if not provided_key:
            return jsonify({
                "error": "api_key_required",
                "message": "Provide API key in X-API-Key header",
            }), 401

        api_key = current_app.config.get("API_KEY")
        if not api_key:
            return jsonify({
                "error": "api_key_not_configured",
                "message": "Set SEALEDGALLERY_API_KEY environment variable",
            }), 503

        if not secrets.compare_digest(provided_key, api_key):
            return jsonify({"error": "invalid_api_key", "message": "Invalid API key"}), 403

        return f(*args, **kwargs)

    return decorated_function
