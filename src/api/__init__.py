"""
SealedGallery API Package.

Flask blueprints for the gallery HTTP surface.

Blueprints:
- gallery: listing, purchase, grant, access queries, ledger helpers
- authority: signed key-release requests
- monitoring: health and metrics

Usage:
    from api import create_app

    app = create_app(node)
    app.run()
"""

import logging

from flask import Flask, jsonify
from werkzeug.exceptions import HTTPException

from api.authority import authority_bp
from api.gallery import gallery_bp
from api.monitoring import monitoring_bp
from errors import GalleryError
from monitoring import setup_request_logging
from storage import StorageError

logger = logging.getLogger(__name__)

# Tuple format: (blueprint, url_prefix); None keeps the blueprint's own prefix
ALL_BLUEPRINTS = [
    (monitoring_bp, None),
    (gallery_bp, None),
    (authority_bp, None),
]


def register_blueprints(app: Flask) -> None:
    for blueprint, url_prefix in ALL_BLUEPRINTS:
        app.register_blueprint(blueprint, url_prefix=url_prefix)


def register_error_handlers(app: Flask) -> None:
    """Map typed errors to their status and JSON payload."""

    @app.errorhandler(GalleryError)
    def gallery_error(error: GalleryError):
        return jsonify(error.to_dict()), error.http_status

    @app.errorhandler(StorageError)
    def storage_error(error: StorageError):
        logger.error("State could not be persisted: %s", error)
        return jsonify({"error": "storage_error", "message": "State could not be persisted"}), 500

    @app.errorhandler(HTTPException)
    def http_error(error: HTTPException):
        code = (error.name or "error").lower().replace(" ", "_")
        return jsonify({"error": code, "message": error.description}), error.code

    @app.errorhandler(500)
    def internal_error(error):
        return jsonify({"error": "internal_error", "message": "Internal server error"}), 500


def create_app(node=None) -> Flask:
    """
    Build the Flask app for a gallery node.

    Args:
        node: GalleryNode to serve; defaults to GalleryNode.from_env() with state loaded
    """
    if node is None:
        from node import GalleryNode

        node = GalleryNode.from_env()
        node.load()

    app = Flask(__name__)
    app.config["JSON_SORT_KEYS"] = False
    app.config["GALLERY_NODE"] = node
    app.config["API_KEY"] = node.config.api_key
    app.config["REQUIRE_AUTH"] = node.config.require_auth

    setup_request_logging(app)
    register_blueprints(app)
    register_error_handlers(app)
    return app
