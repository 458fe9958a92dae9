"""
Monitoring and metrics API endpoints.

This blueprint provides:
- /metrics: Prometheus-compatible metrics endpoint
- /metrics/json: JSON format metrics
- /health: Basic health check
- /health/live: Liveness probe
"""

import time

from flask import Blueprint, Response, jsonify

from monitoring import metrics

from .utils import get_node

monitoring_bp = Blueprint("monitoring", __name__)

_startup_time = time.time()


def _update_dynamic_metrics() -> None:
    node = get_node()
    metrics.set_gauge("items", node.store.count())
    metrics.set_gauge("uptime_seconds", time.time() - _startup_time)


@monitoring_bp.route("/metrics", methods=["GET"])
def prometheus_metrics():
    _update_dynamic_metrics()
    return Response(metrics.to_prometheus(), mimetype="text/plain; charset=utf-8")


@monitoring_bp.route("/metrics/json", methods=["GET"])
def json_metrics():
    _update_dynamic_metrics()
    return jsonify(metrics.get_all())


@monitoring_bp.route("/health", methods=["GET"])
def health():
    payload = get_node().health()
    payload["service"] = "SealedGallery API"
    payload["uptime_seconds"] = round(time.time() - _startup_time, 2)
    return jsonify(payload)


@monitoring_bp.route("/health/live", methods=["GET"])
def liveness():
    return jsonify({"status": "alive"})
