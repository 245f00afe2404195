from flask import Flask, jsonify, request

from request_telemetry.aggregator import LogAggregator
from request_telemetry.config import TelemetryConfig
from request_telemetry.middleware import TelemetryMiddleware
from request_telemetry.trace import current_trace_id


def create_app(aggregator: LogAggregator, config: TelemetryConfig | None = None) -> Flask:
    """Flask application factory with request telemetry installed."""
    config = config or TelemetryConfig()
    app = Flask(__name__)

    app.wsgi_app = TelemetryMiddleware(
        app.wsgi_app,
        aggregator,
        redact_paths=config.redact_paths,
        max_body_bytes=config.max_body_bytes,
    )

    # Store components on app for access in tests
    app.config["components"] = {
        "config": config,
        "aggregator": aggregator,
    }

    # --- Routes ---

    @app.route("/health")
    def health():
        return jsonify({
            "status": "healthy",
            "pending_entries": aggregator.pending_count,
        })

    @app.route("/stats")
    def stats():
        return jsonify(aggregator.metrics.snapshot())

    @app.route("/api/trace")
    def trace():
        return jsonify({"trace_id": current_trace_id()})

    @app.route("/api/echo", methods=["POST"])
    def echo():
        data = request.get_json(force=True, silent=True)
        if data is None:
            return jsonify({"success": False, "message": "bad request"}), 400
        return jsonify({"success": True, "data": data}), 201

    return app
