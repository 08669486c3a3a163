"""
Flask REST API for visitor-id.

Provides endpoints for visitor identification, device history,
per-user statistics, device comparison and match log summaries.
"""

from __future__ import annotations

import time

from flask import Flask, jsonify, request
from werkzeug.exceptions import HTTPException

from ..config import Settings
from ..errors import ValidationError
from ..identity.resolver import IdentityResolver
from ..log import get_logger
from ..matching import SimilarityScorer
from ..payload import fingerprint_from_payload, validate_identify_request
from ..store import create_store

logger = get_logger(__name__)


def create_app(
    resolver: IdentityResolver | None = None,
    settings: Settings | None = None,
) -> Flask:
    """Create and configure the Flask application."""

    app = Flask(__name__)

    cfg = settings or Settings.load()
    if resolver is None:
        resolver = IdentityResolver(
            store=create_store(cfg.database_url),
            scorer=SimilarityScorer(cfg.matcher),
            candidate_limit=cfg.candidate_limit,
        )
    prefix = cfg.api_prefix.rstrip("/")
    app.config["RESOLVER"] = resolver

    def fail(status: int, error: str, message: str = ""):
        body = {"success": False, "error": error}
        if message:
            body["message"] = message
        return jsonify(body), status

    @app.errorhandler(ValidationError)
    def handle_validation(exc: ValidationError):
        return fail(400, "Invalid request", str(exc))

    @app.errorhandler(Exception)
    def handle_unexpected(exc: Exception):
        if isinstance(exc, HTTPException):
            return fail(exc.code or 500, exc.name)
        logger.error(f"{request.method} {request.path} failed: {exc}")
        return fail(500, "Internal server error", str(exc))

    @app.route("/health", methods=["GET"])
    def health():
        if not resolver.store.ping():
            return jsonify({"success": False, "status": "unhealthy", "timestamp": time.time()}), 503
        return jsonify({"success": True, "status": "healthy", "timestamp": time.time()})

    # --- Identification ---

    @app.route(f"{prefix}/identify", methods=["POST"])
    def identify():
        client_token, device_info = validate_identify_request(request.get_json(silent=True))
        fingerprint = fingerprint_from_payload(device_info, ip_address=_client_ip())
        result = resolver.identify(client_token, fingerprint, raw=device_info)
        return jsonify({"success": True, "data": result.to_dict()})

    # --- Users ---

    @app.route(f"{prefix}/users/<identity_id>/device-history", methods=["GET"])
    def device_history(identity_id: str):
        result = resolver.device_history(
            identity_id,
            page=request.args.get("page", 1),
            per_page=request.args.get("per_page", 50),
            change_type=request.args.get("change_type"),
        )
        return jsonify({
            "success": True,
            "data": result["data"],
            "pagination": result["pagination"],
        })

    @app.route(f"{prefix}/users/<identity_id>/statistics", methods=["GET"])
    def user_statistics(identity_id: str):
        stats = resolver.user_statistics(identity_id)
        if stats is None:
            return fail(404, "User not found")
        return jsonify({"success": True, "data": stats})

    # --- Devices ---

    @app.route(f"{prefix}/devices/compare", methods=["POST"])
    def compare_devices():
        data = request.get_json(silent=True) or {}
        session_1 = data.get("session_id_1")
        session_2 = data.get("session_id_2")
        if not session_1 or not session_2:
            raise ValidationError("session_id_1 and session_id_2 are required")
        comparison = resolver.compare_sessions(session_1, session_2)
        if comparison is None:
            return fail(404, "Device profile not found")
        return jsonify({"success": True, "data": comparison})

    # --- Match log ---

    @app.route(f"{prefix}/matching/summary", methods=["GET"])
    def matching_summary():
        limit = request.args.get("limit", type=int)
        return jsonify({"success": True, "data": resolver.match_summary(limit)})

    return app


def _client_ip() -> str | None:
    forwarded = request.headers.get("X-Forwarded-For", "")
    if forwarded:
        return forwarded.split(",")[0].strip() or None
    return request.remote_addr
