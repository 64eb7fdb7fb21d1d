"""Flask status API for sync sessions."""

import logging
from typing import Any

from flask import Flask, jsonify, request

from recordsync.daemon import SyncDaemon
from recordsync.domain.errors import InvalidTransitionError, SessionNotFoundError

logger = logging.getLogger(__name__)


def create_app(daemon: SyncDaemon) -> Flask:
    """Create Flask application.

    Args:
        daemon: Sync daemon instance

    Returns:
        Flask application
    """
    app = Flask(__name__)
    app.config["DAEMON"] = daemon
    orchestrator = daemon.orchestrator

    @app.route("/api/sessions", methods=["GET"])
    def list_sessions() -> Any:
        """List recent sessions, newest first."""
        limit = request.args.get("limit", 50, type=int)
        sessions = orchestrator.tracker.list_sessions(limit)
        return jsonify({"sessions": [session.to_dict() for session in sessions]})

    @app.route("/api/sessions/<session_id>", methods=["GET"])
    def get_session(session_id: str) -> Any:
        """Session status with its batches."""
        try:
            return jsonify(orchestrator.get_sync_status(session_id))
        except SessionNotFoundError as e:
            return jsonify({"error": e.to_dict()}), 404

    @app.route("/api/sessions/<session_id>/cancel", methods=["POST"])
    def cancel_session(session_id: str) -> Any:
        """Cancel a running session at its next batch boundary."""
        body = request.get_json(silent=True) or {}
        try:
            session = orchestrator.cancel_sync(session_id, body.get("reason"))
        except SessionNotFoundError as e:
            return jsonify({"error": e.to_dict()}), 404
        except InvalidTransitionError as e:
            return jsonify({"error": e.to_dict()}), 409
        logger.info(f"Session {session_id} cancelled via API")
        return jsonify(session)

    @app.route("/api/sync", methods=["POST"])
    def trigger_sync() -> Any:
        """Trigger a sync; ``?background=1`` queues it and returns the session id."""
        if request.args.get("background", type=int):
            session_id = app.config["DAEMON"].sync_in_background()
            return jsonify({"session_id": session_id, "status": "queued"}), 202
        result = app.config["DAEMON"].sync_now()
        return jsonify(result), 500 if "error" in result else 200

    @app.route("/api/health", methods=["GET"])
    def health() -> Any:
        """Source and target health."""
        status = app.config["DAEMON"].check_health()
        code = 200 if status["overall"]["status"] == "healthy" else 503
        return jsonify(status), code

    @app.errorhandler(404)
    def not_found(error: Exception) -> Any:
        """Handle 404 errors.

        Args:
            error: Exception

        Returns:
            Error response
        """
        return jsonify({"error": "Not found"}), 404

    @app.errorhandler(500)
    def internal_error(error: Exception) -> Any:
        """Handle 500 errors.

        Args:
            error: Exception

        Returns:
            Error response
        """
        logger.error(f"Internal server error: {error}")
        return jsonify({"error": "Internal server error"}), 500

    return app
