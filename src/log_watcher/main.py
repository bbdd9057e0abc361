"""
Log Watcher - health and introspection API
Serves liveness, per-watcher state and component statistics
"""
from datetime import datetime

from flask import Flask, jsonify, request

from log_watcher import __version__


def create_app(scheduler, dispatcher, notifier, dry_run: bool = False) -> Flask:
    """Build the Flask app around the running engine components"""
    app = Flask(__name__)

    @app.route("/health", methods=["GET"])
    def health():
        """Health check endpoint"""
        return jsonify({
            "status": "healthy",
            "timestamp": datetime.now().isoformat(),
            "dry_run": dry_run,
            "version": __version__,
            "watchers": scheduler.get_stats()["watchers"]
        }), 200

    @app.route("/watchers", methods=["GET"])
    def get_watchers():
        """Per-watcher scheduler state"""
        phase = request.args.get("phase")
        watchers = scheduler.snapshot()
        if phase:
            watchers = [w for w in watchers if w["phase"].lower() == phase.lower()]
        return jsonify({
            "watchers": watchers,
            "total": len(watchers)
        }), 200

    @app.route("/stats", methods=["GET"])
    def get_stats():
        """Get comprehensive statistics"""
        return jsonify({
            "scheduler": scheduler.get_stats(),
            "remediator": dispatcher.get_stats(),
            "notifier": notifier.get_stats()
        }), 200

    return app
