"""
Flask monitoring surface for the crawler.
Read-only JSON views over the crawl state.
"""

from flask import Flask, jsonify

from crawler.core import setup_logger
from monitoring.stats import collect_stats

logger = setup_logger("crawler.monitoring")


def create_app(storage, categories=None):
    app = Flask(__name__)

    @app.teardown_appcontext
    def release_connection(exc):
        # A request thread's connection ends with its request.
        storage.close_thread()

    # ============================================================
    # HEALTH
    # ============================================================

    @app.route('/health')
    def health():
        try:
            storage.queue.counts()
        except Exception as e:
            logger.error(f"[MONITOR] Health check failed: {e}")
            return jsonify({"status": "error", "error": str(e)}), 503
        return jsonify({"status": "ok"})

    # ============================================================
    # STATS
    # ============================================================

    @app.route('/stats')
    @app.route('/api/stats')
    def stats():
        """JSON crawl statistics"""
        return jsonify(collect_stats(storage, categories))

    # ============================================================
    # ERROR HANDLERS
    # ============================================================

    @app.errorhandler(404)
    def not_found(error):
        return jsonify({"error": "not found"}), 404

    @app.errorhandler(500)
    def server_error(error):
        return jsonify({"error": "internal server error"}), 500

    return app
