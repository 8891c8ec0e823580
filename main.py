from flask import Flask, jsonify
from flask_compress import Compress
import os
import logging

from config import QUIZ_ESCROW_CONFIG, is_unsettled_mode
from quiz_escrow import init_quiz_escrow

# Configure logging
logging.basicConfig(level=os.environ.get('LOG_LEVEL', 'INFO'))
logger = logging.getLogger(__name__)

# Reduce werkzeug logging for health checks
logging.getLogger('werkzeug').setLevel(logging.ERROR)
logging.getLogger('httpx').setLevel(logging.ERROR)  # Supabase client
logging.getLogger('urllib3').setLevel(logging.WARNING)


def create_app(services=None):
    app = Flask(__name__)
    app.secret_key = os.environ.get('SECRET_KEY', 'your-secret-key-here')

    # Enable gzip compression
    compress = Compress()
    compress.init_app(app)

    init_quiz_escrow(app, services)

    @app.route("/health")
    def health_check():
        """Health check endpoint for deployment"""
        return jsonify({
            "status": "healthy",
            "service": "Quiz Escrow",
            "chain_id": QUIZ_ESCROW_CONFIG['CHAIN_ID'],
            "unsettled_mode": is_unsettled_mode(),
        }), 200

    return app


# Module level app (required for gunicorn)
app = create_app()


if __name__ == "__main__":
    logger.info("🚀 Starting Quiz Escrow service...")

    port = int(os.environ.get("PORT", 5000))
    logger.info(f"🌐 Starting Flask server on http://0.0.0.0:{port}")

    # Threaded mode; the quiz escrow core runs on its own event loop thread
    app.run(host="0.0.0.0", port=port, debug=False, threaded=True, use_reloader=False)
