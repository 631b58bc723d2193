"""Flask app for the Spec Builder JSON API.

Serves the ``/api`` blueprint: dev-mode users, lookups, Shopify product
listings and per-user specifications.
"""

from pathlib import Path
from typing import Any, Dict, Optional

from dotenv import load_dotenv
from flask import Flask, Response, jsonify

# Load environment variables from .env file (explicitly specify path)
env_path = Path(__file__).parent.parent / ".env"
load_dotenv(dotenv_path=env_path)

from specbuilder import __version__
from specbuilder.db import ConnectionTracker, init_db
from specbuilder.logging_config import setup_logging

from .api import api
from .config import DB_PATH, FLASK_DEBUG, FLASK_HOST, FLASK_PORT

__all__ = ["create_app", "app"]


def create_app(config: Optional[Dict[str, Any]] = None) -> Flask:
    """Build the Flask app.

    Args:
        config: Overrides for ``app.config``. Recognized keys: ``DB_PATH``,
            ``SHOPIFY_CLIENT`` (a ``ShopifyClient``-like object; created from
            the environment when unset), ``TESTING``.
    """
    app = Flask(__name__)
    app.config.update(DB_PATH=DB_PATH, SHOPIFY_CLIENT=None)
    if config:
        app.config.update(config)

    app.extensions["connection_tracker"] = ConnectionTracker()
    app.register_blueprint(api)

    @app.route("/", methods=["GET"])
    def index() -> Response:
        return jsonify({"name": "spec-builder", "version": __version__, "api": "/api"})

    return app


app = create_app()


if __name__ == "__main__":
    setup_logging()
    init_db(app.config["DB_PATH"])
    app.run(host=FLASK_HOST, port=FLASK_PORT, debug=FLASK_DEBUG)
