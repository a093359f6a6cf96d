"""
11+ Bootcamp Misconception Service — Flask Web Application

JSON API for answer diagnosis, explanation caching and queueing,
misconception pattern analysis, and adaptive practice selection.
"""

from __future__ import annotations

import os
from typing import Any

from flask import Flask, Response, jsonify
from flask_compress import Compress
from werkzeug.exceptions import HTTPException

import database
from blueprints import register_blueprints
from cache_backend import init_cache
from config import config_by_name
from extensions import limiter
from logging_config import init_logging


def create_app(test_config: dict[str, Any] | None = None) -> Flask:
    app = Flask(__name__)

    # Load config; test_config overrides the testing defaults
    if test_config is not None:
        app.config.from_object(config_by_name["testing"])
        app.config.update(test_config)
    else:
        env = os.environ.get("FLASK_ENV", "development")
        cfg = config_by_name.get(env, config_by_name["development"])
        app.config.from_object(cfg)
        if hasattr(cfg, "validate"):
            cfg.validate()

    app.secret_key = app.config["SECRET_KEY"]

    # Response compression
    Compress(app)

    # Cache backend (Redis or in-memory fallback)
    init_cache(app)

    # Structured logging
    init_logging(app)

    # Register database teardown and lazy schema init
    database.init_app(app)

    # Rate limiter
    limiter.init_app(app)

    register_blueprints(app)

    @app.errorhandler(HTTPException)
    def json_http_error(exc: HTTPException):
        return jsonify({"error": exc.description or exc.name}), exc.code

    # Security headers
    @app.after_request
    def set_security_headers(response: Response) -> Response:
        response.headers["X-Content-Type-Options"] = "nosniff"
        response.headers["X-Frame-Options"] = "DENY"
        response.headers["Referrer-Policy"] = "no-referrer"
        response.headers["Cache-Control"] = "no-store"
        if not app.debug:
            response.headers["Strict-Transport-Security"] = "max-age=31536000; includeSubDomains"
        return response

    # Background jobs; serverless deployments use the cron endpoints instead
    if not app.config.get("TESTING") and app.config["FEATURE_FLAGS"].get("scheduler"):
        from scheduler import init_scheduler
        init_scheduler(app)

    return app


if __name__ == "__main__":
    create_app().run(debug=True, port=5001)
