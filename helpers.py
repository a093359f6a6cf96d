"""
Shared helpers used across blueprints.
"""

from __future__ import annotations

import hmac
from collections.abc import Callable
from functools import wraps
from typing import Any

from flask import current_app, jsonify, request


def _bearer_matches(expected: str) -> bool:
    if not expected:
        return False
    supplied = request.headers.get("Authorization", "")
    return hmac.compare_digest(supplied, f"Bearer {expected}")


def verify_cron_secret() -> bool:
    """Verify the request carries a valid CRON_SECRET header."""
    return _bearer_matches(current_app.config.get("CRON_SECRET", ""))


def api_key_required(f: Callable) -> Callable:
    """Require `Authorization: Bearer <SERVICE_API_KEY>`."""
    @wraps(f)
    def decorated(*args: Any, **kwargs: Any) -> Any:
        if not _bearer_matches(current_app.config.get("SERVICE_API_KEY", "")):
            return jsonify({"error": "Unauthorized"}), 401
        return f(*args, **kwargs)
    return decorated


def cron_secret_required(f: Callable) -> Callable:
    @wraps(f)
    def decorated(*args: Any, **kwargs: Any) -> Any:
        if not verify_cron_secret():
            return jsonify({"error": "Unauthorized"}), 401
        return f(*args, **kwargs)
    return decorated


def json_body() -> dict:
    """Request JSON as a dict; anything else (missing, malformed, a list) is {}."""
    data = request.get_json(silent=True)
    return data if isinstance(data, dict) else {}


def missing_fields(data: dict, *names: str) -> list[str]:
    return [n for n in names if data.get(n) in (None, "")]


def feature_enabled(name: str) -> bool:
    return bool(current_app.config.get("FEATURE_FLAGS", {}).get(name, False))
