"""Core routes — health checks and cron endpoints."""

from __future__ import annotations

import logging
import time

from flask import Blueprint, current_app, jsonify

from database import get_db
from db_stores import ExplanationCacheDB
from helpers import cron_secret_required
from queue_processor import process_queue

logger = logging.getLogger(__name__)

bp = Blueprint("core", __name__)

_start_time = time.time()


@bp.route("/health")
def health():
    uptime = int(time.time() - _start_time)
    return jsonify({"status": "ok", "uptime_seconds": uptime})


@bp.route("/ready")
def ready():
    try:
        get_db().execute("SELECT 1").fetchone()
        return jsonify({"status": "ready"}), 200
    except Exception as exc:
        logger.error("Readiness check failed: %s", exc, exc_info=True)
        return jsonify({"status": "not_ready"}), 503


@bp.route("/live")
def live():
    return jsonify({"status": "alive"}), 200


# ── Cron Endpoints ────────────────────────────────────────
# For deployments without the in-process scheduler. Authenticated via CRON_SECRET.

@bp.route("/api/cron/process-misconception-queue", methods=["GET", "POST"])
@cron_secret_required
def cron_process_queue():
    try:
        return jsonify(process_queue(current_app.config))
    except Exception as e:
        logger.error("Cron process-misconception-queue failed: %s", e, exc_info=True)
        return jsonify({"success": False, "error": "Cron job failed."}), 500


@bp.route("/api/cron/evict-explanation-cache", methods=["GET", "POST"])
@cron_secret_required
def cron_evict_explanation_cache():
    try:
        removed = ExplanationCacheDB().evict_stale(current_app.config.get("EXPLANATION_CACHE_TTL_DAYS", 30))
        return jsonify({"status": "ok", "job": "evict-explanation-cache", "evicted": removed})
    except Exception as e:
        logger.error("Cron evict-explanation-cache failed: %s", e, exc_info=True)
        return jsonify({"error": "Cron job failed."}), 500
