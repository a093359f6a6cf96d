"""Practice routes — adaptive question selection and topic recommendations."""

from __future__ import annotations

import logging

from flask import Blueprint, jsonify

from adaptive import (
    get_confidence_weighted_questions,
    get_extra_practice_candidates,
    get_skip_ahead_candidates,
)
from helpers import api_key_required, json_body, missing_fields

logger = logging.getLogger(__name__)

bp = Blueprint("practice", __name__)


@bp.route("/api/practice/weighted-questions", methods=["POST"])
@api_key_required
def api_weighted_questions():
    data = json_body()
    if missing_fields(data, "student_id"):
        return jsonify({"error": "student_id is required"}), 400
    try:
        count = int(data.get("count", 10))
        confidence_threshold = float(data.get("confidence_threshold", 0.6))
        accuracy_threshold = float(data.get("accuracy_threshold", 0.7))
    except (TypeError, ValueError):
        return jsonify({"error": "count and thresholds must be numeric"}), 400
    if count < 1:
        return jsonify({"error": "count must be at least 1"}), 400

    try:
        result = get_confidence_weighted_questions(
            str(data["student_id"]),
            topic_id=data.get("topic_id") or None,
            count=count,
            confidence_threshold=confidence_threshold,
            accuracy_threshold=accuracy_threshold,
        )
    except Exception as e:
        logger.error("Weighted question selection failed: %s", e, exc_info=True)
        return jsonify({"error": "Could not select questions.", "questions": []}), 500
    return jsonify(result)


@bp.route("/api/practice/<student_id>/skip-ahead")
@api_key_required
def api_skip_ahead(student_id: str):
    return jsonify({"student_id": student_id, "topics": get_skip_ahead_candidates(student_id)})


@bp.route("/api/practice/<student_id>/extra-practice")
@api_key_required
def api_extra_practice(student_id: str):
    return jsonify({"student_id": student_id, "topics": get_extra_practice_candidates(student_id)})
