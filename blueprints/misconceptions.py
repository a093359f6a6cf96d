"""Misconception routes — detection, responses, queue, patterns, explanations."""

from __future__ import annotations

import logging

from flask import Blueprint, abort, current_app, jsonify

from agents.explainer_agent import FALLBACK_EXPLANATION, ExplainerAgent
from db_stores import MisconceptionQueueDB
from extensions import limiter
from helpers import api_key_required, feature_enabled, json_body, missing_fields
from misconception_detection import detect_misconception, record_response
from pattern_analyzer import DEFAULT_THRESHOLD, analyze_student_misconceptions
from queue_processor import process_queue

logger = logging.getLogger(__name__)

bp = Blueprint("misconceptions", __name__)


def _optional_str(value) -> str | None:
    return None if value is None else str(value)


@bp.route("/api/misconceptions/detect", methods=["POST"])
@api_key_required
def api_detect():
    data = json_body()
    missing = missing_fields(data, "student_id", "question_id", "selected_answer")
    if missing:
        return jsonify({"error": f"Missing required fields: {', '.join(missing)}"}), 400

    result = detect_misconception(
        str(data["student_id"]),
        str(data["question_id"]),
        str(data["selected_answer"]),
        _optional_str(data.get("correct_answer")),
    )
    return jsonify(result.to_dict())


@bp.route("/api/responses", methods=["POST"])
@api_key_required
def api_record_response():
    data = json_body()
    missing = missing_fields(data, "student_id", "question_id", "selected_answer")
    if missing:
        return jsonify({"error": f"Missing required fields: {', '.join(missing)}"}), 400

    confidence = data.get("confidence_rating")
    try:
        confidence = None if confidence is None else float(confidence)
        time_taken = int(data.get("time_taken", 0))
    except (TypeError, ValueError):
        return jsonify({"error": "confidence_rating and time_taken must be numeric"}), 400
    if confidence is not None and not 0.0 <= confidence <= 1.0:
        return jsonify({"error": "confidence_rating must be between 0 and 1"}), 400

    try:
        result = record_response(
            str(data["student_id"]),
            str(data["question_id"]),
            str(data["selected_answer"]),
            confidence_rating=confidence,
            time_taken=time_taken,
            session_id=str(data.get("session_id", "")),
            correct_answer=_optional_str(data.get("correct_answer")),
        )
    except Exception as e:
        logger.error("Recording response failed: %s", e, exc_info=True)
        return jsonify({"error": "Could not record response."}), 500
    return jsonify(result), 201


@bp.route("/api/misconceptions/queue/process", methods=["POST"])
@api_key_required
def api_process_queue():
    try:
        return jsonify(process_queue(current_app.config))
    except Exception as e:
        logger.error("Queue processing failed: %s", e, exc_info=True)
        return jsonify({"success": False, "error": "Queue processing failed."}), 500


@bp.route("/api/misconceptions/queue/stats")
@api_key_required
def api_queue_stats():
    if not feature_enabled("queue_monitor"):
        abort(404)
    return jsonify(MisconceptionQueueDB().stats())


@bp.route("/api/misconceptions/patterns", methods=["POST"])
@api_key_required
def api_analyze_patterns():
    data = json_body()
    if missing_fields(data, "student_id"):
        return jsonify({"error": "student_id is required"}), 400
    try:
        threshold = int(data.get("threshold", DEFAULT_THRESHOLD))
    except (TypeError, ValueError):
        return jsonify({"error": "threshold must be an integer"}), 400
    if threshold < 1:
        return jsonify({"error": "threshold must be at least 1"}), 400

    try:
        return jsonify(analyze_student_misconceptions(str(data["student_id"]), threshold))
    except Exception as e:
        logger.error("Pattern analysis failed: %s", e, exc_info=True)
        return jsonify({"error": "Pattern analysis failed."}), 500


@bp.route("/api/misconceptions/explain", methods=["POST"])
@api_key_required
@limiter.limit("30 per minute")
def api_explain():
    """Explain one mistake, one misconception, one weak topic, or a whole student's history."""
    data = json_body()
    agent = ExplainerAgent(current_app.config)

    if data.get("question") is not None or data.get("student_answer") is not None:
        missing = missing_fields(data, "question", "student_answer", "correct_answer")
        if missing:
            return jsonify({"error": f"Missing required fields: {', '.join(missing)}",
                            "explanation": FALLBACK_EXPLANATION}), 400
        response = agent.explain_mistake(
            str(data["question"]),
            str(data["student_answer"]),
            str(data["correct_answer"]),
            misconception=str(data.get("misconception") or ""),
            topic=str(data.get("topic") or ""),
        )
    elif data.get("misconception"):
        topics = data.get("topics") or []
        if not isinstance(topics, list):
            topics = [str(topics)]
        response = agent.explain_concept(str(data["misconception"]), [str(t) for t in topics])
    elif data.get("student_id") and data.get("topic"):
        response = agent.explain_focus_area(str(data["student_id"]), str(data["topic"]))
    elif data.get("student_id"):
        response = agent.explain_student(str(data["student_id"]))
    else:
        return jsonify({"error": "Provide student_id, misconception, or a question mistake",
                        "explanation": FALLBACK_EXPLANATION}), 400

    if response.failed:
        return jsonify({"error": "Could not generate an explanation right now.",
                        "explanation": response.content}), 500

    body = {"explanation": response.content, "apiUsed": response.metadata.get("api_used")}
    if "misconceptions" in response.metadata:
        body["misconceptions"] = response.metadata["misconceptions"]
    if "focus_area" in response.metadata:
        body["focusAreaData"] = response.metadata["focus_area"]
    return jsonify(body)
