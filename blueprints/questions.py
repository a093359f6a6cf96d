"""Question bank routes — LLM question generation."""

from __future__ import annotations

from flask import Blueprint, abort, current_app, jsonify

from agents.question_gen_agent import QuestionGenAgent
from extensions import limiter
from helpers import api_key_required, feature_enabled, json_body, missing_fields

bp = Blueprint("questions", __name__)


@bp.route("/api/questions/generate", methods=["POST"])
@api_key_required
@limiter.limit("10 per hour")
def api_generate_questions():
    if not feature_enabled("question_generation"):
        abort(404)
    data = json_body()
    if missing_fields(data, "topic"):
        return jsonify({"success": False, "error": "topic is required"}), 400
    try:
        count = int(data.get("count", 5))
    except (TypeError, ValueError):
        return jsonify({"success": False, "error": "count must be an integer"}), 400

    response = QuestionGenAgent(current_app.config).generate(
        str(data["topic"]), str(data.get("difficulty", "intermediate")), count,
    )
    if response.failed:
        return jsonify({"success": False, "error": response.content}), 500
    return jsonify({
        "success": True,
        "generated": response.metadata["generated"],
        "imported": response.metadata["imported"],
        "question_ids": response.metadata["question_ids"],
        "apiUsed": response.metadata["api_used"],
        "message": response.content,
    })
