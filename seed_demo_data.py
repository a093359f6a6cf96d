"""
Seed Demo Data — Standalone script and pytest fixture.

Creates a small 11+ question bank (4 topics x 3 difficulties, each with
diagnostic A-D options) and two demo students with contrasting response
histories: one with a persistent fractions misconception, one strong
all-rounder.

Usage:
    python seed_demo_data.py           # Seed into the configured database
    python seed_demo_data.py --reset   # Clear demo data first
"""

from __future__ import annotations

import sys
from datetime import datetime, timedelta

from db_stores import AnswerOptionStoreDB, QuestionStoreDB, StudentResponseStoreDB

# topic -> (misconception codes used by its wrong options, module)
TOPICS = {
    "fractions": (["FR1", "FR2", "FR3"], "NUMBER"),
    "place_value": (["PV1", "PV2", "PV3"], "NUMBER"),
    "algebra": (["AL1", "AL2", "AL3"], "ALGEBRA"),
    "ratio": (["FR1", "RA1", "RA2"], "RATIO"),
}
DIFFICULTIES = ["foundation", "intermediate", "advanced"]

DEMO_STUDENTS = ["demo-ava", "demo-ben"]


def demo_question_id(topic: str, difficulty: str) -> str:
    return f"demo-{topic}-{difficulty}"


def build_question_bank() -> list[tuple[dict, list[dict]]]:
    """Questions with option B correct and A, C, D tagged with misconceptions."""
    bank = []
    for topic, (codes, module) in TOPICS.items():
        for level, difficulty in enumerate(DIFFICULTIES, start=1):
            qid = demo_question_id(topic, difficulty)
            correct_value = str(10 * level + len(topic))
            question = {
                "question_id": qid,
                "topic_id": topic,
                "subtopic": f"{topic}_core",
                "module_id": module,
                "difficulty": difficulty,
                "cognitive_level": "application",
                "question_category": "arithmetic",
                "question_text": f"Demo {difficulty} {topic.replace('_', ' ')} question",
                "correct_answer": correct_value,
                "marks": level,
                "time_seconds": 45 + 15 * level,
                "prerequisite_skills": [topic],
            }
            wrong_values = [str(int(correct_value) + d) for d in (-1, 1, 10)]
            options = [
                {"option_letter": "A", "answer_value": wrong_values[0], "is_correct": False,
                 "misconception_code": codes[0], "detection_confidence": 0.9,
                 "diagnostic_feedback": f"Check the {codes[0]} step again."},
                {"option_letter": "B", "answer_value": correct_value, "is_correct": True,
                 "misconception_code": None, "diagnostic_feedback": "Correct! Well done."},
                {"option_letter": "C", "answer_value": wrong_values[1], "is_correct": False,
                 "misconception_code": codes[1], "detection_confidence": 0.8,
                 "diagnostic_feedback": f"Check the {codes[1]} step again."},
                {"option_letter": "D", "answer_value": wrong_values[2], "is_correct": False,
                 "misconception_code": codes[2], "detection_confidence": 0.7,
                 "diagnostic_feedback": f"Check the {codes[2]} step again."},
            ]
            bank.append((question, options))
    return bank


def _history(student_id: str) -> list[tuple[str, str, int, float]]:
    """(question_id, option_letter, days_ago, confidence) tuples."""
    rows: list[tuple[str, str, int, float]] = []
    if student_id == "demo-ava":
        # FR1 twelve times across fractions and ratio, all over a week ago
        for i in range(12):
            topic = "fractions" if i % 2 == 0 else "ratio"
            rows.append((demo_question_id(topic, DIFFICULTIES[i % 3]), "A", 8 + i, 0.8))
        for i in range(4):
            rows.append((demo_question_id("place_value", DIFFICULTIES[i % 3]), "B", 10 + i, 0.6))
        for i in range(3):
            rows.append((demo_question_id("algebra", "foundation"), "C", 9 + i, 0.7))
    else:
        for i, topic in enumerate(TOPICS):
            for j, difficulty in enumerate(DIFFICULTIES):
                rows.append((demo_question_id(topic, difficulty), "B", 8 + i + j, 0.9))
    return rows


def seed() -> dict:
    """Seed demo data. Needs an app context. Returns summary dict."""
    questions = QuestionStoreDB()
    options = AnswerOptionStoreDB()
    bank = build_question_bank()
    for question, question_options in bank:
        questions.upsert(question)
        options.upsert_options(question["question_id"], question_options)

    values = {
        q["question_id"]: {o["option_letter"]: o for o in opts} for q, opts in bank
    }
    now = datetime.now()
    response_count = 0
    for student_id in DEMO_STUDENTS:
        store = StudentResponseStoreDB(student_id)
        for qid, letter, days_ago, confidence in _history(student_id):
            option = values[qid][letter]
            store.record(
                qid,
                option["answer_value"],
                option["is_correct"],
                misconception_detected=option["misconception_code"],
                confidence_rating=confidence,
                time_taken=40,
                session_id=f"{student_id}-seed",
                responded_at=(now - timedelta(days=days_ago)).isoformat(),
            )
            response_count += 1

    return {
        "questions": len(bank),
        "students": len(DEMO_STUDENTS),
        "responses": response_count,
    }


def clear_demo(db) -> None:
    """Remove all demo data."""
    student_marks = ",".join("?" * len(DEMO_STUDENTS))
    for table in ("student_responses", "misconception_queue", "misconception_patterns"):
        db.execute(f"DELETE FROM {table} WHERE student_id IN ({student_marks})", DEMO_STUDENTS)
    db.execute("DELETE FROM answer_options WHERE question_id LIKE 'demo-%'")
    db.execute("DELETE FROM questions WHERE question_id LIKE 'demo-%'")
    db.execute("DELETE FROM explanation_cache WHERE cache_key LIKE 'demo-%'")
    db.commit()


if __name__ == "__main__":
    from app import create_app
    from database import ensure_initialized, get_db

    app = create_app()
    with app.app_context():
        ensure_initialized(app)
        if "--reset" in sys.argv:
            clear_demo(get_db())
            print("[Seed] Demo data cleared.")
        result = seed()
        print(f"[Seed] Done: {result}")
