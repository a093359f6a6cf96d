"""
DB-backed store classes for the bootcamp misconception service.

Each class wraps one table (or one read model over the response history)
and speaks the sqlite3 call style; pg_compat.py makes the same calls work
against PostgreSQL.
"""

from __future__ import annotations

import json
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Optional

from database import get_db


def _now() -> str:
    return datetime.now().isoformat()


def _days_ago(days: int) -> str:
    return (datetime.now() - timedelta(days=days)).isoformat()


# ── Question bank ────────────────────────────────────────────────────


class QuestionStoreDB:
    """Question reference data."""

    def get(self, question_id: str) -> Optional[dict]:
        db = get_db()
        row = db.execute(
            "SELECT * FROM questions WHERE question_id = ?", (question_id,)
        ).fetchone()
        return dict(row) if row else None

    def upsert(self, question: dict) -> None:
        db = get_db()
        db.execute(
            "INSERT INTO questions (question_id, topic_id, subtopic, module_id, difficulty, "
            "cognitive_level, question_category, question_text, correct_answer, marks, "
            "time_seconds, prerequisite_skills, created_at) "
            "VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?) "
            "ON CONFLICT(question_id) DO UPDATE SET topic_id = excluded.topic_id, "
            "subtopic = excluded.subtopic, module_id = excluded.module_id, "
            "difficulty = excluded.difficulty, cognitive_level = excluded.cognitive_level, "
            "question_category = excluded.question_category, "
            "question_text = excluded.question_text, correct_answer = excluded.correct_answer, "
            "marks = excluded.marks, time_seconds = excluded.time_seconds, "
            "prerequisite_skills = excluded.prerequisite_skills",
            (
                question["question_id"],
                question["topic_id"],
                question.get("subtopic", ""),
                question.get("module_id", ""),
                question.get("difficulty", "intermediate"),
                question.get("cognitive_level", "application"),
                question.get("question_category", "arithmetic"),
                question.get("question_text", ""),
                question.get("correct_answer", ""),
                int(question.get("marks", 1)),
                int(question.get("time_seconds", 60)),
                json.dumps(question.get("prerequisite_skills", [])),
                _now(),
            ),
        )
        db.commit()

    def candidates(self, topic_id: str | None = None,
                   exclude_ids: set[str] | None = None, limit: int = 50) -> list[dict]:
        """Candidate questions for adaptive selection, oldest question_id first."""
        db = get_db()
        sql = ("SELECT question_id, topic_id, difficulty, cognitive_level, "
               "question_category, prerequisite_skills FROM questions")
        params: list = []
        clauses: list[str] = []
        if topic_id:
            clauses.append("topic_id = ?")
            params.append(topic_id)
        if exclude_ids:
            ordered = sorted(exclude_ids)
            clauses.append(f"question_id NOT IN ({', '.join('?' for _ in ordered)})")
            params.extend(ordered)
        if clauses:
            sql += " WHERE " + " AND ".join(clauses)
        sql += " ORDER BY question_id LIMIT ?"
        params.append(limit)
        rows = db.execute(sql, tuple(params)).fetchall()
        result = []
        for r in rows:
            item = dict(r)
            item["prerequisite_skills"] = json.loads(item.get("prerequisite_skills") or "[]")
            result.append(item)
        return result


class AnswerOptionStoreDB:
    """Answer options with diagnostic misconception tags."""

    def options_for(self, question_id: str) -> list[dict]:
        db = get_db()
        rows = db.execute(
            "SELECT * FROM answer_options WHERE question_id = ? ORDER BY option_letter",
            (question_id,),
        ).fetchall()
        options = []
        for r in rows:
            item = dict(r)
            item["is_correct"] = bool(item["is_correct"])
            item["pattern_rules"] = json.loads(item.get("pattern_rules") or "{}")
            options.append(item)
        return options

    def find_selected(self, question_id: str, selected_answer: str) -> Optional[dict]:
        """Match on the option's value first, then on its letter."""
        options = self.options_for(question_id)
        for opt in options:
            if opt["answer_value"] == selected_answer:
                return opt
        for opt in options:
            if opt["option_letter"].upper() == selected_answer.strip().upper():
                return opt
        return None

    def correct_answer(self, question_id: str) -> Optional[str]:
        for opt in self.options_for(question_id):
            if opt["is_correct"]:
                return opt["answer_value"]
        return None

    def upsert_options(self, question_id: str, options: list[dict]) -> None:
        db = get_db()
        for opt in options:
            db.execute(
                "INSERT INTO answer_options (question_id, option_letter, answer_value, is_correct, "
                "misconception_code, detection_confidence, pattern_rules, diagnostic_feedback) "
                "VALUES (?, ?, ?, ?, ?, ?, ?, ?) "
                "ON CONFLICT(question_id, option_letter) DO UPDATE SET "
                "answer_value = excluded.answer_value, is_correct = excluded.is_correct, "
                "misconception_code = excluded.misconception_code, "
                "detection_confidence = excluded.detection_confidence, "
                "pattern_rules = excluded.pattern_rules, "
                "diagnostic_feedback = excluded.diagnostic_feedback",
                (
                    question_id,
                    opt["option_letter"],
                    opt["answer_value"],
                    1 if opt.get("is_correct") else 0,
                    opt.get("misconception_code"),
                    float(opt.get("detection_confidence", 0.8)),
                    json.dumps(opt.get("pattern_rules", {})),
                    opt.get("diagnostic_feedback", ""),
                ),
            )
        db.commit()


# ── Response history ─────────────────────────────────────────────────


class StudentResponseStoreDB:
    """Append-only response history for one student."""

    def __init__(self, student_id: str):
        self.student_id = student_id

    def record(self, question_id: str, selected_answer: str, is_correct: bool,
               misconception_detected: str | None = None,
               confidence_rating: float | None = None,
               time_taken: int = 0, session_id: str = "",
               responded_at: str | None = None) -> int:
        db = get_db()
        cur = db.execute(
            "INSERT INTO student_responses (student_id, question_id, selected_answer, "
            "is_correct, confidence_rating, misconception_detected, time_taken, "
            "session_id, responded_at) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)",
            (self.student_id, question_id, selected_answer, 1 if is_correct else 0,
             confidence_rating, misconception_detected, int(time_taken), session_id,
             responded_at or _now()),
        )
        db.commit()
        return cur.lastrowid

    def recent(self, limit: int = 50, topic_id: str | None = None) -> list[dict]:
        """Most recent responses joined with their question's topic and difficulty."""
        db = get_db()
        sql = ("SELECT r.question_id, r.is_correct, r.confidence_rating, "
               "r.misconception_detected, r.time_taken, q.topic_id, q.difficulty, "
               "q.cognitive_level FROM student_responses r "
               "JOIN questions q ON q.question_id = r.question_id "
               "WHERE r.student_id = ?")
        params: list = [self.student_id]
        if topic_id:
            sql += " AND q.topic_id = ?"
            params.append(topic_id)
        sql += " ORDER BY r.responded_at DESC, r.id DESC LIMIT ?"
        params.append(limit)
        rows = db.execute(sql, tuple(params)).fetchall()
        result = []
        for r in rows:
            item = dict(r)
            item["is_correct"] = bool(item["is_correct"])
            result.append(item)
        return result

    def answered_since(self, days: int) -> set[str]:
        db = get_db()
        rows = db.execute(
            "SELECT DISTINCT question_id FROM student_responses "
            "WHERE student_id = ? AND responded_at >= ?",
            (self.student_id, _days_ago(days)),
        ).fetchall()
        return {r["question_id"] for r in rows}

    def misconception_frequencies(self) -> list[dict]:
        """Aggregate wrong answers by misconception code.

        Returns dicts of (misconception_code, frequency, topics, first_seen,
        last_seen), most frequent first.
        """
        db = get_db()
        rows = db.execute(
            "SELECT r.misconception_detected AS code, q.topic_id AS topic, r.responded_at "
            "FROM student_responses r "
            "LEFT JOIN questions q ON q.question_id = r.question_id "
            "WHERE r.student_id = ? AND r.is_correct = 0 "
            "AND r.misconception_detected IS NOT NULL AND r.misconception_detected != '' "
            "ORDER BY r.responded_at, r.id",
            (self.student_id,),
        ).fetchall()

        grouped: dict[str, dict] = {}
        for r in rows:
            entry = grouped.setdefault(r["code"], {
                "misconception_code": r["code"],
                "frequency": 0,
                "topics": set(),
                "first_seen": r["responded_at"],
                "last_seen": r["responded_at"],
            })
            entry["frequency"] += 1
            if r["topic"]:
                entry["topics"].add(r["topic"])
            entry["last_seen"] = r["responded_at"]

        result = []
        for entry in grouped.values():
            entry["topics"] = sorted(entry["topics"])
            result.append(entry)
        result.sort(key=lambda e: (-e["frequency"], e["misconception_code"]))
        return result

    def recent_wrong_in_topic(self, topic_id: str, limit: int = 5) -> list[dict]:
        """Latest wrong answers in one topic, newest first."""
        db = get_db()
        rows = db.execute(
            "SELECT r.question_id, r.selected_answer, r.misconception_detected, "
            "r.responded_at, q.subtopic FROM student_responses r "
            "JOIN questions q ON q.question_id = r.question_id "
            "WHERE r.student_id = ? AND q.topic_id = ? AND r.is_correct = 0 "
            "ORDER BY r.responded_at DESC, r.id DESC LIMIT ?",
            (self.student_id, topic_id, limit),
        ).fetchall()
        return [dict(r) for r in rows]

    def topic_accuracy(self) -> dict[str, dict]:
        """Per-topic totals and accuracy percentage across all responses."""
        db = get_db()
        rows = db.execute(
            "SELECT q.topic_id AS topic_id, COUNT(*) AS total, SUM(r.is_correct) AS correct "
            "FROM student_responses r JOIN questions q ON q.question_id = r.question_id "
            "WHERE r.student_id = ? GROUP BY q.topic_id",
            (self.student_id,),
        ).fetchall()
        return {
            r["topic_id"]: {
                "total": r["total"],
                "correct": r["correct"] or 0,
                "accuracy_percentage": round(100.0 * (r["correct"] or 0) / r["total"], 1),
            }
            for r in rows
        }


# ── Explanation cache ────────────────────────────────────────────────


def explanation_cache_key(student_id: str, question_id: str, misconception_code: str | None) -> str:
    """Composite key for one (student, question, misconception) explanation."""
    return f"{student_id}-{question_id}-{misconception_code}"


def student_misconception_cache_key(student_id: str, misconception_code: str) -> str:
    """Key for a student-level explanation of one misconception."""
    return f"{student_id}-misconception-{misconception_code}"


class ExplanationCacheDB:
    """Key-value store of generated explanations with a usage counter."""

    def peek(self, cache_key: str) -> Optional[dict]:
        """Read an entry without counting it as a use."""
        db = get_db()
        row = db.execute(
            "SELECT cache_key, explanation, api_source, usage_count, created_at, last_accessed "
            "FROM explanation_cache WHERE cache_key = ?",
            (cache_key,),
        ).fetchone()
        return dict(row) if row else None

    def get(self, cache_key: str) -> Optional[str]:
        """Return the cached text, counting the hit."""
        entry = self.peek(cache_key)
        if entry is None:
            return None
        db = get_db()
        db.execute(
            "UPDATE explanation_cache SET usage_count = usage_count + 1, last_accessed = ? "
            "WHERE cache_key = ?",
            (_now(), cache_key),
        )
        db.commit()
        return entry["explanation"]

    def put(self, cache_key: str, explanation: str, api_source: str = "") -> None:
        """Insert or replace the text; an existing usage_count is kept."""
        now = _now()
        db = get_db()
        db.execute(
            "INSERT INTO explanation_cache (cache_key, explanation, api_source, usage_count, "
            "created_at, last_accessed) VALUES (?, ?, ?, 1, ?, ?) "
            "ON CONFLICT(cache_key) DO UPDATE SET explanation = excluded.explanation, "
            "api_source = excluded.api_source, last_accessed = excluded.last_accessed",
            (cache_key, explanation.strip(), api_source, now, now),
        )
        db.commit()

    def evict_stale(self, ttl_days: int) -> int:
        """Delete entries not accessed in ttl_days. Returns count removed."""
        db = get_db()
        cur = db.execute(
            "DELETE FROM explanation_cache WHERE last_accessed < ?",
            (_days_ago(ttl_days),),
        )
        db.commit()
        return cur.rowcount


# ── Misconception queue ──────────────────────────────────────────────


class InvalidQueueTransitionError(Exception):
    """A queue item was asked to move between statuses that are not linked."""


# failed -> processing is the retry path; nothing ever returns to pending
QUEUE_TRANSITIONS: dict[str, set[str]] = {
    "pending": {"processing"},
    "processing": {"completed", "failed"},
    "failed": {"processing"},
    "completed": set(),
}


@dataclass
class QueueItem:
    id: int
    student_id: str
    question_id: str
    student_answer: str
    correct_answer: str
    misconception_code: Optional[str]
    priority: int
    status: str
    retry_count: int
    created_at: str
    processed_at: str = ""
    last_error: str = ""
    next_attempt_at: str = ""

    @classmethod
    def from_row(cls, row) -> QueueItem:
        data = dict(row)
        return cls(
            id=data["id"],
            student_id=data["student_id"],
            question_id=data["question_id"],
            student_answer=data["student_answer"],
            correct_answer=data["correct_answer"],
            misconception_code=data["misconception_code"],
            priority=data["priority"],
            status=data["status"],
            retry_count=data["retry_count"],
            created_at=data["created_at"],
            processed_at=data.get("processed_at") or "",
            last_error=data.get("last_error") or "",
            next_attempt_at=data.get("next_attempt_at") or "",
        )

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "student_id": self.student_id,
            "question_id": self.question_id,
            "student_answer": self.student_answer,
            "correct_answer": self.correct_answer,
            "misconception_code": self.misconception_code,
            "priority": self.priority,
            "status": self.status,
            "retry_count": self.retry_count,
            "created_at": self.created_at,
        }


class MisconceptionQueueDB:
    """Append-only table of explanation requests, drained by queue_processor."""

    def enqueue(self, student_id: str, question_id: str, student_answer: str,
                correct_answer: str, misconception_code: str | None) -> int:
        db = get_db()
        cur = db.execute(
            "INSERT INTO misconception_queue (student_id, question_id, student_answer, "
            "correct_answer, misconception_code, priority, status, retry_count, created_at) "
            "VALUES (?, ?, ?, ?, ?, ?, 'pending', 0, ?)",
            (student_id, question_id, student_answer, correct_answer or "",
             misconception_code, 2 if misconception_code else 1, _now()),
        )
        db.commit()
        return cur.lastrowid

    def get(self, item_id: int) -> Optional[QueueItem]:
        db = get_db()
        row = db.execute("SELECT * FROM misconception_queue WHERE id = ?", (item_id,)).fetchone()
        return QueueItem.from_row(row) if row else None

    def next_batch(self, limit: int = 10, max_retries: int = 0) -> list[QueueItem]:
        """Pending rows plus failed rows still inside the retry budget.

        Highest priority first, FIFO within a priority.
        """
        db = get_db()
        rows = db.execute(
            "SELECT * FROM misconception_queue "
            "WHERE status = 'pending' "
            "OR (status = 'failed' AND retry_count < ? AND next_attempt_at <= ?) "
            "ORDER BY priority DESC, created_at ASC, id ASC LIMIT ?",
            (max_retries, _now(), limit),
        ).fetchall()
        return [QueueItem.from_row(r) for r in rows]

    def _transition(self, item_id: int, from_status: str, to_status: str,
                    sets: str = "", params: tuple = ()) -> bool:
        if to_status not in QUEUE_TRANSITIONS.get(from_status, set()):
            raise InvalidQueueTransitionError(f"{from_status} -> {to_status}")
        db = get_db()
        extra = f", {sets}" if sets else ""
        cur = db.execute(
            f"UPDATE misconception_queue SET status = ?{extra} WHERE id = ? AND status = ?",
            (to_status, *params, item_id, from_status),
        )
        db.commit()
        return cur.rowcount == 1

    def claim(self, item_id: int, from_status: str = "pending") -> bool:
        """Atomically move a row to processing. False if another run got it first."""
        return self._transition(item_id, from_status, "processing",
                                "claimed_at = ?", (_now(),))

    def complete(self, item_id: int) -> bool:
        return self._transition(item_id, "processing", "completed",
                                "processed_at = ?", (_now(),))

    def fail(self, item_id: int, error: str, retry_at: str = "") -> bool:
        return self._transition(
            item_id, "processing", "failed",
            "retry_count = retry_count + 1, last_error = ?, next_attempt_at = ?",
            (error[:500], retry_at),
        )

    def stale_claims(self, older_than_seconds: int) -> list[QueueItem]:
        """Rows left in processing by a run that never finished them."""
        cutoff = (datetime.now() - timedelta(seconds=older_than_seconds)).isoformat()
        db = get_db()
        rows = db.execute(
            "SELECT * FROM misconception_queue WHERE status = 'processing' "
            "AND (claimed_at IS NULL OR claimed_at < ?) ORDER BY id",
            (cutoff,),
        ).fetchall()
        return [QueueItem.from_row(r) for r in rows]

    def purge_completed(self, older_than_days: int) -> int:
        """Retention sweep for completed rows. Returns count removed."""
        db = get_db()
        cur = db.execute(
            "DELETE FROM misconception_queue WHERE status = 'completed' AND processed_at < ?",
            (_days_ago(older_than_days),),
        )
        db.commit()
        return cur.rowcount

    def stats(self, limit: int = 10) -> dict:
        db = get_db()
        counts = {status: 0 for status in QUEUE_TRANSITIONS}
        for r in db.execute(
            "SELECT status, COUNT(*) AS c FROM misconception_queue GROUP BY status"
        ).fetchall():
            counts[r["status"]] = r["c"]
        rows = db.execute(
            "SELECT * FROM misconception_queue ORDER BY priority DESC, created_at ASC, id ASC LIMIT ?",
            (limit,),
        ).fetchall()
        return {"counts": counts, "items": [QueueItem.from_row(r).to_dict() for r in rows]}


# ── Pattern cache ────────────────────────────────────────────────────


class MisconceptionPatternStoreDB:
    """Latest analysed pattern per (student, misconception)."""

    def __init__(self, student_id: str):
        self.student_id = student_id

    def upsert(self, pattern: dict) -> None:
        code = pattern["misconception_code"]
        now = _now()
        data = {**pattern, "analysis_date": now}
        db = get_db()
        db.execute(
            "INSERT INTO misconception_patterns (pattern_key, student_id, misconception_code, "
            "pattern_data, hit_count, last_used) VALUES (?, ?, ?, ?, ?, ?) "
            "ON CONFLICT(pattern_key) DO UPDATE SET pattern_data = excluded.pattern_data, "
            "hit_count = excluded.hit_count, last_used = excluded.last_used",
            (f"{self.student_id}-{code}", self.student_id, code,
             json.dumps(data), pattern["frequency"], now),
        )
        db.commit()

    def all(self) -> list[dict]:
        db = get_db()
        rows = db.execute(
            "SELECT pattern_data FROM misconception_patterns WHERE student_id = ? "
            "ORDER BY hit_count DESC, misconception_code",
            (self.student_id,),
        ).fetchall()
        return [json.loads(r["pattern_data"]) for r in rows]
