"""Tests for the request-path misconception detection pipeline."""

from __future__ import annotations

from unittest.mock import patch

from db_stores import ExplanationCacheDB, MisconceptionQueueDB, StudentResponseStoreDB
from misconception_detection import (
    DetectionResult,
    detect_local_misconception,
    detect_misconception,
    record_response,
)


class TestLocalDetection:
    def test_correct_option_ignores_stray_code(self, fraction_question):
        result = detect_local_misconception(fraction_question, "3/4")
        assert (result.misconception_code, result.confidence) == (None, 1.0)
        assert result.is_correct is True

    def test_coded_wrong_option(self, fraction_question):
        result = detect_local_misconception(fraction_question, "2/6")
        assert (result.misconception_code, result.confidence) == ("FR1", 0.9)
        assert result.is_correct is False

    def test_zero_confidence_uses_default(self, fraction_question):
        result = detect_local_misconception(fraction_question, "1/8")
        assert (result.misconception_code, result.confidence) == ("FR2", 0.8)

    def test_wrong_option_without_code(self, fraction_question):
        result = detect_local_misconception(fraction_question, "2/4")
        assert (result.misconception_code, result.confidence) == (None, 0.0)
        assert result.is_correct is False

    def test_unknown_answer(self, fraction_question):
        result = detect_local_misconception(fraction_question, "99")
        assert (result.misconception_code, result.confidence) == (None, 0.0)
        assert result.is_correct is None

    def test_letter_selection(self, fraction_question):
        assert detect_local_misconception(fraction_question, "A").misconception_code == "FR1"

    def test_lookup_failure_fails_open(self, fraction_question):
        with patch("db_stores.AnswerOptionStoreDB.find_selected", side_effect=RuntimeError("db gone")):
            result = detect_local_misconception(fraction_question, "2/6")
        assert (result.misconception_code, result.confidence) == (None, 0.0)

    def test_lookup_failure_rolls_back_before_continuing(self, fraction_question):
        with patch("db_stores.AnswerOptionStoreDB.find_selected", side_effect=RuntimeError("db gone")), \
                patch("misconception_detection.rollback_db") as rollback:
            detect_local_misconception(fraction_question, "2/6")
        rollback.assert_called_once()


class TestDetectMisconception:
    def test_cache_hit_returns_explanation(self, fraction_question):
        ExplanationCacheDB().put("s1-q-frac-1-FR1", "Denominators are not added.", "deepseek")

        result = detect_misconception("s1", fraction_question, "2/6")

        assert result.from_cache is True
        assert result.explanation == "Denominators are not added."
        assert result.queued is False
        assert MisconceptionQueueDB().stats()["counts"]["pending"] == 0
        assert ExplanationCacheDB().peek("s1-q-frac-1-FR1")["usage_count"] == 2

    def test_cache_miss_queues(self, fraction_question):
        result = detect_misconception("s1", fraction_question, "2/6")

        assert result.queued is True
        assert result.from_cache is False
        items = MisconceptionQueueDB().next_batch(10)
        assert len(items) == 1
        item = items[0]
        assert (item.student_id, item.misconception_code, item.priority) == ("s1", "FR1", 2)
        assert item.correct_answer == "3/4"
        assert item.student_answer == "2/6"

    def test_explicit_correct_answer_is_used(self, fraction_question):
        detect_misconception("s1", fraction_question, "2/6", correct_answer="0.75")
        assert MisconceptionQueueDB().next_batch(10)[0].correct_answer == "0.75"

    def test_no_misconception_no_queue(self, fraction_question):
        detect_misconception("s1", fraction_question, "3/4")
        detect_misconception("s1", fraction_question, "2/4")
        assert MisconceptionQueueDB().next_batch(10) == []

    def test_queue_failure_does_not_raise(self, fraction_question):
        with patch("db_stores.MisconceptionQueueDB.enqueue", side_effect=RuntimeError("locked")):
            result = detect_misconception("s1", fraction_question, "2/6")
        assert result.misconception_code == "FR1"
        assert result.queued is False

    def test_to_dict(self):
        payload = DetectionResult("FR1", 0.9, from_cache=True, explanation="x").to_dict()
        assert payload == {
            "misconceptionCode": "FR1", "confidence": 0.9,
            "fromCache": True, "queued": False, "explanation": "x",
        }
        assert "explanation" not in DetectionResult(None, 0.0).to_dict()


class TestRecordResponse:
    def test_wrong_answer_recorded_with_code(self, fraction_question):
        result = record_response("s1", fraction_question, "2/6", confidence_rating=0.9, time_taken=30)

        assert result["is_correct"] is False
        assert result["detection"]["misconceptionCode"] == "FR1"
        assert result["detection"]["queued"] is True
        rows = StudentResponseStoreDB("s1").misconception_frequencies()
        assert rows[0]["misconception_code"] == "FR1"

    def test_correct_answer_recorded(self, fraction_question):
        result = record_response("s1", fraction_question, "B")
        assert result["is_correct"] is True
        assert result["detection"]["misconceptionCode"] is None
        recent = StudentResponseStoreDB("s1").recent()
        assert recent[0]["is_correct"] is True
        assert recent[0]["confidence_rating"] is None

    def test_unknown_answer_compared_to_correct_value(self, fraction_question):
        assert record_response("s1", fraction_question, " 3/4 ", correct_answer="3/4")["is_correct"]
        assert not record_response("s1", fraction_question, "5/8")["is_correct"]
