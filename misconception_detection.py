"""Misconception Detection — answer lookup, explanation cache, queueing.

Runs in the request path when a student submits an answer:
classify the selected option, serve a cached explanation if one exists,
otherwise queue the mistake for the batch processor. Every step fails open;
a database problem degrades to "no misconception", never to an error.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Optional

from database import rollback_db
from db_stores import (
    AnswerOptionStoreDB,
    ExplanationCacheDB,
    MisconceptionQueueDB,
    StudentResponseStoreDB,
    explanation_cache_key,
)

logger = logging.getLogger(__name__)

DEFAULT_DETECTION_CONFIDENCE = 0.8


@dataclass
class DetectionResult:
    misconception_code: Optional[str]
    confidence: float
    from_cache: bool = False
    explanation: Optional[str] = None
    queued: bool = False
    # None when the selected answer matched no option
    is_correct: Optional[bool] = None

    def to_dict(self) -> dict:
        result = {
            "misconceptionCode": self.misconception_code,
            "confidence": self.confidence,
            "fromCache": self.from_cache,
            "queued": self.queued,
        }
        if self.explanation is not None:
            result["explanation"] = self.explanation
        return result


def detect_local_misconception(question_id: str, selected_answer: str) -> DetectionResult:
    """Classify a selected answer against the question's authored options.

    A correct option always yields (None, 1.0), whatever code is stored on
    it. An unknown option or a lookup failure yields (None, 0.0).
    """
    try:
        option = AnswerOptionStoreDB().find_selected(question_id, selected_answer)
    except Exception as e:
        rollback_db()
        logger.warning("Answer option lookup failed for %s: %s", question_id, e)
        return DetectionResult(None, 0.0)

    if option is None:
        return DetectionResult(None, 0.0)
    if option["is_correct"]:
        return DetectionResult(None, 1.0, is_correct=True)
    if option["misconception_code"]:
        return DetectionResult(
            option["misconception_code"],
            option["detection_confidence"] or DEFAULT_DETECTION_CONFIDENCE,
            is_correct=False,
        )
    return DetectionResult(None, 0.0, is_correct=False)


def get_cached_explanation(student_id: str, question_id: str,
                           misconception_code: str) -> Optional[str]:
    """Cached explanation text or None. A hit counts one use."""
    key = explanation_cache_key(student_id, question_id, misconception_code)
    try:
        return ExplanationCacheDB().get(key)
    except Exception as e:
        rollback_db()
        logger.warning("Explanation cache read failed for %s: %s", key, e)
        return None


def queue_for_explanation(student_id: str, question_id: str, student_answer: str,
                          correct_answer: str, misconception_code: str | None) -> Optional[int]:
    """Append a pending explanation request. Returns the row id, or None on failure."""
    try:
        return MisconceptionQueueDB().enqueue(
            student_id, question_id, student_answer, correct_answer, misconception_code,
        )
    except Exception as e:
        rollback_db()
        logger.error("Misconception queue insert failed for %s/%s: %s",
                     student_id, question_id, e)
        return None


def detect_misconception(student_id: str, question_id: str, selected_answer: str,
                         correct_answer: str | None = None) -> DetectionResult:
    """Full request-path pipeline: lookup, then cache, then queue on a miss."""
    result = detect_local_misconception(question_id, selected_answer)
    if not result.misconception_code:
        return result

    cached = get_cached_explanation(student_id, question_id, result.misconception_code)
    if cached is not None:
        result.explanation = cached
        result.from_cache = True
        return result

    if correct_answer is None:
        try:
            correct_answer = AnswerOptionStoreDB().correct_answer(question_id) or ""
        except Exception as e:
            rollback_db()
            logger.warning("Correct answer lookup failed for %s: %s", question_id, e)
            correct_answer = ""

    row_id = queue_for_explanation(
        student_id, question_id, selected_answer, correct_answer, result.misconception_code,
    )
    result.queued = row_id is not None
    return result


def record_response(student_id: str, question_id: str, selected_answer: str,
                    confidence_rating: float | None = None, time_taken: int = 0,
                    session_id: str = "", correct_answer: str | None = None) -> dict:
    """Detect, then append the response to the student's history.

    The history row is authoritative, so a failure to write it propagates.
    """
    detection = detect_misconception(student_id, question_id, selected_answer, correct_answer)
    if detection.is_correct is None:
        expected = correct_answer
        if expected is None:
            expected = AnswerOptionStoreDB().correct_answer(question_id)
        is_correct = expected is not None and selected_answer.strip() == str(expected).strip()
    else:
        is_correct = detection.is_correct

    response_id = StudentResponseStoreDB(student_id).record(
        question_id,
        selected_answer,
        is_correct,
        misconception_detected=detection.misconception_code,
        confidence_rating=confidence_rating,
        time_taken=time_taken,
        session_id=session_id,
    )
    logger.info("Recorded response %s for student %s (correct=%s, misconception=%s)",
                response_id, student_id, is_correct, detection.misconception_code)
    return {
        "response_id": response_id,
        "is_correct": is_correct,
        "detection": detection.to_dict(),
    }
