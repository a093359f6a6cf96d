"""
Adaptive Question Weighting — rule-table scorer for practice selection.

Summarises a student's recent responses (accuracy, confidence calibration,
weak/strong topics, misconceptions), then scores candidate questions by
applying each rule in WEIGHT_RULES in order. Weights are clamped to
[MIN_WEIGHT, MAX_WEIGHT] so adding rules cannot compound without limit.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Callable, Optional

from db_stores import QuestionStoreDB, StudentResponseStoreDB

MIN_WEIGHT = 0.05
MAX_WEIGHT = 10.0

RECENT_RESPONSE_LIMIT = 50
CANDIDATE_LIMIT = 50
RECENTLY_ANSWERED_DAYS = 7

WEAK_TOPIC_ACCURACY = 0.6
STRONG_TOPIC_ACCURACY = 0.8
CALIBRATION_GAP = 0.2
DEFAULT_CONFIDENCE = 0.5
HIGH_PERFORMER_ACCURACY = 0.85
HIGH_PERFORMER_CONFIDENCE = 0.8

SKIP_AHEAD_PERCENTAGE = 85
EXTRA_PRACTICE_PERCENTAGE = 60


@dataclass
class PerformanceAnalysis:
    avg_confidence: float = 0.0
    avg_accuracy: float = 0.0
    confidence_accuracy_gap: float = 0.0
    weak_topics: list[str] = field(default_factory=list)
    strong_topics: list[str] = field(default_factory=list)
    overconfidence_areas: list[str] = field(default_factory=list)
    underconfidence_areas: list[str] = field(default_factory=list)
    common_misconceptions: dict[str, int] = field(default_factory=dict)
    response_count: int = 0

    def to_dict(self) -> dict:
        return {
            "avg_confidence": round(self.avg_confidence, 3),
            "avg_accuracy": round(self.avg_accuracy, 3),
            "confidence_accuracy_gap": round(self.confidence_accuracy_gap, 3),
            "weak_topics": self.weak_topics,
            "strong_topics": self.strong_topics,
            "overconfidence_areas": self.overconfidence_areas,
            "underconfidence_areas": self.underconfidence_areas,
            "common_misconceptions": self.common_misconceptions,
            "response_count": self.response_count,
        }


def _confidence(response: dict) -> float:
    # 0.0 is treated as unrated
    return float(response.get("confidence_rating") or DEFAULT_CONFIDENCE)


def analyze_performance(responses: list[dict]) -> PerformanceAnalysis:
    """Aggregate accuracy and confidence overall and per topic."""
    analysis = PerformanceAnalysis(response_count=len(responses))
    if not responses:
        return analysis

    analysis.avg_confidence = sum(_confidence(r) for r in responses) / len(responses)
    analysis.avg_accuracy = sum(1 for r in responses if r["is_correct"]) / len(responses)
    analysis.confidence_accuracy_gap = analysis.avg_confidence - analysis.avg_accuracy

    per_topic: dict[str, dict] = {}
    for r in responses:
        topic = r.get("topic_id")
        if not topic:
            continue
        perf = per_topic.setdefault(topic, {"correct": 0, "total": 0, "confidence": 0.0})
        perf["total"] += 1
        perf["correct"] += 1 if r["is_correct"] else 0
        perf["confidence"] += _confidence(r)

    for topic, perf in per_topic.items():
        accuracy = perf["correct"] / perf["total"]
        confidence = perf["confidence"] / perf["total"]
        if accuracy < WEAK_TOPIC_ACCURACY:
            analysis.weak_topics.append(topic)
        elif accuracy > STRONG_TOPIC_ACCURACY:
            analysis.strong_topics.append(topic)
        if confidence > accuracy + CALIBRATION_GAP:
            analysis.overconfidence_areas.append(topic)
        elif accuracy > confidence + CALIBRATION_GAP:
            analysis.underconfidence_areas.append(topic)

    for r in responses:
        code = r.get("misconception_detected")
        if code:
            analysis.common_misconceptions[code] = analysis.common_misconceptions.get(code, 0) + 1

    return analysis


@dataclass(frozen=True)
class WeightContext:
    analysis: PerformanceAnalysis
    accuracy_threshold: float = 0.7
    confidence_threshold: float = 0.6

    @property
    def struggling(self) -> bool:
        return self.analysis.avg_accuracy < self.accuracy_threshold

    @property
    def high_performer(self) -> bool:
        return (not self.struggling
                and self.analysis.avg_accuracy > HIGH_PERFORMER_ACCURACY
                and self.analysis.avg_confidence > HIGH_PERFORMER_CONFIDENCE)


@dataclass(frozen=True)
class WeightRule:
    """One multiplicative factor. reason/priority of later rules win."""
    name: str
    applies: Callable[[dict, WeightContext], bool]
    weight: float
    adaptive_factor: float
    reason: Optional[str] = None
    priority: Optional[str] = None


WEIGHT_RULES: tuple[WeightRule, ...] = (
    WeightRule("weak_topic",
               lambda q, ctx: q["topic_id"] in ctx.analysis.weak_topics,
               2.0, 1.5, "Targets weak topic", "high"),
    WeightRule("strong_topic",
               lambda q, ctx: q["topic_id"] in ctx.analysis.strong_topics,
               0.5, 0.8, "Review strong topic", "low"),
    WeightRule("overconfidence",
               lambda q, ctx: q["topic_id"] in ctx.analysis.overconfidence_areas,
               1.5, 1.3, "Confidence calibration needed", "high"),
    WeightRule("underconfidence",
               lambda q, ctx: q["topic_id"] in ctx.analysis.underconfidence_areas,
               1.3, 1.1, "Build confidence", "medium"),
    WeightRule("struggling_foundation",
               lambda q, ctx: ctx.struggling and q["difficulty"] == "foundation",
               1.5, 1.2),
    WeightRule("struggling_advanced",
               lambda q, ctx: ctx.struggling and q["difficulty"] == "advanced",
               0.3, 0.7),
    WeightRule("challenge",
               lambda q, ctx: ctx.high_performer and q["difficulty"] == "advanced",
               1.8, 1.4, "Challenge question", "high"),
    WeightRule("misconception_present",
               lambda q, ctx: bool(ctx.analysis.common_misconceptions),
               1.2, 1.1),
)


@dataclass
class WeightedQuestion:
    question_id: str
    weight: float
    reason: str
    priority: str
    adaptive_factor: float
    topic_id: str = ""
    difficulty: str = ""
    rules: list[str] = field(default_factory=list)

    def to_dict(self) -> dict:
        return {
            "question_id": self.question_id,
            "weight": round(self.weight, 4),
            "reason": self.reason,
            "priority": self.priority,
            "adaptive_factor": round(self.adaptive_factor, 4),
            "topic_id": self.topic_id,
            "difficulty": self.difficulty,
            "rules": self.rules,
        }


def score_question(question: dict, ctx: WeightContext,
                   rules: tuple[WeightRule, ...] = WEIGHT_RULES) -> WeightedQuestion:
    """Apply every matching rule in order, then clamp the weight."""
    weight = 1.0
    adaptive_factor = 1.0
    reason = "Standard practice"
    priority = "medium"
    applied: list[str] = []

    for rule in rules:
        if not rule.applies(question, ctx):
            continue
        weight *= rule.weight
        adaptive_factor *= rule.adaptive_factor
        if rule.reason:
            reason = rule.reason
        if rule.priority:
            priority = rule.priority
        applied.append(rule.name)

    return WeightedQuestion(
        question_id=question["question_id"],
        weight=max(MIN_WEIGHT, min(MAX_WEIGHT, weight)),
        reason=reason,
        priority=priority,
        adaptive_factor=adaptive_factor,
        topic_id=question.get("topic_id", ""),
        difficulty=question.get("difficulty", ""),
        rules=applied,
    )


def rank_questions(candidates: list[dict], ctx: WeightContext) -> list[WeightedQuestion]:
    """Score and sort by weight, highest first. Ties keep candidate order."""
    scored = [score_question(q, ctx) for q in candidates]
    return sorted(scored, key=lambda wq: -wq.weight)


def get_confidence_weighted_questions(student_id: str, topic_id: str | None = None,
                                      count: int = 10, confidence_threshold: float = 0.6,
                                      accuracy_threshold: float = 0.7) -> dict:
    """Rank practice questions for a student.

    Uses the last 50 responses (optionally for one topic) and up to 50
    candidate questions not answered in the last 7 days.
    """
    responses = StudentResponseStoreDB(student_id)
    analysis = analyze_performance(responses.recent(RECENT_RESPONSE_LIMIT, topic_id))

    exclude = responses.answered_since(RECENTLY_ANSWERED_DAYS)
    candidates = QuestionStoreDB().candidates(topic_id, exclude, CANDIDATE_LIMIT)

    ctx = WeightContext(analysis, accuracy_threshold, confidence_threshold)
    ranked = rank_questions(candidates, ctx)[:count]
    return {
        "questions": [wq.to_dict() for wq in ranked],
        "analysis": analysis.to_dict(),
        "params": {
            "topic_id": topic_id,
            "count": count,
            "confidence_threshold": confidence_threshold,
            "accuracy_threshold": accuracy_threshold,
        },
    }


def get_skip_ahead_candidates(student_id: str) -> list[str]:
    """Topics where the student is at or above 85% accuracy."""
    accuracy = StudentResponseStoreDB(student_id).topic_accuracy()
    return sorted(t for t, a in accuracy.items() if a["accuracy_percentage"] >= SKIP_AHEAD_PERCENTAGE)


def get_extra_practice_candidates(student_id: str) -> list[str]:
    """Topics where the student is below 60% accuracy."""
    accuracy = StudentResponseStoreDB(student_id).topic_accuracy()
    return sorted(t for t, a in accuracy.items() if a["accuracy_percentage"] < EXTRA_PRACTICE_PERCENTAGE)
