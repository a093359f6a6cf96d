"""Misconception Pattern Analyzer.

Turns a student's misconception frequencies into severity / pattern-type
classifications, topic clusters and intervention recommendations.
analyze_patterns() is a pure function of its input rows; the store-backed
wrapper fetches those rows and caches the result per (student, code).
"""

from __future__ import annotations

import logging

from database import rollback_db
from db_stores import MisconceptionPatternStoreDB, StudentResponseStoreDB

logger = logging.getLogger(__name__)

CRITICAL_FREQUENCY = 10
HIGH_FREQUENCY = 6
INCREASING_TREND_FREQUENCY = 5
DEFAULT_THRESHOLD = 3


def classify_frequency(frequency: int, threshold: int = DEFAULT_THRESHOLD) -> tuple[str, str]:
    """Map a frequency to (severity, pattern_type)."""
    if frequency >= CRITICAL_FREQUENCY:
        return "critical", "persistent"
    if frequency >= HIGH_FREQUENCY:
        return "high", "recurring"
    if frequency >= threshold:
        return "medium", "developing"
    return "low", "emerging"


def _cluster_topics(patterns: list[dict]) -> list[dict]:
    clusters: dict[str, list[dict]] = {}
    for pattern in patterns:
        for topic in pattern["topics"]:
            clusters.setdefault(topic, []).append(pattern)

    problematic = [
        {
            "topic": topic,
            "misconception_count": len(members),
            "total_frequency": sum(p["frequency"] for p in members),
            "patterns": members,
        }
        for topic, members in clusters.items()
        if len(members) >= 2
    ]
    problematic.sort(key=lambda t: (-t["total_frequency"], t["topic"]))
    return problematic


def _recommendations(critical: list[dict], emerging: list[dict]) -> list[dict]:
    recs = []
    if critical:
        recs.append({
            "type": "urgent_intervention",
            "title": "Critical Misconception Patterns Detected",
            "description": f"{len(critical)} misconceptions require immediate attention",
            "patterns": critical,
            "priority": 1,
        })
    if emerging:
        recs.append({
            "type": "early_intervention",
            "title": "Emerging Patterns Identified",
            "description": (f"{len(emerging)} misconceptions are developing - "
                            "early intervention recommended"),
            "patterns": emerging,
            "priority": 2,
        })
    return recs


def analyze_patterns(rows: list[dict], student_id: str,
                     threshold: int = DEFAULT_THRESHOLD) -> dict:
    """Classify misconception frequency rows into patterns and recommendations.

    Each row needs misconception_code, frequency and topics; first_seen and
    last_seen are passed through when present. Rows below threshold are
    dropped. Emerging patterns are the qualifying ones still at the
    "developing" stage.
    """
    patterns: list[dict] = []
    critical: list[dict] = []
    emerging: list[dict] = []

    for row in rows:
        frequency = int(row["frequency"])
        if frequency < threshold:
            continue
        severity, pattern_type = classify_frequency(frequency, threshold)
        pattern = {
            "student_id": student_id,
            "misconception_code": row["misconception_code"],
            "frequency": frequency,
            "severity": severity,
            "pattern_type": pattern_type,
            "topics": list(row.get("topics") or []),
            "first_seen": row.get("first_seen"),
            "last_seen": row.get("last_seen"),
            "trend": "increasing" if frequency >= INCREASING_TREND_FREQUENCY else "stable",
        }
        patterns.append(pattern)
        if severity == "critical":
            critical.append(pattern)
        elif pattern_type == "developing":
            emerging.append(pattern)

    problematic = _cluster_topics(patterns)
    return {
        "patterns": patterns,
        "critical_patterns": critical,
        "emerging_patterns": emerging,
        "recommendations": _recommendations(critical, emerging),
        "problematic_topics": problematic,
        "analysis_summary": {
            "total_patterns": len(patterns),
            "critical_count": len(critical),
            "emerging_count": len(emerging),
            "most_problematic_topic": problematic[0]["topic"] if problematic else None,
        },
    }


def get_student_misconceptions(student_id: str) -> list[dict]:
    """(misconception_code, frequency, topics, first_seen, last_seen) per code."""
    return StudentResponseStoreDB(student_id).misconception_frequencies()


def analyze_student_misconceptions(student_id: str,
                                   threshold: int = DEFAULT_THRESHOLD) -> dict:
    """Analyse a student's history and cache the resulting patterns."""
    rows = get_student_misconceptions(student_id)
    if not rows:
        result = analyze_patterns([], student_id, threshold)
        result["message"] = "No misconceptions found for analysis"
        return result

    result = analyze_patterns(rows, student_id, threshold)

    store = MisconceptionPatternStoreDB(student_id)
    for pattern in result["patterns"]:
        try:
            store.upsert(pattern)
        except Exception as e:
            rollback_db()
            logger.warning("Could not cache pattern %s for %s: %s",
                           pattern["misconception_code"], student_id, e)

    logger.info("Analysis complete for %s: %d patterns, %d recommendations",
                student_id, len(result["patterns"]), len(result["recommendations"]))
    return result
