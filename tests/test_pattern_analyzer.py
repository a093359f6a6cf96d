"""Tests for misconception pattern analysis."""

from __future__ import annotations

import pytest

from db_stores import MisconceptionPatternStoreDB, StudentResponseStoreDB
from pattern_analyzer import (
    analyze_patterns,
    analyze_student_misconceptions,
    classify_frequency,
)


def _row(code, frequency, topics):
    return {"misconception_code": code, "frequency": frequency, "topics": topics,
            "first_seen": "2026-01-01T09:00:00", "last_seen": "2026-01-20T09:00:00"}


class TestClassifyFrequency:
    @pytest.mark.parametrize("frequency,expected", [
        (12, ("critical", "persistent")),
        (10, ("critical", "persistent")),
        (9, ("high", "recurring")),
        (6, ("high", "recurring")),
        (5, ("medium", "developing")),
        (3, ("medium", "developing")),
        (2, ("low", "emerging")),
    ])
    def test_bands(self, frequency, expected):
        assert classify_frequency(frequency) == expected


class TestAnalyzePatterns:
    def test_persistent_misconception_across_two_topics(self):
        result = analyze_patterns([_row("FR1", 12, ["fractions", "ratio"])], "s1")

        pattern = result["patterns"][0]
        assert (pattern["severity"], pattern["pattern_type"]) == ("critical", "persistent")
        assert pattern["trend"] == "increasing"
        assert pattern["topics"] == ["fractions", "ratio"]
        assert result["critical_patterns"] == [pattern]
        assert result["recommendations"][0]["type"] == "urgent_intervention"
        assert result["recommendations"][0]["priority"] == 1
        # a single code never makes a topic problematic
        assert result["problematic_topics"] == []

    def test_below_threshold_dropped(self):
        result = analyze_patterns([_row("FR1", 2, ["fractions"])], "s1")
        assert result["patterns"] == []
        assert result["recommendations"] == []
        assert result["analysis_summary"]["total_patterns"] == 0

    def test_custom_threshold(self):
        result = analyze_patterns([_row("FR1", 2, ["fractions"])], "s1", threshold=1)
        assert result["patterns"][0]["severity"] == "medium"
        assert result["emerging_patterns"][0]["misconception_code"] == "FR1"
        assert result["recommendations"][0]["type"] == "early_intervention"

    def test_recurring_is_neither_critical_nor_emerging(self):
        result = analyze_patterns([_row("PV1", 7, ["place_value"])], "s1")
        assert result["patterns"][0]["pattern_type"] == "recurring"
        assert result["critical_patterns"] == []
        assert result["emerging_patterns"] == []
        assert result["recommendations"] == []

    def test_problematic_topics_ranked(self):
        rows = [
            _row("FR1", 12, ["fractions", "ratio"]),
            _row("FR2", 4, ["fractions"]),
            _row("RA1", 3, ["ratio"]),
            _row("PV1", 9, ["place_value"]),
        ]
        result = analyze_patterns(rows, "s1")
        topics = [(t["topic"], t["misconception_count"], t["total_frequency"])
                  for t in result["problematic_topics"]]
        assert topics == [("fractions", 2, 16), ("ratio", 2, 15)]
        assert result["analysis_summary"] == {
            "total_patterns": 4,
            "critical_count": 1,
            "emerging_count": 2,
            "most_problematic_topic": "fractions",
        }
        assert [r["type"] for r in result["recommendations"]] == [
            "urgent_intervention", "early_intervention",
        ]

    def test_topic_tie_breaks_by_name(self):
        rows = [_row("A1", 3, ["beta", "alpha"]), _row("A2", 3, ["alpha", "beta"])]
        result = analyze_patterns(rows, "s1")
        assert [t["topic"] for t in result["problematic_topics"]] == ["alpha", "beta"]

    def test_pure(self):
        rows = [_row("FR1", 12, ["fractions", "ratio"]), _row("FR2", 4, ["fractions"])]
        assert analyze_patterns(rows, "s1") == analyze_patterns(rows, "s1")


class TestAnalyzeStudent:
    def test_no_history(self, app):
        result = analyze_student_misconceptions("nobody")
        assert result["message"] == "No misconceptions found for analysis"
        assert result["patterns"] == []

    def test_seeded_student(self, seeded):
        result = analyze_student_misconceptions("demo-ava")

        codes = {p["misconception_code"]: p for p in result["patterns"]}
        assert codes["FR1"]["severity"] == "critical"
        assert codes["FR1"]["topics"] == ["fractions", "ratio"]
        assert codes["AL2"]["pattern_type"] == "developing"
        assert codes["FR1"]["first_seen"] < codes["FR1"]["last_seen"]

        cached = MisconceptionPatternStoreDB("demo-ava").all()
        assert [p["misconception_code"] for p in cached] == ["FR1", "AL2"]

    def test_rerun_is_stable(self, seeded):
        first = analyze_student_misconceptions("demo-ava")
        second = analyze_student_misconceptions("demo-ava")
        assert first == second
        assert len(MisconceptionPatternStoreDB("demo-ava").all()) == 2

    def test_pattern_cache_failure_ignored(self, seeded):
        from unittest.mock import patch
        with patch("db_stores.MisconceptionPatternStoreDB.upsert", side_effect=RuntimeError("locked")):
            result = analyze_student_misconceptions("demo-ava")
        assert len(result["patterns"]) == 2

    def test_new_responses_change_analysis(self, seeded):
        store = StudentResponseStoreDB("demo-ben")
        for _ in range(3):
            store.record("demo-fractions-foundation", "x", False, "FR2")
        result = analyze_student_misconceptions("demo-ben")
        assert [p["misconception_code"] for p in result["patterns"]] == ["FR2"]
