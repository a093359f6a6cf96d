"""Tests for the explainer and question generation agents."""

from __future__ import annotations

import json
from unittest.mock import patch

import pytest

from agents.explainer_agent import FALLBACK_EXPLANATION, FOCUS_FALLBACK, ExplainerAgent
from agents.question_gen_agent import (
    QuestionGenAgent,
    parse_generated_questions,
    to_question_records,
)
from ai_resilience import MalformedLLMResponseError
from db_stores import AnswerOptionStoreDB, ExplanationCacheDB, QuestionStoreDB


def _generated(qid="gen-1", correct="B", **extra):
    item = {
        "question_id": qid,
        "module": "number",
        "topic": "fractions",
        "subtopic": "adding",
        "difficulty": "foundation",
        "question_text": "What is 1/3 + 1/3?",
        "option_a": "2/6",
        "option_b": "2/3",
        "option_c": "1/9",
        "option_d": "1/3",
        "correct_answer": correct,
        "a_misconception": "FR1",
        "b_misconception": "correct",
        "c_misconception": "FR2",
        "d_misconception": "",
        "skills_tested": "Fractions, Addition",
    }
    item.update(extra)
    return item


class TestExplainMistake:
    @patch("ai_resilience._do_call")
    def test_uses_perplexity_first(self, mock_call, llm_app):
        mock_call.return_value = "What happened: you added the denominators."
        response = ExplainerAgent(llm_app.config).explain_mistake(
            "1/2 + 1/4", "2/6", "3/4", "FR1", "fractions",
        )
        assert response.content.startswith("What happened")
        assert response.metadata["api_used"] == "perplexity"
        provider, prompt, _system, _messages, max_tokens, temperature = mock_call.call_args.args
        assert provider.name == "perplexity"
        assert "Mistake type: FR1" in prompt
        assert (max_tokens, temperature) == (500, 0.8)

    @patch("ai_resilience._do_call")
    def test_falls_back_to_openai(self, mock_call, llm_app):
        def fake(provider, *args):
            if provider.name == "perplexity":
                raise RuntimeError("invalid api key")
            return "From OpenAI."
        mock_call.side_effect = fake
        response = ExplainerAgent(llm_app.config).explain_mistake("q", "a", "b")
        assert response.metadata["api_used"] == "openai"

    @patch("ai_resilience._do_call")
    def test_failure_returns_fallback(self, mock_call, llm_app):
        mock_call.side_effect = RuntimeError("invalid api key")
        response = ExplainerAgent(llm_app.config).explain_mistake("q", "a", "b")
        assert response.failed
        assert response.content == FALLBACK_EXPLANATION

    def test_no_keys_is_failure(self, app):
        response = ExplainerAgent(app.config).explain_mistake("q", "a", "b")
        assert response.failed
        assert "no provider configured" in response.metadata["error"]


class TestExplainConcept:
    @patch("ai_resilience._do_call")
    def test_openai_then_cached(self, mock_call, llm_app):
        mock_call.return_value = "FR1 means adding numerators and denominators."
        agent = ExplainerAgent(llm_app.config)

        first = agent.explain_concept("FR1", ["fractions", "ratio"])
        second = agent.explain_concept("FR1", ["fractions", "ratio"])

        assert first.metadata["api_used"] == "openai"
        assert second.content == first.content
        assert second.metadata["metrics"]["cache_hit"] is True
        assert mock_call.call_count == 1
        assert "fractions, ratio" in mock_call.call_args.args[1]


class TestExplainStudent:
    def test_no_history(self, llm_app):
        response = ExplainerAgent(llm_app.config).explain_student("nobody")
        assert response.metadata["api_used"] == "none"
        assert not response.failed

    @patch("ai_resilience._do_call")
    def test_generates_and_stores_top_misconceptions(self, mock_call, llm_app, seeded):
        mock_call.side_effect = lambda provider, prompt, *a: f"Explanation for {prompt.split(chr(34))[1]}"

        response = ExplainerAgent(llm_app.config).explain_student("demo-ava")

        codes = [d["misconception_code"] for d in response.metadata["misconceptions"]]
        assert codes == ["FR1", "AL2"]
        assert "**FR1**" in response.content
        assert response.metadata["api_used"] == "openai"
        assert ExplanationCacheDB().peek("demo-ava-misconception-FR1")["explanation"] == \
            "Explanation for FR1"

    @patch("ai_resilience._do_call")
    def test_served_from_cache(self, mock_call, llm_app, seeded):
        ExplanationCacheDB().put("demo-ava-misconception-FR1", "Cached FR1.", "openai")
        ExplanationCacheDB().put("demo-ava-misconception-AL2", "Cached AL2.", "deepseek")

        response = ExplainerAgent(llm_app.config).explain_student("demo-ava")

        assert response.metadata["api_used"] == "cache"
        assert all(d["from_cache"] for d in response.metadata["misconceptions"])
        mock_call.assert_not_called()

    @patch("ai_resilience._do_call")
    def test_generation_failure(self, mock_call, llm_app, seeded):
        mock_call.side_effect = RuntimeError("invalid api key")
        response = ExplainerAgent(llm_app.config).explain_student("demo-ava")
        assert response.failed
        assert response.content == FALLBACK_EXPLANATION


class TestExplainFocusArea:
    @patch("ai_resilience._do_call")
    def test_builds_prompt_from_topic_history(self, mock_call, llm_app, seeded):
        mock_call.return_value = "Fractions are everywhere, like sharing pizza."

        response = ExplainerAgent(llm_app.config).explain_focus_area("demo-ava", "fractions")

        assert not response.failed
        assert response.metadata["api_used"] == "openai"
        assert response.metadata["focus_area"] == {
            "topic": "fractions",
            "accuracy": 0.0,
            "totalAttempts": 6,
            "strugglingSubtopics": ["fractions_core"],
            "commonMisconceptions": ["FR1"],
            "recentErrors": 5,
        }
        prompt = mock_call.call_args.args[1]
        assert "accuracy in fractions is 0%" in prompt
        assert "fractions_core" in prompt

    @patch("ai_resilience._do_call")
    def test_topic_without_answers(self, mock_call, llm_app, seeded):
        response = ExplainerAgent(llm_app.config).explain_focus_area("demo-ava", "geometry")
        assert response.metadata["api_used"] == "none"
        assert response.metadata["focus_area"]["totalAttempts"] == 0
        mock_call.assert_not_called()

    @patch("ai_resilience._do_call")
    def test_generation_failure_uses_focus_fallback(self, mock_call, llm_app, seeded):
        mock_call.side_effect = RuntimeError("invalid api key")
        response = ExplainerAgent(llm_app.config).explain_focus_area("demo-ava", "fractions")
        assert response.failed
        assert response.content == FOCUS_FALLBACK


class TestParseGeneratedQuestions:
    def test_extracts_array_from_prose(self):
        raw = "Here you go:\n```json\n" + json.dumps([_generated()]) + "\n```"
        assert parse_generated_questions(raw)[0]["question_id"] == "gen-1"

    def test_no_array(self):
        with pytest.raises(MalformedLLMResponseError):
            parse_generated_questions("Sorry, I can't help with that.")

    def test_broken_json(self):
        with pytest.raises(MalformedLLMResponseError):
            parse_generated_questions('[{"question_id": "x",]')

    def test_non_dict_items_dropped(self):
        assert parse_generated_questions('[1, {"question_id": "x"}]') == [{"question_id": "x"}]


class TestToQuestionRecords:
    def test_maps_options(self):
        question, options = to_question_records(_generated(), "fractions", "foundation")
        assert question["correct_answer"] == "2/3"
        assert question["module_id"] == "NUMBER"
        assert question["prerequisite_skills"] == ["Fractions", "Addition"]
        codes = {o["option_letter"]: (o["is_correct"], o["misconception_code"]) for o in options}
        assert codes == {"A": (False, "FR1"), "B": (True, None), "C": (False, "FR2"), "D": (False, None)}

    def test_correct_option_code_dropped(self):
        _, options = to_question_records(_generated(correct="A"), "fractions", "foundation")
        assert options[0]["misconception_code"] is None

    def test_invalid_correct_letter(self):
        with pytest.raises(ValueError):
            to_question_records(_generated(correct="E"), "fractions", "foundation")

    def test_missing_option(self):
        with pytest.raises(ValueError, match="option_c"):
            to_question_records(_generated(option_c=""), "fractions", "foundation")

    def test_unknown_difficulty_uses_requested(self):
        question, _ = to_question_records(_generated(difficulty="expert"), "fractions", "advanced")
        assert question["difficulty"] == "advanced"


class TestQuestionGenAgent:
    @patch("ai_resilience._do_call")
    def test_generate_and_import(self, mock_call, llm_app):
        mock_call.return_value = json.dumps([_generated("gen-1"), _generated("gen-2", option_a="")])

        response = QuestionGenAgent(llm_app.config).generate("fractions", "foundation", 2)

        assert response.metadata["generated"] == 2
        assert response.metadata["imported"] == 1
        assert response.metadata["question_ids"] == ["gen-1"]
        assert response.metadata["api_used"] == "deepseek"
        assert QuestionStoreDB().get("gen-1")["topic_id"] == "fractions"
        option = AnswerOptionStoreDB().find_selected("gen-1", "2/6")
        assert option["misconception_code"] == "FR1"

    @patch("ai_resilience._do_call")
    def test_count_clamped(self, mock_call, llm_app):
        mock_call.return_value = "[]"
        QuestionGenAgent(llm_app.config).generate("fractions", "foundation", 50)
        assert "Generate 10 mathematics questions" in mock_call.call_args.args[1]

    @patch("ai_resilience._do_call")
    def test_malformed_output(self, mock_call, llm_app):
        mock_call.return_value = "not json"
        response = QuestionGenAgent(llm_app.config).generate("fractions")
        assert response.failed
        assert response.confidence == 0.0
