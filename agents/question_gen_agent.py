"""Question Generation Agent — multiple-choice questions with diagnostic options.

Asks Deepseek (falling back to OpenAI) for a JSON array of questions whose
wrong options each carry a misconception code, then imports them into the
question bank so answer lookup can diagnose future responses.
"""

from __future__ import annotations

import json
import logging
import re

from agents.base import AgentResponse
from ai_resilience import MalformedLLMResponseError, call_with_fallback, provider_chain
from database import rollback_db
from db_stores import AnswerOptionStoreDB, QuestionStoreDB

logger = logging.getLogger(__name__)

GENERATION_PROVIDERS = ("deepseek", "openai")
MAX_QUESTIONS = 10
DIFFICULTIES = ("foundation", "intermediate", "advanced")
OPTION_LETTERS = ("A", "B", "C", "D")

_JSON_ARRAY = re.compile(r"\[[\s\S]*\]")

GENERATION_SYSTEM = (
    "You are an expert mathematics education specialist. Generate high-quality, "
    "curriculum-aligned questions with proper misconception analysis. Return only valid JSON."
)

GENERATION_PROMPT = """Generate {count} mathematics questions for {topic} at {difficulty} level.

Return ONLY a valid JSON array with this exact structure:
[
  {{
    "question_id": "unique_id_here",
    "module": "NUMBER",
    "topic": "{topic}",
    "subtopic": "relevant_subtopic",
    "category": "arithmetic",
    "cognitive_level": "application",
    "difficulty": "{difficulty}",
    "question_text": "Question text here",
    "option_a": "Option A text",
    "option_b": "Option B text",
    "option_c": "Option C text",
    "option_d": "Option D text",
    "correct_answer": "A",
    "a_misconception": "PV1",
    "b_misconception": "correct",
    "c_misconception": "CE1",
    "d_misconception": "FR3",
    "a_feedback": "Feedback for option A",
    "b_feedback": "Correct! Well done.",
    "c_feedback": "Feedback for option C",
    "d_feedback": "Feedback for option D",
    "skills_tested": "Place Value, Addition",
    "marks": 1,
    "time_seconds": 60
  }}
]

Requirements:
- Use realistic misconception codes like PV1, FR3, CE1, OP1, CN1, ME3, PA1, RE2, PE5
- Make questions age-appropriate and curriculum-aligned for 11+ exams
- Include detailed feedback for each option
- Generate unique question_ids
- Only the correct answer should have "correct" as misconception"""


def parse_generated_questions(raw: str) -> list[dict]:
    """Extract the JSON array from a model response.

    Raises MalformedLLMResponseError when no parseable array is present.
    """
    match = _JSON_ARRAY.search(raw or "")
    if not match:
        raise MalformedLLMResponseError("No JSON array found in response")
    try:
        items = json.loads(match.group(0))
    except json.JSONDecodeError as e:
        raise MalformedLLMResponseError(f"Failed to parse generated questions: {e}") from e
    if not isinstance(items, list):
        raise MalformedLLMResponseError("Generated content is not a list")
    return [item for item in items if isinstance(item, dict)]


def to_question_records(item: dict, topic: str, difficulty: str) -> tuple[dict, list[dict]]:
    """Map one generated item to a question row and its four option rows."""
    missing = [k for k in ("question_id", "question_text", "correct_answer") if not item.get(k)]
    missing += [f"option_{l.lower()}" for l in OPTION_LETTERS if not item.get(f"option_{l.lower()}")]
    if missing:
        raise ValueError(f"missing fields: {', '.join(missing)}")

    correct = str(item["correct_answer"]).strip().upper()
    if correct not in OPTION_LETTERS:
        raise ValueError(f"correct_answer must be one of A-D, got {item['correct_answer']!r}")

    options = []
    for letter in OPTION_LETTERS:
        key = letter.lower()
        code = str(item.get(f"{key}_misconception") or "").strip()
        is_correct = letter == correct
        options.append({
            "option_letter": letter,
            "answer_value": str(item[f"option_{key}"]),
            "is_correct": is_correct,
            "misconception_code": None if is_correct or code in ("", "correct") else code,
            "diagnostic_feedback": item.get(f"{key}_feedback", ""),
        })

    skills = item.get("skills_tested") or ""
    question = {
        "question_id": str(item["question_id"]),
        "topic_id": item.get("topic") or topic,
        "subtopic": item.get("subtopic", ""),
        "module_id": str(item.get("module", "")).upper(),
        "difficulty": item.get("difficulty") if item.get("difficulty") in DIFFICULTIES else difficulty,
        "cognitive_level": item.get("cognitive_level", "application"),
        "question_category": item.get("category", "arithmetic"),
        "question_text": item["question_text"],
        "correct_answer": str(item[f"option_{correct.lower()}"]),
        "marks": item.get("marks", 1),
        "time_seconds": item.get("time_seconds", 60),
        "prerequisite_skills": [s.strip() for s in str(skills).split(",") if s.strip()],
    }
    return question, options


class QuestionGenAgent:
    """Generates and imports diagnostic multiple-choice questions."""

    AGENT_NAME = "question_gen_agent"

    def __init__(self, config) -> None:
        self.chain = provider_chain(config, GENERATION_PROVIDERS)

    def generate(self, topic: str, difficulty: str = "intermediate", count: int = 5) -> AgentResponse:
        count = max(1, min(int(count), MAX_QUESTIONS))
        if difficulty not in DIFFICULTIES:
            difficulty = "intermediate"

        prompt = GENERATION_PROMPT.format(count=count, topic=topic, difficulty=difficulty)
        try:
            raw, provider, metrics = call_with_fallback(
                self.chain, prompt, system=GENERATION_SYSTEM, max_tokens=4000, temperature=0.7,
            )
            items = parse_generated_questions(raw)
        except Exception as e:
            logger.error("Question generation failed for %s/%s: %s", topic, difficulty, e)
            return AgentResponse(
                content="Question generation failed. Please try again later.",
                agent=self.AGENT_NAME,
                confidence=0.0,
                metadata={"error": str(e), "topic": topic, "difficulty": difficulty},
            )

        imported = self._import(items, topic, difficulty)
        logger.info("Generated %d questions (%d imported) for %s at %s using %s",
                    len(items), len(imported), topic, difficulty, provider)
        return AgentResponse(
            content=(f"Generated {len(items)} questions for {topic} at {difficulty} level, "
                     f"imported {len(imported)}"),
            agent=self.AGENT_NAME,
            confidence=0.85 if imported else 0.3,
            metadata={
                "generated": len(items),
                "imported": len(imported),
                "question_ids": imported,
                "api_used": provider,
                "metrics": metrics,
            },
        )

    def _import(self, items: list[dict], topic: str, difficulty: str) -> list[str]:
        questions = QuestionStoreDB()
        options = AnswerOptionStoreDB()
        imported: list[str] = []
        for item in items:
            try:
                question, question_options = to_question_records(item, topic, difficulty)
                questions.upsert(question)
                options.upsert_options(question["question_id"], question_options)
            except Exception as e:
                rollback_db()
                logger.warning("Failed to import generated question %s: %s",
                               item.get("question_id", "?"), e)
                continue
            imported.append(question["question_id"])
        return imported
