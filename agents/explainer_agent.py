"""Explainer Agent — student-facing misconception explanations.

Four request shapes:
  - a single mistake (question, answers, misconception) via Perplexity -> OpenAI
  - a misconception concept (code + topics) via OpenAI -> Deepseek, cached
  - a whole student: their top misconceptions, each served from the
    explanation cache or generated and stored there
  - a focus area: one weak topic, built from the student's accuracy there,
    their latest wrong answers and the subtopics they trip on

On failure the response carries a friendly fallback text and an "error"
entry in metadata; the caller decides the HTTP status.
"""

from __future__ import annotations

import logging

from agents.base import AgentResponse
from ai_resilience import call_with_fallback, provider_chain
from database import rollback_db
from db_stores import (
    ExplanationCacheDB,
    StudentResponseStoreDB,
    student_misconception_cache_key,
)

logger = logging.getLogger(__name__)

MISTAKE_PROVIDERS = ("perplexity", "openai")
CONCEPT_PROVIDERS = ("openai", "deepseek")
TOP_MISCONCEPTIONS = 3
RECENT_ERRORS = 5

FALLBACK_EXPLANATION = (
    "I'm having trouble creating an explanation right now. The basic idea is to "
    "learn from this mistake and try a different approach next time!"
)

TUTOR_SYSTEM = (
    "You are a helpful math tutor who explains concepts clearly and encouragingly. "
    "You respect students' intelligence while keeping explanations accessible. "
    "Be engaging and supportive without being condescending."
)

MISTAKE_PROMPT = """Help explain a math mistake to a student. Be encouraging but respectful - don't talk down to them.

Question: {question}
Their answer: {student_answer}
Correct answer: {correct_answer}
Mistake type: {misconception}
Topic: {topic}

Create a SHORT, engaging explanation with exactly these 3 parts:

What happened: [1 sentence - what they likely did or thought]
Why this mistake is common: [1 sentence - why this happens to many students]
How to get it right: [1 sentence - clear, practical tip]

Rules:
- Use "you" naturally, not like talking to a little kid
- Keep each part to 1 sentence
- Total: 3-4 sentences max"""

CONCEPT_SYSTEM = """You are an expert mathematics educator who specializes in explaining common misconceptions to 11+ students. Your explanations should:
- Be clear and easy to understand
- Include specific examples with numbers
- Explain why the misconception happens
- Provide a correct approach
- Be encouraging and supportive"""

CONCEPT_PROMPT = """Explain the misconception "{misconception}" in the context of topics: {topics}.

Please provide:
1. What this misconception means
2. Why students commonly make this mistake
3. A specific example showing the wrong and right approach
4. Tips to avoid this mistake in the future"""

FOCUS_FALLBACK = (
    "I'm having trouble creating an explanation right now, but don't worry - "
    "you're doing great! Keep practising and try again later!"
)

FOCUS_SYSTEM = (
    "You are the most encouraging, fun math teacher ever! You love helping kids learn "
    "and always make them feel confident and excited about math."
)

FOCUS_PROMPT = """A student preparing for the 11+ needs help with {topic}.

Here's what's happening:
- Their accuracy in {topic} is {accuracy_pct}%
- They've tried {total_attempts} questions
- They're struggling with: {subtopics}
- Recent mistakes: {recent_errors} wrong answers

Write a short, encouraging explanation with these sections:

**Why {topic} is useful**
[Where this topic shows up in everyday life]

**What's been tricky**
[In simple words, which parts have been hard, without making them feel bad]

**Tips to get better**
[3-4 simple ways to practise and improve]

**You're already doing well because...**
[Something positive about their learning so far]

Keep the language simple and the whole thing short."""


class ExplainerAgent:
    """Generates explanations through the provider fallback chains."""

    AGENT_NAME = "explainer_agent"

    def __init__(self, config) -> None:
        self.mistake_chain = provider_chain(config, MISTAKE_PROVIDERS)
        self.concept_chain = provider_chain(config, CONCEPT_PROVIDERS)
        self.concept_cache_ttl = int(config.get("CONCEPT_EXPLANATION_CACHE_TTL", 86400))

    def _failure(self, error: Exception | str, fallback: str = FALLBACK_EXPLANATION,
                 **metadata) -> AgentResponse:
        return AgentResponse(
            content=fallback,
            agent=self.AGENT_NAME,
            confidence=0.0,
            metadata={"error": str(error), **metadata},
        )

    def explain_mistake(self, question: str, student_answer: str, correct_answer: str,
                        misconception: str = "", topic: str = "") -> AgentResponse:
        """Three-part explanation of one wrong answer."""
        prompt = MISTAKE_PROMPT.format(
            question=question,
            student_answer=student_answer,
            correct_answer=correct_answer,
            misconception=misconception or "unknown",
            topic=topic or "mathematics",
        )
        try:
            text, provider, metrics = call_with_fallback(
                self.mistake_chain, prompt, system=TUTOR_SYSTEM,
                max_tokens=500, temperature=0.8,
            )
        except Exception as e:
            logger.error("Mistake explanation failed: %s", e)
            return self._failure(e)

        logger.info("Generated mistake explanation using %s", provider)
        return AgentResponse(
            content=text,
            agent=self.AGENT_NAME,
            confidence=0.85,
            metadata={"api_used": provider, "metrics": metrics},
        )

    def explain_concept(self, misconception: str, topics: list[str] | None = None) -> AgentResponse:
        """General explanation of a misconception; identical for every student."""
        prompt = CONCEPT_PROMPT.format(
            misconception=misconception,
            topics=", ".join(topics) if topics else "mathematics",
        )
        try:
            text, provider, metrics = call_with_fallback(
                self.concept_chain, prompt, system=CONCEPT_SYSTEM,
                cache_ttl=self.concept_cache_ttl, max_tokens=800, temperature=0.7,
            )
        except Exception as e:
            logger.error("Concept explanation failed for %s: %s", misconception, e)
            return self._failure(e, misconception=misconception)

        return AgentResponse(
            content=text,
            agent=self.AGENT_NAME,
            confidence=0.85,
            metadata={"api_used": provider, "misconception": misconception, "metrics": metrics},
        )

    def explain_student(self, student_id: str) -> AgentResponse:
        """Explain a student's most frequent misconceptions."""
        try:
            frequencies = StudentResponseStoreDB(student_id).misconception_frequencies()
        except Exception as e:
            rollback_db()
            logger.error("Could not load misconceptions for %s: %s", student_id, e, exc_info=True)
            return self._failure(e, student_id=student_id)

        top = frequencies[:TOP_MISCONCEPTIONS]
        if not top:
            return AgentResponse(
                content="No misconceptions recorded yet. Keep practising!",
                agent=self.AGENT_NAME,
                confidence=1.0,
                metadata={"api_used": "none", "misconceptions": []},
            )

        cache = ExplanationCacheDB()
        details: list[dict] = []
        sources: set[str] = set()
        for entry in top:
            code = entry["misconception_code"]
            key = student_misconception_cache_key(student_id, code)
            text = cache.get(key)
            if text is not None:
                sources.add("cache")
                details.append({"misconception_code": code, "frequency": entry["frequency"],
                                "explanation": text, "from_cache": True})
                continue

            generated = self.explain_concept(code, entry["topics"])
            if generated.failed:
                return self._failure(generated.metadata["error"], student_id=student_id)
            provider = generated.metadata["api_used"]
            try:
                cache.put(key, generated.content, provider)
            except Exception as e:
                rollback_db()
                logger.warning("Could not cache explanation %s: %s", key, e)
            sources.add(provider)
            details.append({"misconception_code": code, "frequency": entry["frequency"],
                            "explanation": generated.content, "from_cache": False})

        combined = "\n\n".join(f"**{d['misconception_code']}**\n{d['explanation']}" for d in details)
        return AgentResponse(
            content=combined,
            agent=self.AGENT_NAME,
            confidence=0.85,
            metadata={"api_used": ",".join(sorted(sources)), "misconceptions": details},
            follow_up="Would you like some practice questions on these?",
        )

    def explain_focus_area(self, student_id: str, topic: str) -> AgentResponse:
        """Encouraging walkthrough of one weak topic.

        metadata["focus_area"] carries the numbers the prompt was built from,
        so the caller can show them next to the text.
        """
        store = StudentResponseStoreDB(student_id)
        try:
            stats = store.topic_accuracy().get(topic, {})
            wrong = store.recent_wrong_in_topic(topic, RECENT_ERRORS)
        except Exception as e:
            rollback_db()
            logger.error("Could not load focus area %s for %s: %s", topic, student_id, e,
                         exc_info=True)
            return self._failure(e, FOCUS_FALLBACK, student_id=student_id, topic=topic)

        subtopics = sorted({w["subtopic"] for w in wrong if w["subtopic"]})
        codes = sorted({w["misconception_detected"] for w in wrong if w["misconception_detected"]})
        focus = {
            "topic": topic,
            "accuracy": round(stats.get("accuracy_percentage", 0.0) / 100, 3),
            "totalAttempts": stats.get("total", 0),
            "strugglingSubtopics": subtopics,
            "commonMisconceptions": codes,
            "recentErrors": len(wrong),
        }
        if not focus["totalAttempts"]:
            return AgentResponse(
                content=f"No answers in {topic} yet. Try a few questions and check back!",
                agent=self.AGENT_NAME,
                confidence=1.0,
                metadata={"api_used": "none", "focus_area": focus},
            )

        prompt = FOCUS_PROMPT.format(
            topic=topic,
            accuracy_pct=round(focus["accuracy"] * 100),
            total_attempts=focus["totalAttempts"],
            subtopics=", ".join(subtopics) or "various parts of this topic",
            recent_errors=focus["recentErrors"],
        )
        try:
            text, provider, metrics = call_with_fallback(
                self.concept_chain, prompt, system=FOCUS_SYSTEM,
                max_tokens=800, temperature=0.8,
            )
        except Exception as e:
            logger.error("Focus area explanation failed for %s/%s: %s", student_id, topic, e)
            return self._failure(e, FOCUS_FALLBACK, student_id=student_id, focus_area=focus)

        logger.info("Generated focus area explanation for %s using %s", topic, provider)
        return AgentResponse(
            content=text,
            agent=self.AGENT_NAME,
            confidence=0.85,
            metadata={"api_used": provider, "focus_area": focus, "metrics": metrics},
        )
