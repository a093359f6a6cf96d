"""
Test fixtures for the bootcamp misconception service.

Provides app, client, auth headers and db fixtures with file-based SQLite.
LLM calls never leave the process: tests patch ai_resilience._do_call.
"""

from __future__ import annotations

import pytest

import sys
from pathlib import Path
sys.path.insert(0, str(Path(__file__).parent.parent))

API_KEY = "test-service-key"
CRON_SECRET = "test-cron-secret"


@pytest.fixture(autouse=True)
def reset_llm_state():
    """Circuit breaker and response cache are module singletons; isolate tests."""
    from ai_resilience import get_circuit_breaker
    from cache_backend import get_cache

    get_circuit_breaker().reset()
    get_cache().clear()
    yield
    get_circuit_breaker().reset()
    get_cache().clear()


@pytest.fixture
def app(tmp_path):
    """Create app with file-based SQLite for testing."""
    from app import create_app

    db_file = str(tmp_path / "test.db")
    app = create_app({
        "TESTING": True,
        "DATABASE": db_file,
        "SECRET_KEY": "test-secret-key",
        "SERVICE_API_KEY": API_KEY,
        "CRON_SECRET": CRON_SECRET,
    })

    with app.app_context():
        from database import ensure_initialized

        ensure_initialized(app)
        yield app


@pytest.fixture
def llm_app(app):
    """App with Deepseek, OpenAI and Perplexity keys configured."""
    app.config.update({
        "DEEPSEEK_API_KEY": "sk-deepseek-test",
        "OPENAI_API_KEY": "sk-openai-test",
        "PERPLEXITY_API_KEY": "pplx-test",
    })
    return app


@pytest.fixture
def client(app):
    return app.test_client()


@pytest.fixture
def auth_headers():
    return {"Authorization": f"Bearer {API_KEY}"}


@pytest.fixture
def cron_headers():
    return {"Authorization": f"Bearer {CRON_SECRET}"}


@pytest.fixture
def db(app):
    """Direct database access for store tests."""
    from database import get_db
    yield get_db()


@pytest.fixture
def fraction_question(app):
    """One question: B correct (with a stray code), A/C tagged, D untagged."""
    from db_stores import AnswerOptionStoreDB, QuestionStoreDB

    QuestionStoreDB().upsert({
        "question_id": "q-frac-1",
        "topic_id": "fractions",
        "difficulty": "foundation",
        "question_text": "What is 1/2 + 1/4?",
        "correct_answer": "3/4",
    })
    AnswerOptionStoreDB().upsert_options("q-frac-1", [
        {"option_letter": "A", "answer_value": "2/6", "is_correct": False,
         "misconception_code": "FR1", "detection_confidence": 0.9},
        {"option_letter": "B", "answer_value": "3/4", "is_correct": True,
         "misconception_code": "FR9"},
        {"option_letter": "C", "answer_value": "1/8", "is_correct": False,
         "misconception_code": "FR2", "detection_confidence": 0},
        {"option_letter": "D", "answer_value": "2/4", "is_correct": False,
         "misconception_code": None},
    ])
    return "q-frac-1"


@pytest.fixture
def seeded(app):
    """Demo question bank plus two students' response histories."""
    from seed_demo_data import seed
    return seed()
