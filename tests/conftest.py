"""Shared pytest fixtures for Luna assessment tests."""
import json
from unittest.mock import AsyncMock, MagicMock

import pytest

from app.config import get_settings
from app.exceptions import LLMUnavailableError
from app.schemas.question import IMPORTANCE_WEIGHTS, Importance, Question, QuestionOption
from app.services.llm_service import LLMCompletion


@pytest.fixture(autouse=True)
def _offline_settings(monkeypatch):
    """Run every test without a Gemini key or Redis, on fresh settings."""
    monkeypatch.setenv("GEMINI_API_KEY", "")
    monkeypatch.setenv("REDIS_URL", "")
    get_settings.cache_clear()
    yield
    get_settings.cache_clear()


def make_question(
    qid,
    category="general",
    importance=Importance.NORMAL,
    weights=(1, 2, 3, 4),
    text=None,
):
    """Build a question whose option values are ``opt1``..``optN``."""
    return Question(
        id=qid,
        category=category,
        importance=importance,
        importance_weight=IMPORTANCE_WEIGHTS[importance],
        question=text or f"Question {qid}?",
        options=[
            QuestionOption(value=f"opt{w}", label=f"Option {w}", weight=w)
            for w in weights
        ],
    )


def llm_question_payload(count, category="moving", prefix="llm"):
    """A JSON array string shaped like a well-behaved LLM reply."""
    entries = [
        {
            "id": f"{prefix}{i}",
            "category": category,
            "importance": "IMPORTANT",
            "importanceWeight": 1.2,
            "question": f"Generated question number {i} about {category}?",
            "options": [
                {"value": f"a{i}", "label": "First", "weight": 1},
                {"value": f"b{i}", "label": "Second", "weight": 2},
                {"value": f"c{i}", "label": "Third", "weight": 3},
                {"value": f"d{i}", "label": "Fourth", "weight": 4},
            ],
        }
        for i in range(1, count + 1)
    ]
    return "Here are the questions:\n" + json.dumps(entries) + "\nEnjoy!"


@pytest.fixture
def failing_llm():
    """LLM collaborator that is always unavailable."""
    llm = MagicMock()
    llm.enabled = False
    llm.complete = AsyncMock(side_effect=LLMUnavailableError("GEMINI_API_KEY is not configured"))
    return llm


@pytest.fixture
def make_llm():
    """Factory for an LLM collaborator returning fixed text."""
    def _make(text, model="gemini-3-pro-preview"):
        llm = MagicMock()
        llm.enabled = True
        llm.complete = AsyncMock(return_value=LLMCompletion(text=text, model=model))
        return llm
    return _make


@pytest.fixture
def full_prescreening():
    """A complete answer set for one partner (no children, not married)."""
    return {
        "relationship_length": "1_3_years",
        "is_married": False,
        "living_situation": "together",
        "owns_home": False,
        "has_children": False,
        "wants_children": "yes_later",
        "focus_areas": ["finances", "communication"],
        "current_priority": "moving",
        "assessment_depth": "quick",
    }


@pytest.fixture
def moving_prescreening():
    """Partner 1 planning a move, quick depth, not married; partner 2 blank."""
    return {
        "partner1": {
            "current_priority": "moving",
            "focus_areas": ["finances"],
            "assessment_depth": "quick",
            "is_married": False,
        },
        "partner2": {},
    }


@pytest.fixture
def scored_questions():
    """Six questions across three categories with mixed importance."""
    return [
        make_question("fin1", "finances", Importance.CRITICAL),
        make_question("fin2", "finances", Importance.IMPORTANT),
        make_question("comm1", "communication", Importance.NORMAL),
        make_question("comm2", "communication", Importance.NICE_TO_HAVE),
        make_question("mov1", "moving", Importance.CRITICAL),
        make_question("mov2", "moving", Importance.IMPORTANT),
    ]


@pytest.fixture
def question_factory():
    return make_question


@pytest.fixture
def llm_questions():
    return llm_question_payload
