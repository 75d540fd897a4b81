from datetime import datetime, timezone
from typing import Literal

from pydantic import BaseModel, Field


class AnswerRecord(BaseModel):
    question_id: str
    value: str


class CoupleAnswers(BaseModel):
    """Both partners' answers keyed by question id."""

    partner1: dict[str, str] = Field(default_factory=dict)
    partner2: dict[str, str] = Field(default_factory=dict)


class StrongAlignment(BaseModel):
    question_id: str
    question: str
    category: str
    shared_answer: str
    importance_weight: float
    is_high_priority: bool
    insight: str


class Misalignment(BaseModel):
    question_id: str
    question: str
    category: str
    partner1_answer: str
    partner2_answer: str
    weight_diff: int = Field(ge=0, le=3)
    importance_weight: float
    is_high_priority: bool
    severity: Literal["high", "medium", "low"]
    insight: str
    discussion_prompt: str


class AlignmentResult(BaseModel):
    alignment_score: int = Field(ge=0, le=100)
    category_scores: dict[str, int]
    strong_alignments: list[StrongAlignment]
    misalignments: list[Misalignment]
    narrative: str
    discussion_prompts: list[str]
    recommended_goals: list[str]
    questions_asked: int
    analysis_model: str
    used_fallback_narrative: bool
    generated_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))


class FollowUpRequest(BaseModel):
    question_id: str
    partner_number: int = Field(ge=1, le=2)


class FollowUpQuestion(BaseModel):
    question_id: str
    partner_number: int
    follow_up: str
    used_fallback: bool


class ConversationalResponseSubmit(BaseModel):
    question_id: str
    luna_question: str = Field(min_length=1)
    partner_response: str = Field(min_length=1, max_length=4000)


class ConversationalResponse(BaseModel):
    """A partner's free-text reply to a follow-up question."""

    topic: str
    partner_number: int = Field(ge=1, le=2)
    luna_question: str
    partner_response: str
    response_order: int = Field(ge=1)
    created_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
