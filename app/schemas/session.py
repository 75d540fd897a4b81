from datetime import datetime, timezone
from enum import Enum
from typing import Optional

from pydantic import BaseModel, Field

from app.schemas.analysis import AnswerRecord


class SessionStatus(str, Enum):
    PRESCREENING = "prescreening"
    PRESCREENING_COMPLETE = "prescreening_complete"
    QUESTIONS_READY = "questions_ready"
    PARTNER1_COMPLETE = "partner1_complete"
    PARTNER2_COMPLETE = "partner2_complete"
    BOTH_COMPLETE = "both_complete"
    COMPLETED = "completed"


class AssessmentSession(BaseModel):
    id: str
    session_code: str
    partner1_name: str
    partner2_name: Optional[str] = None
    status: SessionStatus = SessionStatus.PRESCREENING
    created_at: datetime
    expires_at: datetime

    def is_expired(self, now: Optional[datetime] = None) -> bool:
        return (now or datetime.now(timezone.utc)) >= self.expires_at


class SessionCreate(BaseModel):
    partner1_name: str = Field(min_length=1, max_length=80)
    partner2_name: Optional[str] = Field(default=None, max_length=80)


class SessionJoin(BaseModel):
    session_code: str = Field(min_length=8, max_length=8)
    partner2_name: Optional[str] = Field(default=None, max_length=80)


class SessionJoinResponse(BaseModel):
    session: AssessmentSession
    already_completed: bool


class AnswersSubmit(BaseModel):
    answers: list[AnswerRecord] = Field(min_length=1)


class AssessmentProgress(BaseModel):
    partner1_progress: int
    partner2_progress: int
    total_questions: int
    partner1_complete: bool
    partner2_complete: bool
    both_complete: bool
