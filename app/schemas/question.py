from enum import Enum
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field


class Importance(str, Enum):
    CRITICAL = "CRITICAL"
    IMPORTANT = "IMPORTANT"
    NORMAL = "NORMAL"
    NICE_TO_HAVE = "NICE_TO_HAVE"


IMPORTANCE_WEIGHTS: dict[Importance, float] = {
    Importance.CRITICAL: 1.5,
    Importance.IMPORTANT: 1.2,
    Importance.NORMAL: 1.0,
    Importance.NICE_TO_HAVE: 0.7,
}

MIN_IMPORTANCE_WEIGHT = min(IMPORTANCE_WEIGHTS.values())
MAX_IMPORTANCE_WEIGHT = max(IMPORTANCE_WEIGHTS.values())


class QuestionOption(BaseModel):
    model_config = ConfigDict(frozen=True)

    value: str
    label: str
    weight: int = Field(ge=1, le=4)


class Question(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: str
    category: str = "general"
    importance: Importance = Importance.NORMAL
    importance_weight: float = Field(ge=MIN_IMPORTANCE_WEIGHT, le=MAX_IMPORTANCE_WEIGHT)
    question: str = Field(min_length=1)
    options: list[QuestionOption] = Field(min_length=2)

    def option_for(self, value: str) -> Optional[QuestionOption]:
        for option in self.options:
            if option.value == value:
                return option
        return None


class PartnerNames(BaseModel):
    partner1: str = "Partner 1"
    partner2: str = "Partner 2"


class GeneratedQuestions(BaseModel):
    questions: list[Question]
    used_fallback: bool
    supplemented: bool = False
    model_used: Optional[str] = None
