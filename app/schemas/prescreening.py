from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field


class RelationshipLength(str, Enum):
    UNDER_1_YEAR = "under_1_year"
    ONE_TO_THREE_YEARS = "1_3_years"
    THREE_TO_FIVE_YEARS = "3_5_years"
    FIVE_PLUS_YEARS = "5_plus_years"
    UNKNOWN = "unknown"


class WantsChildren(str, Enum):
    YES_SOON = "yes_soon"
    YES_LATER = "yes_later"
    MAYBE = "maybe"
    NO = "no"
    UNSET = "unset"


class LivingSituation(str, Enum):
    TOGETHER = "together"
    SEPARATE = "separate"
    LONG_DISTANCE = "long_distance"
    UNKNOWN = "unknown"


class AssessmentDepth(str, Enum):
    QUICK = "quick"
    STANDARD = "standard"
    DEEP = "deep"


FOCUS_AREAS: tuple[str, ...] = (
    "finances", "travel", "home", "career",
    "family", "lifestyle", "communication", "values",
)
DEFAULT_FOCUS_AREAS: tuple[str, ...] = ("finances", "communication", "values")

PRIORITIES: tuple[str, ...] = (
    "moving", "buy_home", "wedding", "baby",
    "financial_goal", "travel_trip", "career_change", "just_exploring",
)
DEFAULT_PRIORITY = "just_exploring"


class QuestionRange(BaseModel):
    model_config = ConfigDict(frozen=True)

    min: int
    max: int
    target: int


DEPTH_RANGES: dict[AssessmentDepth, QuestionRange] = {
    AssessmentDepth.QUICK: QuestionRange(min=10, max=15, target=12),
    AssessmentDepth.STANDARD: QuestionRange(min=18, max=25, target=20),
    AssessmentDepth.DEEP: QuestionRange(min=30, max=40, target=35),
}


class CouplePrescreening(BaseModel):
    """Raw prescreening answers for both partners, keyed by question id."""

    partner1: dict[str, Any] = Field(default_factory=dict)
    partner2: dict[str, Any] = Field(default_factory=dict)


class NormalizedContext(BaseModel):
    model_config = ConfigDict(frozen=True)

    relationship_length: RelationshipLength = RelationshipLength.UNKNOWN
    is_married: bool = False
    has_children: bool = False
    owns_home: bool = False
    wants_children: WantsChildren = WantsChildren.UNSET
    living_situation: LivingSituation = LivingSituation.UNKNOWN
    focus_areas: tuple[str, ...] = DEFAULT_FOCUS_AREAS
    current_priority: str = DEFAULT_PRIORITY
    assessment_depth: AssessmentDepth = AssessmentDepth.STANDARD

    @property
    def question_range(self) -> QuestionRange:
        return DEPTH_RANGES[self.assessment_depth]


class PrescreeningSubmit(BaseModel):
    answers: dict[str, Any]


class PrescreeningStatus(BaseModel):
    partner1_complete: bool
    partner2_complete: bool
    both_complete: bool


class PrescreeningOption(BaseModel):
    value: Any
    label: str


class PrescreeningQuestion(BaseModel):
    id: str
    question: str
    type: str
    section: str
    options: list[PrescreeningOption]
    depends_on: Optional[dict[str, Any]] = None
