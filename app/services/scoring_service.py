"""
Luna Assessment — Alignment Scoring

Importance-weighted agreement between two partners' answers:

    credit(q)   = w_q                                if answers match
                = w_q × max(0, 1 − weightDiff_q / 3)  otherwise
    score       = round(100 × Σ credit(q) / Σ w_q)   clamped to [0, 100]

where ``w_q`` is the question's importance weight (CRITICAL 1.5 … NICE_TO_HAVE
0.7) and ``weightDiff_q`` is the distance between the two chosen options on
the question's own 1–4 scale.  Priority relevance only drives flagging and
ordering; it adds no weight of its own.

Questions missing either partner's answer, or carrying a value that is not
one of the question's options, are excluded from every figure.

Everything here is pure and synchronous; no LLM involvement.
"""

from __future__ import annotations

import math
from collections import defaultdict
from collections.abc import Sequence
from dataclasses import dataclass, field

import structlog

from app.schemas.analysis import CoupleAnswers, Misalignment, StrongAlignment
from app.schemas.prescreening import NormalizedContext
from app.schemas.question import Question, QuestionOption
from app.services.catalog import narrative_templates

logger = structlog.get_logger("luna.scoring_service")

MAX_WEIGHT_DIFF = 3
TOP_N = 5

# Priorities whose questions live under a differently named category.
PRIORITY_CATEGORY_ALIASES: dict[str, str] = {
    "financial_goal": "finances",
    "buy_home": "home",
    "baby": "family",
}

EXCEPTIONAL_THRESHOLD = 80
SOLID_THRESHOLD = 60


@dataclass(frozen=True)
class ScoredQuestion:
    question: Question
    partner1_option: QuestionOption
    partner2_option: QuestionOption
    is_high_priority: bool
    is_priority_category: bool

    @property
    def aligned(self) -> bool:
        return self.partner1_option.value == self.partner2_option.value

    @property
    def weight_diff(self) -> int:
        return abs(self.partner1_option.weight - self.partner2_option.weight)

    @property
    def credit(self) -> float:
        weight = self.question.importance_weight
        if self.aligned:
            return weight
        return weight * max(0.0, 1.0 - self.weight_diff / MAX_WEIGHT_DIFF)


@dataclass
class ScoreBreakdown:
    alignment_score: int
    category_scores: dict[str, int]
    strong_alignments: list[StrongAlignment]
    misalignments: list[Misalignment]
    questions_asked: int
    aligned_count: int
    misaligned_count: int
    priority_score: int
    excluded_question_ids: list[str] = field(default_factory=list)


def priority_category(priority: str) -> str:
    return PRIORITY_CATEGORY_ALIASES.get(priority, priority)


def is_priority_category(category: str, context: NormalizedContext) -> bool:
    return category in (context.current_priority, priority_category(context.current_priority))


def is_high_priority(category: str, context: NormalizedContext) -> bool:
    """True when ``category`` is the couple's priority or one of their focus areas."""
    return is_priority_category(category, context) or category in context.focus_areas


def weighted_agreement(scored: Sequence[ScoredQuestion]) -> int:
    """Weighted agreement percentage, rounded half-up; 0 when nothing is scored."""
    denominator = sum(s.question.importance_weight for s in scored)
    if denominator <= 0:
        return 0
    numerator = sum(s.credit for s in scored)
    score = math.floor(100 * numerator / denominator + 0.5)
    return max(0, min(100, score))


def misalignment_severity(weight_diff: int, high_priority: bool) -> str:
    if weight_diff >= 2 or (high_priority and weight_diff >= 1):
        return "high"
    if weight_diff == 1:
        return "medium"
    return "low"


class ScoringService:
    """Computes the numeric half of an ``AlignmentResult``."""

    def __init__(self, top_n: int = TOP_N) -> None:
        self._top_n = top_n

    def collect(
        self,
        context: NormalizedContext,
        questions: Sequence[Question],
        answers: CoupleAnswers,
    ) -> tuple[list[ScoredQuestion], list[str]]:
        """Pair up both partners' options per question.

        Returns the scorable questions and the ids that were excluded.
        """
        scored: list[ScoredQuestion] = []
        excluded: list[str] = []

        for question in questions:
            value1 = answers.partner1.get(question.id)
            value2 = answers.partner2.get(question.id)
            if value1 is None or value2 is None:
                excluded.append(question.id)
                logger.debug("answer_missing", question_id=question.id)
                continue

            option1 = question.option_for(value1)
            option2 = question.option_for(value2)
            if option1 is None or option2 is None:
                excluded.append(question.id)
                logger.warning(
                    "answer_excluded",
                    question_id=question.id,
                    reason="value_not_in_options",
                )
                continue

            scored.append(
                ScoredQuestion(
                    question=question,
                    partner1_option=option1,
                    partner2_option=option2,
                    is_high_priority=is_high_priority(question.category, context),
                    is_priority_category=is_priority_category(question.category, context),
                )
            )

        return scored, excluded

    def score(
        self,
        context: NormalizedContext,
        questions: Sequence[Question],
        answers: CoupleAnswers,
    ) -> ScoreBreakdown:
        """Score both partners' answers against the question set.

        Parameters
        ----------
        context:
            Normalised couple context (priority and focus areas).
        questions:
            The session's question set.
        answers:
            Both partners' answers keyed by question id.

        Returns
        -------
        ScoreBreakdown
            Overall and per-category scores, the top strong alignments and
            misalignments, and counts used by the narrative.
        """
        scored, excluded = self.collect(context, questions, answers)

        by_category: dict[str, list[ScoredQuestion]] = defaultdict(list)
        for item in scored:
            by_category[item.question.category].append(item)

        alignment_score = weighted_agreement(scored)
        category_scores = {
            category: weighted_agreement(items)
            for category, items in by_category.items()
        }

        aligned = [s for s in scored if s.aligned]
        misaligned = [s for s in scored if not s.aligned]

        strong = sorted(
            aligned,
            key=lambda s: (-s.question.importance_weight, not s.is_high_priority),
        )[: self._top_n]
        apart = sorted(
            misaligned,
            key=lambda s: (-s.weight_diff, not s.is_high_priority),
        )[: self._top_n]

        priority_score = category_scores.get(
            priority_category(context.current_priority), alignment_score
        )

        logger.info(
            "scoring_complete",
            alignment_score=alignment_score,
            questions_asked=len(scored),
            excluded=len(excluded),
            aligned=len(aligned),
            misaligned=len(misaligned),
        )

        return ScoreBreakdown(
            alignment_score=alignment_score,
            category_scores=category_scores,
            strong_alignments=[
                self._strong_alignment(s, category_scores) for s in strong
            ],
            misalignments=[self._misalignment(s, context) for s in apart],
            questions_asked=len(scored),
            aligned_count=len(aligned),
            misaligned_count=len(misaligned),
            priority_score=priority_score,
            excluded_question_ids=excluded,
        )

    # ── Entry builders ────────────────────────────────────────────────────

    def _strong_alignment(
        self,
        item: ScoredQuestion,
        category_scores: dict[str, int],
    ) -> StrongAlignment:
        templates = narrative_templates()["alignment_insights"]
        category = item.question.category
        category_score = category_scores.get(category, 0)
        if category_score >= EXCEPTIONAL_THRESHOLD:
            template = templates["exceptional"]
        elif category_score >= SOLID_THRESHOLD:
            template = templates["solid"]
        else:
            template = templates["developing"]

        return StrongAlignment(
            question_id=item.question.id,
            question=item.question.question,
            category=category,
            shared_answer=item.partner1_option.label,
            importance_weight=item.question.importance_weight,
            is_high_priority=item.is_high_priority,
            insight=template.format(category=category.replace("_", " ")),
        )

    def _misalignment(self, item: ScoredQuestion, context: NormalizedContext) -> Misalignment:
        text = narrative_templates()
        insights = text["misalignment_insights"]
        if item.is_priority_category:
            insight = insights["priority"].format(
                priority_phrase=text["priority_phrases"][context.current_priority]
            )
        elif item.is_high_priority:
            insight = insights["focus"]
        else:
            insight = insights["default"]

        return Misalignment(
            question_id=item.question.id,
            question=item.question.question,
            category=item.question.category,
            partner1_answer=item.partner1_option.label,
            partner2_answer=item.partner2_option.label,
            weight_diff=item.weight_diff,
            importance_weight=item.question.importance_weight,
            is_high_priority=item.is_high_priority,
            severity=misalignment_severity(item.weight_diff, item.is_high_priority),
            insight=insight,
            discussion_prompt=text["discussion"]["misalignment"].format(
                question=item.question.question
            ),
        )
