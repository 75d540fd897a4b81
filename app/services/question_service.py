"""
Luna Assessment — Question Selector

Produces the assessment question set for a session.  The primary path asks
the LLM for a personalised set; the deterministic pool is the fallback and
the top-up source.

Pipeline:
  1. Derive the couple context and the depth's [min, max] range
  2. Build the prompt: context summary, adaptive guidance, 50/30/20 mix
  3. Extract the first JSON array from the reply and validate each entry
  4. Nothing usable            -> pool selection only (``used_fallback``)
     Fewer than ``min`` valid  -> merge pool questions (``supplemented``)
  5. Truncate to ``max``

``generate_questions`` never raises; every failure degrades to the pool.
"""

from __future__ import annotations

import json
import math
from collections.abc import Mapping
from typing import Any, Optional

import structlog

from app.config import get_settings
from app.schemas.prescreening import (
    CouplePrescreening,
    LivingSituation,
    NormalizedContext,
    RelationshipLength,
    WantsChildren,
)
from app.schemas.question import (
    IMPORTANCE_WEIGHTS,
    MAX_IMPORTANCE_WEIGHT,
    MIN_IMPORTANCE_WEIGHT,
    GeneratedQuestions,
    Importance,
    PartnerNames,
    Question,
    QuestionOption,
)
from app.services.catalog import narrative_templates
from app.services.context_service import derive_context
from app.services.llm_service import LLMService, extract_json_array
from app.services.question_pool import QuestionPool

logger = structlog.get_logger("luna.question_service")

_PROMPT_EXAMPLE = [
    {
        "id": "q1",
        "category": "moving",
        "importance": "CRITICAL",
        "importanceWeight": 1.5,
        "question": "When choosing your new location, what's most important to you?",
        "options": [
            {"value": "career_opportunities", "label": "Career and job opportunities", "weight": 1},
            {"value": "cost_of_living", "label": "Affordable cost of living", "weight": 2},
            {"value": "lifestyle_amenities", "label": "Lifestyle and amenities (restaurants, culture)", "weight": 3},
            {"value": "community_family", "label": "Community and proximity to family/friends", "weight": 4},
        ],
    }
]


# ══════════════════════════════════════════════════════════════════════════════
# Prompt construction
# ══════════════════════════════════════════════════════════════════════════════

def adaptive_guidance(context: NormalizedContext) -> list[str]:
    """Situation-specific instructions that keep irrelevant questions out."""
    lines = narrative_templates()["guidance"]
    guidance = [lines["married"] if context.is_married else lines["not_married"]]

    if context.has_children:
        guidance.append(lines["has_children"])
    elif context.wants_children == WantsChildren.NO:
        guidance.append(lines["no_children_wanted"])
    elif context.wants_children == WantsChildren.YES_SOON:
        guidance.append(lines["children_soon"])

    if context.owns_home:
        guidance.append(lines["owns_home"])

    if context.living_situation == LivingSituation.LONG_DISTANCE:
        guidance.append(lines["long_distance"])
    elif context.living_situation == LivingSituation.SEPARATE:
        guidance.append(lines["separate"])
    elif context.living_situation == LivingSituation.TOGETHER:
        guidance.append(lines["together"])

    if context.relationship_length == RelationshipLength.UNDER_1_YEAR:
        guidance.append(lines["under_1_year"])
    elif context.relationship_length == RelationshipLength.FIVE_PLUS_YEARS:
        guidance.append(lines["5_plus_years"])

    return guidance


def build_context_summary(context: NormalizedContext, names: PartnerNames) -> str:
    text = narrative_templates()
    lines = [
        f"COUPLE: {names.partner1} and {names.partner2}",
        "",
        "RELATIONSHIP CONTEXT:",
        f"- Relationship length: {text['relationship_length_labels'][context.relationship_length.value]}",
        f"- Currently married: {'Yes' if context.is_married else 'No'}",
        f"- Living situation: {text['living_situation_labels'][context.living_situation.value]}",
        f"- Own a home together: {'Yes' if context.owns_home else 'No'}",
        f"- Have children: {'Yes' if context.has_children else 'No'}",
    ]
    if context.wants_children != WantsChildren.UNSET:
        lines.append(
            f"- Thoughts on children: {text['wants_children_labels'][context.wants_children.value]}"
        )
    lines += [
        "",
        f"CURRENT PRIORITY: {text['priority_labels'][context.current_priority]}",
        f"FOCUS AREAS: {', '.join(context.focus_areas)}",
        f"DEPTH: {context.assessment_depth.value}",
        "",
        "ADAPTIVE GUIDANCE (use their context to ask RELEVANT questions):",
    ]
    lines += [f"- {line}" for line in adaptive_guidance(context)]
    return "\n".join(lines)


def build_question_prompt(context: NormalizedContext, names: PartnerNames) -> tuple[str, str]:
    """Return ``(system_prompt, user_prompt)`` for question generation."""
    text = narrative_templates()
    bounds = context.question_range
    priority = context.current_priority
    priority_description = text["priority_descriptions"][priority]
    focus_descriptions = text["focus_area_descriptions"]
    focus_list = ", ".join(context.focus_areas)

    system_prompt = f"""You are Luna, an empathetic AI relationship coach with deep intuition about what truly matters in relationships.

Your task is to generate thoughtful compatibility questions that feel like a warm, insightful conversation - not a clinical survey.

REQUIREMENTS:
1. Generate between {bounds.min} and {bounds.max} questions
2. Their MAIN GOAL right now is: {priority_description}
3. They want to explore it through the lens of: {'; '.join(focus_descriptions[a] for a in context.focus_areas)}

Questions should be about their PRIORITY ({priority}) viewed through their FOCUS AREAS ({focus_list}).

IMPORTANCE LEVELS:
- CRITICAL (1.5x weight): Dealbreaker territory - must align
- IMPORTANT (1.2x weight): Should align - significant impact
- NORMAL (1.0x weight): Good to align - helpful to know
- NICE_TO_HAVE (0.7x weight): Minor preferences

Each question needs 4 options with weights 1-4 representing a spectrum of valid perspectives."""

    focus_lines = "\n".join(
        f"{area.upper()}: {focus_descriptions[area]}" for area in context.focus_areas
    )
    user_prompt = f"""Generate {bounds.min}-{bounds.max} personalized compatibility questions for this couple:

{build_context_summary(context, names)}

THEIR MAIN GOAL: {priority_description}
FOCUS AREAS:
{focus_lines}

QUESTION DISTRIBUTION:
- About 50% of questions should directly relate to their priority ({priority})
- About 30% should cover their chosen focus areas ({focus_list})
- About 20% can cover foundational relationship topics

Return ONLY a valid JSON array (no other text):
{json.dumps(_PROMPT_EXAMPLE, indent=2)}"""

    return system_prompt, user_prompt


# ══════════════════════════════════════════════════════════════════════════════
# Response validation
# ══════════════════════════════════════════════════════════════════════════════

def _normalize_option(raw: Any) -> Optional[QuestionOption]:
    if not isinstance(raw, Mapping):
        return None

    value = raw.get("value")
    if isinstance(value, bool) or not isinstance(value, (str, int, float)):
        return None
    value = str(value).strip()
    if not value:
        return None

    weight = raw.get("weight")
    if isinstance(weight, str) and weight.strip().isdigit():
        weight = int(weight.strip())
    if isinstance(weight, bool) or not isinstance(weight, (int, float)):
        return None
    if isinstance(weight, float) and not weight.is_integer():
        return None
    weight = int(weight)
    if not 1 <= weight <= 4:
        return None

    label = raw.get("label")
    label = label.strip() if isinstance(label, str) and label.strip() else value
    return QuestionOption(value=value, label=label, weight=weight)


def _normalize_importance(raw: Any) -> Importance:
    if isinstance(raw, str):
        key = raw.strip().upper().replace("-", "_").replace(" ", "_")
        try:
            return Importance(key)
        except ValueError:
            pass
    return Importance.NORMAL


def _normalize_weight(raw: Any, importance: Importance) -> float:
    if isinstance(raw, (int, float)) and not isinstance(raw, bool):
        if math.isfinite(raw) and raw > 0:
            return min(MAX_IMPORTANCE_WEIGHT, max(MIN_IMPORTANCE_WEIGHT, float(raw)))
    return IMPORTANCE_WEIGHTS[importance]


def parse_questions_response(text: Optional[str]) -> list[Question]:
    """Validate the LLM reply into strict ``Question`` objects.

    Entries without question text or with fewer than two valid options are
    dropped.  Missing ids become ``q<position>``; a colliding id gets the
    position appended.  Category defaults to ``general`` and importance to
    ``NORMAL``; the importance weight comes from the lookup unless the entry
    supplies a positive one.

    Raises
    ------
    LLMResponseFormatError
        If the reply holds no parseable JSON array.
    """
    raw_entries = extract_json_array(text)
    questions: list[Question] = []
    used_ids: set[str] = set()

    for index, raw in enumerate(raw_entries):
        if not isinstance(raw, Mapping):
            logger.debug("llm_question_dropped", index=index, reason="not_an_object")
            continue

        question_text = raw.get("question") or raw.get("questionText")
        if not isinstance(question_text, str) or not question_text.strip():
            logger.debug("llm_question_dropped", index=index, reason="missing_question")
            continue

        options: list[QuestionOption] = []
        seen_values: set[str] = set()
        raw_options = raw.get("options")
        for raw_option in raw_options if isinstance(raw_options, list) else []:
            option = _normalize_option(raw_option)
            if option is not None and option.value not in seen_values:
                options.append(option)
                seen_values.add(option.value)
        if len(options) < 2:
            logger.debug("llm_question_dropped", index=index, reason="too_few_options")
            continue

        position = len(questions) + 1
        question_id = raw.get("id")
        question_id = str(question_id).strip() if question_id not in (None, "") else ""
        if not question_id:
            question_id = f"q{position}"
        if question_id in used_ids:
            base, suffix = question_id, position
            question_id = f"{base}_{suffix}"
            while question_id in used_ids:
                suffix += 1
                question_id = f"{base}_{suffix}"

        category = raw.get("category")
        category = category.strip().lower() if isinstance(category, str) and category.strip() else "general"

        importance = _normalize_importance(raw.get("importance"))
        weight = _normalize_weight(
            raw.get("importanceWeight", raw.get("importance_weight")), importance
        )

        questions.append(
            Question(
                id=question_id,
                category=category,
                importance=importance,
                importance_weight=weight,
                question=question_text.strip(),
                options=options,
            )
        )
        used_ids.add(question_id)

    return questions


def supplement_questions(
    questions: list[Question],
    fallback: list[Question],
    maximum: int,
) -> list[Question]:
    """Append pool questions whose text and id are not already present, then cap."""
    merged = list(questions)
    texts = {q.question for q in merged}
    ids = {q.id for q in merged}
    for candidate in fallback:
        if candidate.question in texts or candidate.id in ids:
            continue
        merged.append(candidate)
        texts.add(candidate.question)
        ids.add(candidate.id)
    return merged[:maximum]


# ══════════════════════════════════════════════════════════════════════════════
# Service
# ══════════════════════════════════════════════════════════════════════════════

class QuestionService:
    """Generates the immutable question set both partners will answer."""

    def __init__(
        self,
        llm_service: LLMService | None = None,
        question_pool: QuestionPool | None = None,
    ) -> None:
        settings = get_settings()
        self._llm = llm_service if llm_service is not None else LLMService()
        self._pool = question_pool if question_pool is not None else QuestionPool()
        self._max_tokens = settings.QUESTION_MAX_TOKENS
        self._temperature = settings.QUESTION_TEMPERATURE

    def fallback_questions(self, context: NormalizedContext) -> list[Question]:
        return self._pool.select(context)

    async def generate_questions(
        self,
        prescreening: CouplePrescreening | Mapping[str, Any] | None,
        partner_names: PartnerNames | None = None,
    ) -> GeneratedQuestions:
        """Generate a question set, falling back to the pool on any failure.

        Parameters
        ----------
        prescreening:
            Both partners' raw prescreening answers.
        partner_names:
            Display names used in the prompt.

        Returns
        -------
        GeneratedQuestions
            ``questions`` bounded by the depth's maximum; ``used_fallback``
            is True when the LLM contributed nothing.
        """
        context = derive_context(prescreening)
        names = partner_names or PartnerNames()
        bounds = context.question_range

        logger.info(
            "question_generation_start",
            priority=context.current_priority,
            focus_areas=list(context.focus_areas),
            depth=context.assessment_depth.value,
            min_questions=bounds.min,
            max_questions=bounds.max,
        )

        try:
            system_prompt, user_prompt = build_question_prompt(context, names)
            completion = await self._llm.complete(
                user_prompt,
                system_prompt=system_prompt,
                max_tokens=self._max_tokens,
                temperature=self._temperature,
                expect_json=True,
            )
            questions = parse_questions_response(completion.text)
        except Exception as exc:
            logger.warning(
                "question_generation_fallback",
                reason=type(exc).__name__,
                error=str(exc),
            )
            return GeneratedQuestions(
                questions=self.fallback_questions(context),
                used_fallback=True,
            )

        if not questions:
            logger.warning("question_generation_fallback", reason="no_valid_questions")
            return GeneratedQuestions(
                questions=self.fallback_questions(context),
                used_fallback=True,
            )

        supplemented = False
        if len(questions) < bounds.min:
            logger.warning(
                "llm_question_set_short",
                count=len(questions),
                minimum=bounds.min,
            )
            questions = supplement_questions(
                questions, self.fallback_questions(context), bounds.max
            )
            supplemented = True
        elif len(questions) > bounds.max:
            logger.info("llm_question_set_truncated", count=len(questions), maximum=bounds.max)
            questions = questions[: bounds.max]

        if len(questions) < bounds.min:
            logger.warning(
                "question_set_below_minimum",
                source="llm",
                count=len(questions),
                minimum=bounds.min,
            )

        logger.info(
            "question_generation_complete",
            count=len(questions),
            model=completion.model,
            supplemented=supplemented,
            categories=sorted({q.category for q in questions}),
        )
        return GeneratedQuestions(
            questions=questions,
            used_fallback=False,
            supplemented=supplemented,
            model_used=completion.model,
        )
