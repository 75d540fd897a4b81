"""
Luna Assessment — Results Analysis

Turns a completed session into an ``AlignmentResult``:

  1. Numeric scoring via ``ScoringService`` (never touches the LLM)
  2. Narrative, discussion prompts and recommended goals from the LLM
  3. Deterministic template fallback for any part the LLM did not deliver

Only a missing question set is surfaced as an error; LLM problems degrade
the narrative and nothing else.
"""

from __future__ import annotations

from collections.abc import Mapping, Sequence
from typing import Any, Optional

import structlog

from app.config import get_settings
from app.exceptions import QuestionSetMissingError
from app.schemas.analysis import (
    AlignmentResult,
    ConversationalResponse,
    CoupleAnswers,
    FollowUpQuestion,
    Misalignment,
)
from app.schemas.prescreening import (
    CouplePrescreening,
    NormalizedContext,
    RelationshipLength,
)
from app.schemas.question import PartnerNames, Question
from app.schemas.session import AssessmentSession
from app.services.catalog import narrative_templates
from app.services.context_service import derive_context
from app.services.llm_service import LLMService, parse_json_object
from app.services.scoring_service import (
    EXCEPTIONAL_THRESHOLD,
    SOLID_THRESHOLD,
    ScoreBreakdown,
    ScoringService,
)

logger = structlog.get_logger("luna.analysis_service")

FALLBACK_MODEL = "fallback"
MAX_GOALS = 4
MAX_MISALIGNMENT_PROMPTS = 3
PROMPT_ALIGNMENTS = 5
PROMPT_CONVERSATIONS = 10


# ══════════════════════════════════════════════════════════════════════════════
# Deterministic fallbacks
# ══════════════════════════════════════════════════════════════════════════════

def build_fallback_narrative(
    context: NormalizedContext,
    breakdown: ScoreBreakdown,
    names: PartnerNames,
) -> str:
    text = narrative_templates()
    templates = text["narrative"]
    phrase = text["priority_phrases"][context.current_priority]

    parts = [
        templates["opening"].format(
            partner1=names.partner1,
            partner2=names.partner2,
            score=breakdown.alignment_score,
        )
    ]

    if context.current_priority != "just_exploring":
        if breakdown.priority_score >= EXCEPTIONAL_THRESHOLD:
            key = "priority_strong"
        elif breakdown.priority_score >= SOLID_THRESHOLD:
            key = "priority_solid"
        else:
            key = "priority_weak"
        parts.append(templates[key].format(priority_phrase=phrase))

    if breakdown.aligned_count > breakdown.misaligned_count:
        parts.append(templates["common_ground"].format(count=breakdown.aligned_count))

    if breakdown.misaligned_count > 0:
        parts.append(templates["differences"].format(count=breakdown.misaligned_count))

    return "".join(parts).strip()


def build_fallback_prompts(context: NormalizedContext, breakdown: ScoreBreakdown) -> list[str]:
    discussion = narrative_templates()["discussion"]
    prompts = [discussion["opener"]]

    priority_prompt = discussion["priority"].get(context.current_priority)
    if priority_prompt:
        prompts.append(priority_prompt)

    for item in breakdown.misalignments[:MAX_MISALIGNMENT_PROMPTS]:
        if item.discussion_prompt not in prompts:
            prompts.append(item.discussion_prompt)

    if breakdown.misalignments:
        prompts.append(discussion["closer"])
    return prompts


def build_fallback_goals(context: NormalizedContext, breakdown: ScoreBreakdown) -> list[str]:
    goals_text = narrative_templates()["goals"]
    priority_goals = goals_text["priority"]
    goals = list(priority_goals.get(context.current_priority, priority_goals["just_exploring"]))

    for item in breakdown.misalignments:
        goal = goals_text["category"].get(item.category)
        if goal and goal not in goals:
            goals.append(goal)

    return goals[:MAX_GOALS]


def _string_list(value: Any) -> list[str]:
    if not isinstance(value, list):
        return []
    return [item.strip() for item in value if isinstance(item, str) and item.strip()]


# ══════════════════════════════════════════════════════════════════════════════
# Prompt construction
# ══════════════════════════════════════════════════════════════════════════════

def _weighting_note(context: NormalizedContext) -> str:
    if context.relationship_length == RelationshipLength.UNDER_1_YEAR:
        stage = "who are new together, values alignment is crucial"
    elif context.relationship_length == RelationshipLength.FIVE_PLUS_YEARS:
        stage = "who have been together 5+ years, future vision alignment is crucial"
    else:
        stage = "at their stage, both values and practical alignment matter"
    marriage = (
        "Since they are married, focus on deepening partnership and growth areas"
        if context.is_married
        else "Since they are not yet married, alignment on big life decisions is especially important"
    )
    return f"- For couples {stage}\n- {marriage}"


def build_analysis_prompt(
    context: NormalizedContext,
    breakdown: ScoreBreakdown,
    names: PartnerNames,
    conversational: Sequence[ConversationalResponse] = (),
) -> tuple[str, str]:
    """Return ``(system_prompt, user_prompt)`` for the narrative request.

    The numeric results are already final; the model is only asked for
    prose, prompts and goals.
    """
    text = narrative_templates()
    priority_label = text["priority_labels"][context.current_priority]

    system_prompt = f"""You are Luna, a warm and insightful AI relationship coach. You've just helped a couple complete their compatibility assessment.

CONTEXT ABOUT THIS COUPLE:
- Their main goal right now: {priority_label}
- Focus areas they care about: {', '.join(context.focus_areas)}
- Relationship length: {text['relationship_length_labels'][context.relationship_length.value]}
- Married: {'Yes' if context.is_married else 'No'}
- Have children: {'Yes' if context.has_children else 'No'}
- Living situation: {text['living_situation_labels'][context.living_situation.value]}

GUIDANCE:
{_weighting_note(context)}
- Celebrate alignment in their priority area and treat priority-area differences as the most urgent to discuss

Be warm, supportive, and constructive - never judgmental."""

    alignments = "\n".join(
        f"- [{a.category}{', PRIORITY/FOCUS' if a.is_high_priority else ''}] "
        f"{a.question} -> both chose \"{a.shared_answer}\""
        for a in breakdown.strong_alignments[:PROMPT_ALIGNMENTS]
    ) or "- none"
    misalignments = "\n".join(
        f"- [{m.category}, severity {m.severity}{', PRIORITY/FOCUS' if m.is_high_priority else ''}] "
        f"{m.question} -> {names.partner1}: \"{m.partner1_answer}\" / {names.partner2}: \"{m.partner2_answer}\""
        for m in breakdown.misalignments
    ) or "- none"
    speakers = {1: names.partner1, 2: names.partner2}
    conversation = "\n".join(
        f"- [{r.topic}] Luna asked {speakers[r.partner_number]}: \"{r.luna_question}\" -> \"{r.partner_response}\""
        for r in list(conversational)[-PROMPT_CONVERSATIONS:]
    )
    conversation_section = f"\n\nFOLLOW-UP CONVERSATIONS:\n{conversation}" if conversation else ""
    categories = ", ".join(
        f"{category} {score}%" for category, score in sorted(breakdown.category_scores.items())
    ) or "none"

    user_prompt = f"""Write the results for {names.partner1} and {names.partner2}.

OVERALL ALIGNMENT: {breakdown.alignment_score}% across {breakdown.questions_asked} questions
CATEGORY SCORES: {categories}

STRONGEST ALIGNMENTS:
{alignments}

BIGGEST DIFFERENCES:
{misalignments}{conversation_section}

Return ONLY a JSON object:
{{
  "lunaAnalysis": "<2-3 paragraphs referencing their priority ({context.current_priority}) and situation>",
  "discussionPrompts": ["<prompts specific to their goal and differences>"],
  "recommendedGoals": ["<2-4 short goal titles related to their priority>"]
}}"""

    return system_prompt, user_prompt


# ══════════════════════════════════════════════════════════════════════════════
# Service
# ══════════════════════════════════════════════════════════════════════════════

class AnalysisService:
    """Produces the final ``AlignmentResult`` for a completed session."""

    def __init__(
        self,
        llm_service: LLMService | None = None,
        scoring_service: ScoringService | None = None,
    ) -> None:
        settings = get_settings()
        self._llm = llm_service if llm_service is not None else LLMService()
        self._scoring = scoring_service if scoring_service is not None else ScoringService()
        self._settings = settings

    async def analyze_results(
        self,
        session: Optional[AssessmentSession],
        prescreening: CouplePrescreening | Mapping[str, Any] | None,
        question_set: Optional[Sequence[Question]],
        answers: CoupleAnswers,
        conversational: Sequence[ConversationalResponse] = (),
    ) -> AlignmentResult:
        """Score a session and attach the qualitative narrative.

        Parameters
        ----------
        session:
            The assessment session; only partner names are read from it.
        prescreening:
            Both partners' raw prescreening answers.
        question_set:
            The session's stored questions.
        answers:
            Both partners' answers keyed by question id.
        conversational:
            Free-text replies to follow-up questions, passed to the narrative
            prompt only.

        Returns
        -------
        AlignmentResult
            A fresh result; numeric fields never depend on the LLM.

        Raises
        ------
        QuestionSetMissingError
            If ``question_set`` is ``None`` or empty.
        """
        if not question_set:
            raise QuestionSetMissingError("No question set stored for this session")

        context = derive_context(prescreening)
        names = PartnerNames(
            partner1=(session.partner1_name if session else None) or "Partner 1",
            partner2=(session.partner2_name if session else None) or "Partner 2",
        )
        breakdown = self._scoring.score(context, question_set, answers)

        narrative, prompts, goals, model = await self._llm_narrative(
            context, breakdown, names, conversational
        )
        # Without the narrative none of the reply is kept.
        used_fallback = not narrative
        if used_fallback:
            prompts, goals, model = [], [], None
            narrative = build_fallback_narrative(context, breakdown, names)
        if not prompts:
            prompts = build_fallback_prompts(context, breakdown)
        if not goals:
            goals = build_fallback_goals(context, breakdown)

        logger.info(
            "analysis_complete",
            session_id=session.id if session else None,
            alignment_score=breakdown.alignment_score,
            questions_asked=breakdown.questions_asked,
            analysis_model=model or FALLBACK_MODEL,
            used_fallback_narrative=used_fallback,
        )

        return AlignmentResult(
            alignment_score=breakdown.alignment_score,
            category_scores=breakdown.category_scores,
            strong_alignments=breakdown.strong_alignments,
            misalignments=breakdown.misalignments,
            narrative=narrative,
            discussion_prompts=prompts,
            recommended_goals=goals[:MAX_GOALS],
            questions_asked=breakdown.questions_asked,
            analysis_model=FALLBACK_MODEL if used_fallback else model,
            used_fallback_narrative=used_fallback,
        )

    async def _llm_narrative(
        self,
        context: NormalizedContext,
        breakdown: ScoreBreakdown,
        names: PartnerNames,
        conversational: Sequence[ConversationalResponse],
    ) -> tuple[str, list[str], list[str], Optional[str]]:
        try:
            system_prompt, user_prompt = build_analysis_prompt(context, breakdown, names, conversational)
            completion = await self._llm.complete(
                user_prompt,
                system_prompt=system_prompt,
                max_tokens=self._settings.ANALYSIS_MAX_TOKENS,
                temperature=self._settings.ANALYSIS_TEMPERATURE,
                expect_json=True,
            )
            parsed = parse_json_object(completion.text)
        except Exception as exc:
            logger.warning(
                "analysis_narrative_fallback",
                reason=type(exc).__name__,
                error=str(exc),
            )
            return "", [], [], None

        narrative = parsed.get("lunaAnalysis") or parsed.get("narrative")
        narrative = narrative.strip() if isinstance(narrative, str) else ""
        return (
            narrative,
            _string_list(parsed.get("discussionPrompts")),
            _string_list(parsed.get("recommendedGoals")),
            completion.model,
        )

    async def generate_follow_up_question(
        self,
        misalignment: Misalignment,
        partner_names: PartnerNames,
        partner_number: int,
    ) -> FollowUpQuestion:
        """Ask one partner to say more about their own answer to a difference."""
        if partner_number == 1:
            name, answer = partner_names.partner1, misalignment.partner1_answer
        else:
            name, answer = partner_names.partner2, misalignment.partner2_answer

        prompt = (
            f'Generate ONE follow-up question for {name} who answered "{answer}" to: '
            f'"{misalignment.question}". Their partner answered differently. '
            "Be warm and curious. Reply with the question only."
        )
        try:
            completion = await self._llm.complete(
                prompt,
                system_prompt="You are Luna, a warm relationship coach.",
                max_tokens=self._settings.FOLLOW_UP_MAX_TOKENS,
                temperature=self._settings.FOLLOW_UP_TEMPERATURE,
            )
            follow_up = completion.text.strip()
            if not follow_up:
                raise ValueError("Empty follow-up text")
            used_fallback = False
        except Exception as exc:
            logger.warning("follow_up_fallback", reason=type(exc).__name__, error=str(exc))
            follow_up = narrative_templates()["follow_up_fallback"].format(name=name)
            used_fallback = True

        return FollowUpQuestion(
            question_id=misalignment.question_id,
            partner_number=partner_number,
            follow_up=follow_up,
            used_fallback=used_fallback,
        )
