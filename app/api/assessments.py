"""
Luna Assessment — Assessments API

Session lifecycle endpoints: create/join a session, submit prescreening,
generate the shared question set, collect answers, and produce the final
analysis.  Question generation and analysis always succeed when their
inputs exist; LLM problems only show up as ``used_fallback`` flags.
"""

from __future__ import annotations

from typing import Any, Optional

import structlog
from fastapi import APIRouter, Depends, HTTPException, Query, status

from app.exceptions import (
    InvalidAnswerError,
    QuestionSetExistsError,
    QuestionSetMissingError,
    SessionExpiredError,
    SessionNotFoundError,
)
from app.schemas.analysis import (
    AlignmentResult,
    ConversationalResponse,
    ConversationalResponseSubmit,
    FollowUpQuestion,
    FollowUpRequest,
)
from app.schemas.prescreening import (
    CouplePrescreening,
    PrescreeningQuestion,
    PrescreeningStatus,
    PrescreeningSubmit,
)
from app.schemas.question import GeneratedQuestions, PartnerNames, Question
from app.schemas.session import (
    AnswersSubmit,
    AssessmentProgress,
    AssessmentSession,
    SessionCreate,
    SessionJoin,
    SessionJoinResponse,
)
from app.services.analysis_service import AnalysisService
from app.services.context_service import visible_prescreening_questions
from app.services.llm_service import LLMService
from app.services.question_service import QuestionService
from app.services.session_store import AssessmentStore, get_store

logger = structlog.get_logger("luna.api.assessments")

router = APIRouter()

# ── Service singletons (lazy, constructed on first use) ───────────────────────

_llm_service: LLMService | None = None
_question_service: QuestionService | None = None
_analysis_service: AnalysisService | None = None


def _get_llm_service() -> LLMService:
    global _llm_service
    if _llm_service is None:
        _llm_service = LLMService()
    return _llm_service


def _get_question_service() -> QuestionService:
    global _question_service
    if _question_service is None:
        _question_service = QuestionService(llm_service=_get_llm_service())
    return _question_service


def _get_analysis_service() -> AnalysisService:
    global _analysis_service
    if _analysis_service is None:
        _analysis_service = AnalysisService(llm_service=_get_llm_service())
    return _analysis_service


# ── Helpers ───────────────────────────────────────────────────────────────────

async def _load_session(session_id: str, store: AssessmentStore) -> AssessmentSession:
    """Fetch a session by ID or raise 404 (410 once it has expired)."""
    try:
        return await store.get_session(session_id)
    except SessionNotFoundError:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=f"Session {session_id} not found.",
        )
    except SessionExpiredError:
        raise HTTPException(
            status_code=status.HTTP_410_GONE,
            detail="This session has expired. Please start a new assessment.",
        )


def _check_partner(partner_number: int) -> None:
    if partner_number not in (1, 2):
        raise HTTPException(
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            detail="partner_number must be 1 or 2.",
        )


# ──────────────────────────────────────────────────────────────────────────────
# Sessions
# ──────────────────────────────────────────────────────────────────────────────

@router.post(
    "",
    response_model=AssessmentSession,
    status_code=status.HTTP_201_CREATED,
    summary="Start a new assessment session",
)
async def create_session(
    payload: SessionCreate,
    store: AssessmentStore = Depends(get_store),
) -> AssessmentSession:
    return await store.create_session(payload.partner1_name, payload.partner2_name)


@router.post(
    "/join",
    response_model=SessionJoinResponse,
    summary="Join a session with its 8-character code",
)
async def join_session(
    payload: SessionJoin,
    store: AssessmentStore = Depends(get_store),
) -> SessionJoinResponse:
    try:
        session, completed = await store.join_session(payload.session_code, payload.partner2_name)
    except SessionNotFoundError:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="Session not found. Please check the code and try again.",
        )
    except SessionExpiredError:
        raise HTTPException(
            status_code=status.HTTP_410_GONE,
            detail="This session has expired. Please start a new assessment.",
        )
    return SessionJoinResponse(session=session, already_completed=completed)


@router.get("/{session_id}", response_model=AssessmentSession, summary="Get a session")
async def get_session(
    session_id: str,
    store: AssessmentStore = Depends(get_store),
) -> AssessmentSession:
    return await _load_session(session_id, store)


# ──────────────────────────────────────────────────────────────────────────────
# Prescreening
# ──────────────────────────────────────────────────────────────────────────────

@router.get(
    "/prescreening/questions",
    response_model=list[PrescreeningQuestion],
    summary="Prescreening questions visible for the given answers",
)
async def get_prescreening_questions(
    has_children: Optional[bool] = Query(default=None),
) -> list[dict[str, Any]]:
    answers = {} if has_children is None else {"has_children": has_children}
    return visible_prescreening_questions(answers)


@router.put(
    "/{session_id}/prescreening/{partner_number}",
    response_model=PrescreeningStatus,
    summary="Save one partner's prescreening answers",
)
async def save_prescreening(
    session_id: str,
    partner_number: int,
    payload: PrescreeningSubmit,
    store: AssessmentStore = Depends(get_store),
) -> PrescreeningStatus:
    _check_partner(partner_number)
    await _load_session(session_id, store)
    return await store.save_prescreening(session_id, partner_number, payload.answers)


@router.get(
    "/{session_id}/prescreening",
    response_model=CouplePrescreening,
    summary="Both partners' prescreening answers",
)
async def get_prescreening(
    session_id: str,
    store: AssessmentStore = Depends(get_store),
) -> CouplePrescreening:
    await _load_session(session_id, store)
    return await store.get_prescreening(session_id)


# ──────────────────────────────────────────────────────────────────────────────
# Questions
# ──────────────────────────────────────────────────────────────────────────────

@router.post(
    "/{session_id}/questions",
    response_model=GeneratedQuestions,
    status_code=status.HTTP_201_CREATED,
    summary="Generate and store the session's question set",
)
async def generate_questions(
    session_id: str,
    store: AssessmentStore = Depends(get_store),
) -> GeneratedQuestions:
    session = await _load_session(session_id, store)
    log = logger.bind(session_id=session_id)

    if await store.get_question_set(session_id):
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail="Questions have already been generated for this session.",
        )

    prescreening = await store.get_prescreening(session_id)
    generated = await _get_question_service().generate_questions(
        prescreening,
        PartnerNames(
            partner1=session.partner1_name,
            partner2=session.partner2_name or "Partner 2",
        ),
    )

    try:
        await store.save_question_set(session_id, generated.questions)
    except QuestionSetExistsError:
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail="Questions have already been generated for this session.",
        )

    log.info(
        "questions_generated",
        count=len(generated.questions),
        used_fallback=generated.used_fallback,
        supplemented=generated.supplemented,
    )
    return generated


@router.get(
    "/{session_id}/questions",
    response_model=list[Question],
    summary="The session's stored question set",
)
async def get_questions(
    session_id: str,
    store: AssessmentStore = Depends(get_store),
) -> list[Question]:
    await _load_session(session_id, store)
    questions = await store.get_question_set(session_id)
    if not questions:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="No questions have been generated for this session yet.",
        )
    return questions


# ──────────────────────────────────────────────────────────────────────────────
# Answers
# ──────────────────────────────────────────────────────────────────────────────

@router.put(
    "/{session_id}/answers/{partner_number}",
    response_model=AssessmentProgress,
    summary="Save (upsert) one partner's answers",
)
async def save_answers(
    session_id: str,
    partner_number: int,
    payload: AnswersSubmit,
    store: AssessmentStore = Depends(get_store),
) -> AssessmentProgress:
    _check_partner(partner_number)
    await _load_session(session_id, store)
    try:
        return await store.save_answers(session_id, partner_number, payload.answers)
    except QuestionSetMissingError:
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail="Questions must be generated before answers can be saved.",
        )
    except InvalidAnswerError as exc:
        raise HTTPException(
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            detail=str(exc),
        )


@router.get(
    "/{session_id}/progress",
    response_model=AssessmentProgress,
    summary="Answer progress for both partners",
)
async def get_progress(
    session_id: str,
    store: AssessmentStore = Depends(get_store),
) -> AssessmentProgress:
    await _load_session(session_id, store)
    return await store.progress(session_id)


# ──────────────────────────────────────────────────────────────────────────────
# Analysis
# ──────────────────────────────────────────────────────────────────────────────

@router.post(
    "/{session_id}/analysis",
    response_model=AlignmentResult,
    summary="Analyse both partners' answers and store the result",
)
async def analyze_session(
    session_id: str,
    store: AssessmentStore = Depends(get_store),
) -> AlignmentResult:
    session = await _load_session(session_id, store)
    log = logger.bind(session_id=session_id)

    try:
        result = await _get_analysis_service().analyze_results(
            session,
            await store.get_prescreening(session_id),
            await store.get_question_set(session_id),
            await store.get_answers(session_id),
            await store.get_conversational_responses(session_id),
        )
    except QuestionSetMissingError:
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail="This session has no questions to analyse.",
        )

    await store.save_result(session_id, result)
    log.info(
        "analysis_stored",
        alignment_score=result.alignment_score,
        analysis_model=result.analysis_model,
    )
    return result


@router.get(
    "/{session_id}/analysis",
    response_model=AlignmentResult,
    summary="The stored analysis result",
)
async def get_analysis(
    session_id: str,
    store: AssessmentStore = Depends(get_store),
) -> AlignmentResult:
    await _load_session(session_id, store)
    result = await store.get_result(session_id)
    if result is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="This session has not been analysed yet.",
        )
    return result


@router.post(
    "/{session_id}/follow-up",
    response_model=FollowUpQuestion,
    summary="A follow-up question about one misalignment",
)
async def follow_up(
    session_id: str,
    payload: FollowUpRequest,
    store: AssessmentStore = Depends(get_store),
) -> FollowUpQuestion:
    session = await _load_session(session_id, store)
    result = await store.get_result(session_id)
    if result is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="This session has not been analysed yet.",
        )

    misalignment = next(
        (m for m in result.misalignments if m.question_id == payload.question_id),
        None,
    )
    if misalignment is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=f"No misalignment recorded for question {payload.question_id}.",
        )

    return await _get_analysis_service().generate_follow_up_question(
        misalignment,
        PartnerNames(
            partner1=session.partner1_name,
            partner2=session.partner2_name or "Partner 2",
        ),
        payload.partner_number,
    )


@router.put(
    "/{session_id}/follow-up/{partner_number}",
    response_model=ConversationalResponse,
    summary="Record one partner's reply to a follow-up question",
)
async def save_follow_up_response(
    session_id: str,
    partner_number: int,
    payload: ConversationalResponseSubmit,
    store: AssessmentStore = Depends(get_store),
) -> ConversationalResponse:
    _check_partner(partner_number)
    await _load_session(session_id, store)

    questions = await store.get_question_set(session_id)
    if not questions:
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail="This session has no questions to follow up on.",
        )
    if payload.question_id not in {q.id for q in questions}:
        raise HTTPException(
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            detail=f"Unknown question id {payload.question_id!r}.",
        )

    return await store.save_conversational_response(
        session_id,
        partner_number,
        payload.question_id,
        payload.luna_question,
        payload.partner_response,
    )


@router.get(
    "/{session_id}/follow-up",
    response_model=list[ConversationalResponse],
    summary="Every recorded follow-up reply, oldest first",
)
async def get_follow_up_responses(
    session_id: str,
    store: AssessmentStore = Depends(get_store),
) -> list[ConversationalResponse]:
    await _load_session(session_id, store)
    return await store.get_conversational_responses(session_id)
