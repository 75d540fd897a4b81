"""
Luna Assessment — Session Store

Persistence for assessment sessions: the session record, both partners'
prescreening answers, the immutable question set, both partners' answers,
the final ``AlignmentResult``, and the partners' replies to follow-up
questions.

All bookkeeping (join codes, status transitions, answer validation) lives
in ``AssessmentStore``; subclasses only provide string get/set by key.
``InMemoryAssessmentStore`` serves development and tests,
``RedisAssessmentStore`` serves deployments (values are JSON, keys expire
with the session).

Key layout::

    luna:session:<id>               AssessmentSession
    luna:session:<id>:prescreening  CouplePrescreening
    luna:session:<id>:questions     list[Question]
    luna:session:<id>:answers       CoupleAnswers
    luna:session:<id>:result        AlignmentResult
    luna:session:<id>:conversation  list[ConversationalResponse]
    luna:code:<code>                session id
"""

from __future__ import annotations

import asyncio
import secrets
import uuid
from abc import ABC, abstractmethod
from datetime import datetime, timedelta, timezone
from typing import Any, Optional

import structlog
from pydantic import TypeAdapter

from app.config import get_settings
from app.exceptions import (
    InvalidAnswerError,
    QuestionSetExistsError,
    QuestionSetMissingError,
    SessionExpiredError,
    SessionNotFoundError,
)
from app.schemas.analysis import (
    AlignmentResult,
    AnswerRecord,
    ConversationalResponse,
    CoupleAnswers,
)
from app.schemas.prescreening import CouplePrescreening, PrescreeningStatus
from app.schemas.question import Question
from app.schemas.session import AssessmentProgress, AssessmentSession, SessionStatus
from app.services.context_service import is_prescreening_complete

logger = structlog.get_logger("luna.session_store")

SESSION_CODE_ALPHABET = "ABCDEFGHJKLMNPQRSTUVWXYZ23456789"
SESSION_CODE_LENGTH = 8
_CODE_ATTEMPTS = 10

_QUESTIONS_ADAPTER = TypeAdapter(list[Question])
_CONVERSATION_ADAPTER = TypeAdapter(list[ConversationalResponse])

# Statuses only move forward.
_STATUS_ORDER: dict[SessionStatus, int] = {
    SessionStatus.PRESCREENING: 0,
    SessionStatus.PRESCREENING_COMPLETE: 1,
    SessionStatus.QUESTIONS_READY: 2,
    SessionStatus.PARTNER1_COMPLETE: 3,
    SessionStatus.PARTNER2_COMPLETE: 3,
    SessionStatus.BOTH_COMPLETE: 4,
    SessionStatus.COMPLETED: 5,
}


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def generate_session_code() -> str:
    return "".join(secrets.choice(SESSION_CODE_ALPHABET) for _ in range(SESSION_CODE_LENGTH))


def _partner_key(partner_number: int) -> str:
    if partner_number not in (1, 2):
        raise ValueError(f"partner_number must be 1 or 2, got {partner_number}")
    return f"partner{partner_number}"


class AssessmentStore(ABC):
    """Session persistence on top of a key/value backend."""

    def __init__(self, ttl_days: int | None = None) -> None:
        self._ttl = timedelta(days=ttl_days or get_settings().SESSION_TTL_DAYS)

    # ── Backend primitives ────────────────────────────────────────────────

    @abstractmethod
    async def _get(self, key: str) -> Optional[str]:
        ...

    @abstractmethod
    async def _set(self, key: str, value: str, ttl_seconds: int) -> None:
        ...

    @abstractmethod
    async def _set_if_absent(self, key: str, value: str, ttl_seconds: int) -> bool:
        ...

    @abstractmethod
    async def ping(self) -> bool:
        ...

    async def close(self) -> None:
        return None

    # ── Helpers ───────────────────────────────────────────────────────────

    @staticmethod
    def _key(session_id: str, suffix: str = "") -> str:
        return f"luna:session:{session_id}{':' + suffix if suffix else ''}"

    @staticmethod
    def _ttl_seconds(session: AssessmentSession) -> int:
        remaining = (session.expires_at - _utcnow()).total_seconds()
        return max(1, int(remaining))

    async def _save_session(self, session: AssessmentSession) -> None:
        await self._set(self._key(session.id), session.model_dump_json(), self._ttl_seconds(session))

    async def _advance_status(self, session: AssessmentSession, status: SessionStatus) -> AssessmentSession:
        if _STATUS_ORDER[status] < _STATUS_ORDER[session.status]:
            return session
        if status == session.status:
            return session
        updated = session.model_copy(update={"status": status})
        await self._save_session(updated)
        logger.info(
            "session_status_changed",
            session_id=session.id,
            from_status=session.status.value,
            to_status=status.value,
        )
        return updated

    # ── Sessions ──────────────────────────────────────────────────────────

    async def create_session(
        self,
        partner1_name: str,
        partner2_name: Optional[str] = None,
    ) -> AssessmentSession:
        now = _utcnow()
        session_id = str(uuid.uuid4())
        ttl_seconds = int(self._ttl.total_seconds())

        for _ in range(_CODE_ATTEMPTS):
            code = generate_session_code()
            if await self._set_if_absent(f"luna:code:{code}", session_id, ttl_seconds):
                break
        else:
            raise RuntimeError("Could not allocate a unique session code")

        session = AssessmentSession(
            id=session_id,
            session_code=code,
            partner1_name=partner1_name.strip(),
            partner2_name=partner2_name.strip() if partner2_name else None,
            status=SessionStatus.PRESCREENING,
            created_at=now,
            expires_at=now + self._ttl,
        )
        await self._save_session(session)
        logger.info("session_created", session_id=session_id, session_code=code)
        return session

    async def get_session(self, session_id: str) -> AssessmentSession:
        raw = await self._get(self._key(session_id))
        if raw is None:
            raise SessionNotFoundError(f"Session {session_id} not found")
        session = AssessmentSession.model_validate_json(raw)
        if session.is_expired(_utcnow()):
            raise SessionExpiredError(f"Session {session_id} has expired")
        return session

    async def join_session(
        self,
        session_code: str,
        partner2_name: Optional[str] = None,
    ) -> tuple[AssessmentSession, bool]:
        """Resolve a join code; returns the session and whether it is already completed."""
        code = session_code.strip().upper()
        session_id = await self._get(f"luna:code:{code}")
        if session_id is None:
            raise SessionNotFoundError(f"No session for code {code}")

        session = await self.get_session(session_id)

        if partner2_name and partner2_name.strip() and not session.partner2_name:
            session = session.model_copy(update={"partner2_name": partner2_name.strip()})
            await self._save_session(session)

        logger.info("session_joined", session_id=session.id, status=session.status.value)
        return session, session.status == SessionStatus.COMPLETED

    # ── Prescreening ──────────────────────────────────────────────────────

    async def get_prescreening(self, session_id: str) -> CouplePrescreening:
        raw = await self._get(self._key(session_id, "prescreening"))
        return CouplePrescreening.model_validate_json(raw) if raw else CouplePrescreening()

    async def save_prescreening(
        self,
        session_id: str,
        partner_number: int,
        answers: dict[str, Any],
    ) -> PrescreeningStatus:
        session = await self.get_session(session_id)
        prescreening = await self.get_prescreening(session_id)
        prescreening = prescreening.model_copy(update={_partner_key(partner_number): dict(answers)})
        await self._set(
            self._key(session_id, "prescreening"),
            prescreening.model_dump_json(),
            self._ttl_seconds(session),
        )

        status = self._prescreening_status(prescreening)
        if status.both_complete:
            await self._advance_status(session, SessionStatus.PRESCREENING_COMPLETE)
        logger.info(
            "prescreening_saved",
            session_id=session_id,
            partner_number=partner_number,
            both_complete=status.both_complete,
        )
        return status

    @staticmethod
    def _prescreening_status(prescreening: CouplePrescreening) -> PrescreeningStatus:
        p1 = is_prescreening_complete(prescreening.partner1)
        p2 = is_prescreening_complete(prescreening.partner2)
        return PrescreeningStatus(partner1_complete=p1, partner2_complete=p2, both_complete=p1 and p2)

    async def prescreening_status(self, session_id: str) -> PrescreeningStatus:
        await self.get_session(session_id)
        return self._prescreening_status(await self.get_prescreening(session_id))

    # ── Questions ─────────────────────────────────────────────────────────

    async def get_question_set(self, session_id: str) -> Optional[list[Question]]:
        raw = await self._get(self._key(session_id, "questions"))
        return _QUESTIONS_ADAPTER.validate_json(raw) if raw else None

    async def save_question_set(self, session_id: str, questions: list[Question]) -> list[Question]:
        session = await self.get_session(session_id)
        stored = await self._set_if_absent(
            self._key(session_id, "questions"),
            _QUESTIONS_ADAPTER.dump_json(questions).decode(),
            self._ttl_seconds(session),
        )
        if not stored:
            raise QuestionSetExistsError(f"Session {session_id} already has a question set")
        await self._advance_status(session, SessionStatus.QUESTIONS_READY)
        logger.info("question_set_stored", session_id=session_id, count=len(questions))
        return questions

    # ── Answers ───────────────────────────────────────────────────────────

    async def get_answers(self, session_id: str) -> CoupleAnswers:
        raw = await self._get(self._key(session_id, "answers"))
        return CoupleAnswers.model_validate_json(raw) if raw else CoupleAnswers()

    async def save_answers(
        self,
        session_id: str,
        partner_number: int,
        records: list[AnswerRecord],
    ) -> AssessmentProgress:
        """Upsert one partner's answers after checking them against the question set."""
        partner = _partner_key(partner_number)
        session = await self.get_session(session_id)
        questions = await self.get_question_set(session_id)
        if not questions:
            raise QuestionSetMissingError(f"Session {session_id} has no question set")

        by_id = {q.id: q for q in questions}
        for record in records:
            question = by_id.get(record.question_id)
            if question is None:
                raise InvalidAnswerError(f"Unknown question id {record.question_id!r}")
            if question.option_for(record.value) is None:
                raise InvalidAnswerError(
                    f"{record.value!r} is not an option for question {record.question_id!r}"
                )

        answers = await self.get_answers(session_id)
        merged = dict(getattr(answers, partner))
        merged.update({record.question_id: record.value for record in records})
        answers = answers.model_copy(update={partner: merged})
        await self._set(
            self._key(session_id, "answers"),
            answers.model_dump_json(),
            self._ttl_seconds(session),
        )

        progress = self._progress(questions, answers)
        if progress.both_complete:
            await self._advance_status(session, SessionStatus.BOTH_COMPLETE)
        elif getattr(progress, f"{partner}_complete"):
            await self._advance_status(session, SessionStatus(f"{partner}_complete"))
        return progress

    @staticmethod
    def _progress(questions: list[Question], answers: CoupleAnswers) -> AssessmentProgress:
        ids = {q.id for q in questions}
        p1 = len(ids & answers.partner1.keys())
        p2 = len(ids & answers.partner2.keys())
        total = len(ids)
        p1_complete = total > 0 and p1 >= total
        p2_complete = total > 0 and p2 >= total
        return AssessmentProgress(
            partner1_progress=p1,
            partner2_progress=p2,
            total_questions=total,
            partner1_complete=p1_complete,
            partner2_complete=p2_complete,
            both_complete=p1_complete and p2_complete,
        )

    async def progress(self, session_id: str) -> AssessmentProgress:
        await self.get_session(session_id)
        questions = await self.get_question_set(session_id) or []
        return self._progress(questions, await self.get_answers(session_id))

    # ── Follow-up conversation ────────────────────────────────────────────

    async def get_conversational_responses(self, session_id: str) -> list[ConversationalResponse]:
        """Every follow-up reply for the session, oldest first."""
        raw = await self._get(self._key(session_id, "conversation"))
        return _CONVERSATION_ADAPTER.validate_json(raw) if raw else []

    async def save_conversational_response(
        self,
        session_id: str,
        partner_number: int,
        topic: str,
        luna_question: str,
        partner_response: str,
    ) -> ConversationalResponse:
        """Append a partner's reply to a follow-up question about ``topic``.

        ``response_order`` counts replies per partner and topic, starting at 1.
        """
        _partner_key(partner_number)
        session = await self.get_session(session_id)
        responses = await self.get_conversational_responses(session_id)
        order = 1 + sum(
            1 for r in responses if r.partner_number == partner_number and r.topic == topic
        )
        response = ConversationalResponse(
            topic=topic,
            partner_number=partner_number,
            luna_question=luna_question.strip(),
            partner_response=partner_response.strip(),
            response_order=order,
            created_at=_utcnow(),
        )
        responses.append(response)
        await self._set(
            self._key(session_id, "conversation"),
            _CONVERSATION_ADAPTER.dump_json(responses).decode(),
            self._ttl_seconds(session),
        )
        logger.info(
            "conversational_response_stored",
            session_id=session_id,
            partner_number=partner_number,
            topic=topic,
            response_order=order,
        )
        return response

    # ── Results ───────────────────────────────────────────────────────────

    async def get_result(self, session_id: str) -> Optional[AlignmentResult]:
        raw = await self._get(self._key(session_id, "result"))
        return AlignmentResult.model_validate_json(raw) if raw else None

    async def save_result(self, session_id: str, result: AlignmentResult) -> AlignmentResult:
        session = await self.get_session(session_id)
        await self._set(
            self._key(session_id, "result"),
            result.model_dump_json(),
            self._ttl_seconds(session),
        )
        await self._advance_status(session, SessionStatus.COMPLETED)
        logger.info("result_stored", session_id=session_id, alignment_score=result.alignment_score)
        return result


class InMemoryAssessmentStore(AssessmentStore):
    """Process-local store; keys lapse after their TTL like the Redis backend."""

    def __init__(self, ttl_days: int | None = None) -> None:
        super().__init__(ttl_days)
        self._data: dict[str, tuple[str, datetime]] = {}
        self._lock = asyncio.Lock()

    def _purge_expired(self, now: datetime) -> None:
        expired = [key for key, (_, expires_at) in self._data.items() if expires_at <= now]
        for key in expired:
            del self._data[key]
        if expired:
            logger.debug("memory_store_purged", count=len(expired))

    async def _get(self, key: str) -> Optional[str]:
        entry = self._data.get(key)
        if entry is None:
            return None
        value, expires_at = entry
        if expires_at <= _utcnow():
            del self._data[key]
            return None
        return value

    async def _set(self, key: str, value: str, ttl_seconds: int) -> None:
        now = _utcnow()
        self._purge_expired(now)
        self._data[key] = (value, now + timedelta(seconds=ttl_seconds))

    async def _set_if_absent(self, key: str, value: str, ttl_seconds: int) -> bool:
        async with self._lock:
            now = _utcnow()
            self._purge_expired(now)
            if key in self._data:
                return False
            self._data[key] = (value, now + timedelta(seconds=ttl_seconds))
            return True

    async def ping(self) -> bool:
        return True


class RedisAssessmentStore(AssessmentStore):
    """Redis-backed store; every key carries the session's remaining lifetime."""

    def __init__(self, client: Any, ttl_days: int | None = None) -> None:
        super().__init__(ttl_days)
        self._redis = client

    @classmethod
    def from_url(cls, url: str, ttl_days: int | None = None) -> "RedisAssessmentStore":
        import redis.asyncio as aioredis

        client = aioredis.from_url(url, decode_responses=True, socket_connect_timeout=5)
        return cls(client, ttl_days)

    async def _get(self, key: str) -> Optional[str]:
        return await self._redis.get(key)

    async def _set(self, key: str, value: str, ttl_seconds: int) -> None:
        await self._redis.set(key, value, ex=ttl_seconds)

    async def _set_if_absent(self, key: str, value: str, ttl_seconds: int) -> bool:
        return bool(await self._redis.set(key, value, ex=ttl_seconds, nx=True))

    async def ping(self) -> bool:
        return bool(await self._redis.ping())

    async def close(self) -> None:
        await self._redis.aclose()


# ──────────────────────────────────────────────────────────────────────────────
# Process-wide store
# ──────────────────────────────────────────────────────────────────────────────

_store: Optional[AssessmentStore] = None


async def init_store() -> AssessmentStore:
    """Create the shared store from settings; verifies Redis connectivity."""
    global _store
    settings = get_settings()
    if settings.REDIS_URL:
        store: AssessmentStore = RedisAssessmentStore.from_url(settings.REDIS_URL)
        await store.ping()
        logger.info("store_initialised", backend="redis")
    else:
        store = InMemoryAssessmentStore()
        logger.info("store_initialised", backend="memory")
    _store = store
    return store


async def close_store() -> None:
    global _store
    if _store is not None:
        await _store.close()
        _store = None
        logger.info("store_closed")


def get_store() -> AssessmentStore:
    """FastAPI dependency returning the shared store."""
    if _store is None:
        raise RuntimeError("Assessment store not initialised")
    return _store
