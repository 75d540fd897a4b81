"""Unit tests for the assessment session store (in-memory and Redis backends)."""
from datetime import datetime, timedelta, timezone
from unittest.mock import patch

import pytest

from app.exceptions import (
    InvalidAnswerError,
    QuestionSetExistsError,
    QuestionSetMissingError,
    SessionExpiredError,
    SessionNotFoundError,
)
from app.schemas.analysis import AlignmentResult, AnswerRecord
from app.schemas.session import SessionStatus
from app.services.session_store import (
    SESSION_CODE_ALPHABET,
    InMemoryAssessmentStore,
    RedisAssessmentStore,
)


class FakeRedis:
    """Minimal async stand-in for the redis.asyncio client calls the store makes."""

    def __init__(self):
        self.data = {}
        self.expiry = {}
        self.closed = False

    async def get(self, key):
        return self.data.get(key)

    async def set(self, key, value, ex=None, nx=False):
        if nx and key in self.data:
            return None
        self.data[key] = value
        self.expiry[key] = ex
        return True

    async def ping(self):
        return True

    async def aclose(self):
        self.closed = True


@pytest.fixture(params=["memory", "redis"])
def store(request):
    if request.param == "memory":
        return InMemoryAssessmentStore(ttl_days=7)
    return RedisAssessmentStore(FakeRedis(), ttl_days=7)


def _answers(questions, value="opt1"):
    return [AnswerRecord(question_id=q.id, value=value) for q in questions]


def _result(score=80):
    return AlignmentResult(
        alignment_score=score,
        category_scores={"finances": score},
        strong_alignments=[],
        misalignments=[],
        narrative="ok",
        discussion_prompts=[],
        recommended_goals=[],
        questions_asked=6,
        analysis_model="fallback",
        used_fallback_narrative=True,
    )


class TestSessions:
    @pytest.mark.asyncio
    async def test_create_and_get(self, store):
        session = await store.create_session("  Ana ")
        assert len(session.session_code) == 8
        assert set(session.session_code) <= set(SESSION_CODE_ALPHABET)
        assert session.partner1_name == "Ana"
        assert session.status == SessionStatus.PRESCREENING
        assert session.expires_at - session.created_at == timedelta(days=7)
        assert await store.get_session(session.id) == session

    @pytest.mark.asyncio
    async def test_unknown_session(self, store):
        with pytest.raises(SessionNotFoundError):
            await store.get_session("missing")

    @pytest.mark.asyncio
    async def test_join_is_case_insensitive_and_sets_partner2(self, store):
        session = await store.create_session("Ana")
        joined, completed = await store.join_session(session.session_code.lower(), "Ben")
        assert joined.id == session.id
        assert joined.partner2_name == "Ben"
        assert completed is False
        # An existing partner 2 name is not overwritten
        again, _ = await store.join_session(session.session_code, "Someone else")
        assert again.partner2_name == "Ben"

    @pytest.mark.asyncio
    async def test_join_unknown_code(self, store):
        with pytest.raises(SessionNotFoundError):
            await store.join_session("ZZZZZZZZ")

    @pytest.mark.asyncio
    async def test_join_expired(self, store):
        session = await store.create_session("Ana")
        past = datetime.now(timezone.utc) - timedelta(minutes=1)
        await store._save_session(session.model_copy(update={"expires_at": past}))
        with pytest.raises(SessionExpiredError):
            await store.join_session(session.session_code)
        with pytest.raises(SessionExpiredError):
            await store.get_session(session.id)


class TestLifecycle:
    @pytest.mark.asyncio
    async def test_full_status_progression(self, store, full_prescreening, scored_questions):
        session = await store.create_session("Ana", "Ben")
        sid = session.id

        status = await store.save_prescreening(sid, 1, full_prescreening)
        assert (status.partner1_complete, status.both_complete) == (True, False)
        assert (await store.get_session(sid)).status == SessionStatus.PRESCREENING

        status = await store.save_prescreening(sid, 2, full_prescreening)
        assert status.both_complete is True
        assert (await store.get_session(sid)).status == SessionStatus.PRESCREENING_COMPLETE
        assert (await store.get_prescreening(sid)).partner2 == full_prescreening

        await store.save_question_set(sid, scored_questions)
        assert (await store.get_session(sid)).status == SessionStatus.QUESTIONS_READY
        assert [q.id for q in await store.get_question_set(sid)] == [q.id for q in scored_questions]

        progress = await store.save_answers(sid, 2, _answers(scored_questions[:3]))
        assert progress.partner2_progress == 3
        assert progress.partner2_complete is False

        progress = await store.save_answers(sid, 2, _answers(scored_questions[3:]))
        assert progress.partner2_complete is True
        assert (await store.get_session(sid)).status == SessionStatus.PARTNER2_COMPLETE

        progress = await store.save_answers(sid, 1, _answers(scored_questions, "opt2"))
        assert progress.both_complete is True
        assert (await store.get_session(sid)).status == SessionStatus.BOTH_COMPLETE

        await store.save_result(sid, _result())
        assert (await store.get_session(sid)).status == SessionStatus.COMPLETED
        assert (await store.get_result(sid)).alignment_score == 80

        _, completed = await store.join_session(session.session_code)
        assert completed is True

    @pytest.mark.asyncio
    async def test_status_never_moves_backwards(self, store, full_prescreening, scored_questions):
        sid = (await store.create_session("Ana")).id
        await store.save_question_set(sid, scored_questions)
        await store.save_prescreening(sid, 1, full_prescreening)
        await store.save_prescreening(sid, 2, full_prescreening)
        assert (await store.get_session(sid)).status == SessionStatus.QUESTIONS_READY

    @pytest.mark.asyncio
    async def test_question_set_is_immutable(self, store, scored_questions):
        sid = (await store.create_session("Ana")).id
        await store.save_question_set(sid, scored_questions)
        with pytest.raises(QuestionSetExistsError):
            await store.save_question_set(sid, scored_questions[:2])
        assert len(await store.get_question_set(sid)) == len(scored_questions)

    @pytest.mark.asyncio
    async def test_answers_require_question_set(self, store, scored_questions):
        sid = (await store.create_session("Ana")).id
        with pytest.raises(QuestionSetMissingError):
            await store.save_answers(sid, 1, _answers(scored_questions))

    @pytest.mark.asyncio
    async def test_answers_validated(self, store, scored_questions):
        sid = (await store.create_session("Ana")).id
        await store.save_question_set(sid, scored_questions)
        with pytest.raises(InvalidAnswerError):
            await store.save_answers(sid, 1, [AnswerRecord(question_id="nope", value="opt1")])
        with pytest.raises(InvalidAnswerError):
            await store.save_answers(sid, 1, [AnswerRecord(question_id="fin1", value="opt9")])
        assert (await store.get_answers(sid)).partner1 == {}

    @pytest.mark.asyncio
    async def test_answers_upsert(self, store, scored_questions):
        sid = (await store.create_session("Ana")).id
        await store.save_question_set(sid, scored_questions)
        await store.save_answers(sid, 1, [AnswerRecord(question_id="fin1", value="opt1")])
        await store.save_answers(sid, 1, [AnswerRecord(question_id="fin1", value="opt3")])
        assert (await store.get_answers(sid)).partner1 == {"fin1": "opt3"}
        progress = await store.progress(sid)
        assert progress.partner1_progress == 1
        assert progress.total_questions == len(scored_questions)

    @pytest.mark.asyncio
    async def test_result_overwritten_by_reanalysis(self, store):
        sid = (await store.create_session("Ana")).id
        await store.save_result(sid, _result(40))
        await store.save_result(sid, _result(90))
        assert (await store.get_result(sid)).alignment_score == 90


class TestConversationalResponses:
    @pytest.mark.asyncio
    async def test_replies_ordered_per_partner_and_topic(self, store):
        sid = (await store.create_session("Ana", "Ben")).id
        first = await store.save_conversational_response(sid, 1, "fin1", "Why 50/50?", "  It feels fair.  ")
        other = await store.save_conversational_response(sid, 2, "fin1", "Why by income?", "We earn differently.")
        second = await store.save_conversational_response(sid, 1, "fin1", "And savings?", "Same idea.")
        elsewhere = await store.save_conversational_response(sid, 1, "mov1", "Where to?", "By the sea.")

        assert first.partner_response == "It feels fair."
        assert [first.response_order, other.response_order, second.response_order] == [1, 1, 2]
        assert elsewhere.response_order == 1
        stored = await store.get_conversational_responses(sid)
        assert [r.luna_question for r in stored] == ["Why 50/50?", "Why by income?", "And savings?", "Where to?"]

    @pytest.mark.asyncio
    async def test_no_replies_yet(self, store):
        sid = (await store.create_session("Ana")).id
        assert await store.get_conversational_responses(sid) == []

    @pytest.mark.asyncio
    async def test_rejects_unknown_partner(self, store):
        sid = (await store.create_session("Ana")).id
        with pytest.raises(ValueError):
            await store.save_conversational_response(sid, 3, "fin1", "Q?", "A.")

    @pytest.mark.asyncio
    async def test_unknown_session(self, store):
        with pytest.raises(SessionNotFoundError):
            await store.save_conversational_response("missing", 1, "fin1", "Q?", "A.")


class TestInMemoryExpiry:
    @pytest.mark.asyncio
    async def test_expired_keys_are_evicted(self, full_prescreening):
        store = InMemoryAssessmentStore(ttl_days=1)
        session = await store.create_session("Ana")
        await store.save_prescreening(session.id, 1, full_prescreening)
        assert len(store._data) == 3

        later = datetime.now(timezone.utc) + timedelta(days=2)
        with patch("app.services.session_store._utcnow", return_value=later):
            fresh = await store.create_session("Cleo")
            assert not any(session.id in key for key in store._data)
            assert f"luna:code:{session.session_code}" not in store._data

            with pytest.raises(SessionNotFoundError):
                await store.get_session(session.id)
            with pytest.raises(SessionNotFoundError):
                await store.join_session(session.session_code)
            assert (await store.get_session(fresh.id)).partner1_name == "Cleo"

    @pytest.mark.asyncio
    async def test_expired_key_dropped_on_read(self):
        store = InMemoryAssessmentStore(ttl_days=1)
        session = await store.create_session("Ana")
        later = datetime.now(timezone.utc) + timedelta(days=2)
        with patch("app.services.session_store._utcnow", return_value=later):
            with pytest.raises(SessionNotFoundError):
                await store.get_session(session.id)
        assert store._key(session.id) not in store._data


class TestRedisBackend:
    @pytest.mark.asyncio
    async def test_keys_expire_with_session(self):
        client = FakeRedis()
        store = RedisAssessmentStore(client, ttl_days=2)
        session = await store.create_session("Ana")
        assert client.data[f"luna:code:{session.session_code}"] == session.id
        assert client.expiry[f"luna:code:{session.session_code}"] == 2 * 86400
        assert 0 < client.expiry[f"luna:session:{session.id}"] <= 2 * 86400

    @pytest.mark.asyncio
    async def test_close(self):
        client = FakeRedis()
        store = RedisAssessmentStore(client, ttl_days=1)
        assert await store.ping() is True
        await store.close()
        assert client.closed is True
