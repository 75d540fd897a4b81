"""Integration tests for the full Luna assessment pipeline.

These tests verify the end-to-end flow: prescreening -> question set ->
answers -> scored analysis, through the real services and the in-memory
store.

Note: The LLM is mocked (unavailable or canned replies) but every other
component runs for real.
"""
import json

import pytest

from app.schemas.analysis import AnswerRecord, CoupleAnswers
from app.schemas.question import PartnerNames
from app.services.analysis_service import AnalysisService
from app.services.question_service import QuestionService
from app.services.session_store import InMemoryAssessmentStore


class TestWorkedScenarios:
    """Scenarios every deployment must satisfy with the LLM switched off."""

    @pytest.mark.asyncio
    async def test_moving_couple_quick_fallback(self, failing_llm, moving_prescreening):
        """Quick depth, moving priority, finances focus, unmarried."""
        result = await QuestionService(llm_service=failing_llm).generate_questions(moving_prescreening)
        ids = [q.id for q in result.questions]

        assert result.used_fallback is True
        assert 10 <= len(ids) <= 15
        assert len(set(ids)) == len(ids)
        assert any(q.category == "moving" for q in result.questions)
        assert any(q.id.startswith("fin_") for q in result.questions)
        assert "marriage_timeline" in ids

    @pytest.mark.asyncio
    async def test_fallback_generation_is_repeatable(self, failing_llm, full_prescreening):
        service = QuestionService(llm_service=failing_llm)
        prescreening = {"partner1": full_prescreening, "partner2": {}}
        first = await service.generate_questions(prescreening)
        second = await service.generate_questions(prescreening)
        assert first.questions == second.questions

    @pytest.mark.asyncio
    async def test_identical_answers_full_alignment(self, failing_llm, moving_prescreening):
        questions = (
            await QuestionService(llm_service=failing_llm).generate_questions(moving_prescreening)
        ).questions
        same = {q.id: q.options[1].value for q in questions}
        result = await AnalysisService(llm_service=failing_llm).analyze_results(
            None, moving_prescreening, questions, CoupleAnswers(partner1=same, partner2=dict(same))
        )
        assert result.alignment_score == 100
        assert result.misalignments == []
        assert len(result.strong_alignments) == min(5, result.questions_asked)
        assert all(score == 100 for score in result.category_scores.values())


class TestStoredSessionPipeline:
    """Drive a session through the store the way the API does."""

    @pytest.mark.asyncio
    async def test_session_pipeline_with_llm(self, make_llm, llm_questions, full_prescreening):
        store = InMemoryAssessmentStore(ttl_days=7)
        session = await store.create_session("Ana", "Ben")
        await store.save_prescreening(session.id, 1, full_prescreening)
        await store.save_prescreening(session.id, 2, full_prescreening)

        generated = await QuestionService(llm_service=make_llm(llm_questions(12))).generate_questions(
            await store.get_prescreening(session.id),
            PartnerNames(partner1=session.partner1_name, partner2=session.partner2_name),
        )
        assert generated.used_fallback is False
        await store.save_question_set(session.id, generated.questions)

        questions = await store.get_question_set(session.id)
        await store.save_answers(
            session.id, 1, [AnswerRecord(question_id=q.id, value=q.options[0].value) for q in questions]
        )
        await store.save_answers(
            session.id,
            2,
            [
                AnswerRecord(question_id=q.id, value=q.options[0 if i % 2 else 3].value)
                for i, q in enumerate(questions)
            ],
        )

        reply = json.dumps({
            "lunaAnalysis": "You share a lot.",
            "discussionPrompts": ["Where do you picture yourselves?"],
            "recommendedGoals": ["Scout neighbourhoods"],
        })
        result = await AnalysisService(llm_service=make_llm(reply)).analyze_results(
            await store.get_session(session.id),
            await store.get_prescreening(session.id),
            questions,
            await store.get_answers(session.id),
        )
        await store.save_result(session.id, result)

        # 6 aligned + 6 at weight distance 3: 50% of the weight earns credit
        assert result.alignment_score == 50
        assert result.category_scores == {"moving": 50}
        assert len(result.misalignments) == 5
        assert all(m.severity == "high" for m in result.misalignments)
        assert result.narrative == "You share a lot."
        stored = await store.get_result(session.id)
        assert stored.alignment_score == 50
