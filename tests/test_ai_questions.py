from __future__ import annotations

import asyncio
from types import SimpleNamespace
from unittest.mock import Mock

import pytest

from chicken_vault.services.errors import AIServiceError, DataIntegrityViolation, PreconditionViolation
from chicken_vault.services.question_analyzer import QuestionDecision

from conftest import seat_players


@pytest.fixture
def analyzer_stub():
    return SimpleNamespace(decide=Mock(), transcribe=Mock())


@pytest.fixture
def investigating(make_engine, analyzer_stub):
    engine = make_engine(analyzer=analyzer_stub)

    async def setup():
        seat_players(engine)
        await engine.initialize_workbook()
        engine.start_game()
        engine.set_secret_card("QD")
        engine.start_investigation()

    asyncio.run(setup())
    return engine


def test_transcript_resolves_question(investigating, analyzer_stub):
    analyzer_stub.decide.return_value = QuestionDecision(
        should_respond=True, edited_question="Is it red?", answer="YES"
    )

    outcome = asyncio.run(investigating.analyze_question_from_transcript("uh, is it red?"))

    assert (outcome.status, outcome.reason, outcome.answer) == ("RESOLVED", "OK", "YES")
    analyzer_stub.decide.assert_called_once_with("uh, is it red?", "QD")
    assert investigating.round.questions[-1].question == "Is it red?"
    assert investigating.round.vault_value == 5
    assert investigating.round.current_turn_seat_index == 1


def test_no_question_keeps_turn(investigating, analyzer_stub):
    analyzer_stub.decide.return_value = QuestionDecision.skipped("CHATTER")

    outcome = asyncio.run(investigating.analyze_question_from_transcript("ha ha nice one"))

    assert (outcome.status, outcome.reason) == ("RETRY", "NO_VALID_QUESTION")
    assert investigating.round.questions == []
    assert investigating.round.current_turn_seat_index == 0


def test_refusal_is_reported(investigating, analyzer_stub):
    analyzer_stub.decide.return_value = QuestionDecision.skipped(refused=True)
    outcome = asyncio.run(investigating.analyze_question_from_transcript("is it red?"))
    assert outcome.reason == "MODEL_REFUSED"
    assert investigating.round.vault_value == 4


def test_service_error_is_a_retry(investigating, analyzer_stub):
    analyzer_stub.decide.side_effect = AIServiceError("AI request timed out")
    outcome = asyncio.run(investigating.analyze_question_from_transcript("is it red?"))
    assert (outcome.status, outcome.reason, outcome.error) == ("RETRY", "ERROR", "AI request timed out")


def test_empty_transcript_never_calls_model(investigating, analyzer_stub):
    outcome = asyncio.run(investigating.analyze_question_from_transcript("   "))
    assert outcome.reason == "NO_VALID_QUESTION"
    analyzer_stub.decide.assert_not_called()


def test_turn_change_during_analysis_is_not_applied(investigating, analyzer_stub):
    analyzer_stub.decide.return_value = QuestionDecision(
        should_respond=True, edited_question="Is it red?", answer="YES"
    )

    async def scenario():
        task = asyncio.create_task(investigating.analyze_question_from_transcript("is it red?"))
        await asyncio.sleep(0)
        # résolution manuelle pendant l'appel IA
        investigating.resolve_question("Is it a heart?", "NO")
        return await task

    outcome = asyncio.run(scenario())
    assert outcome.status == "RETRY"
    assert outcome.error == "Game state changed during analysis."
    assert [q.question for q in investigating.round.questions] == ["Is it a heart?"]


def test_audio_is_transcribed_then_decided(investigating, analyzer_stub):
    analyzer_stub.transcribe.return_value = "Is it a diamond?"
    analyzer_stub.decide.return_value = QuestionDecision(
        should_respond=True, edited_question="Is it a diamond?", answer="YES"
    )

    outcome = asyncio.run(investigating.analyze_question_from_audio(b"RIFF", "audio/wav"))

    assert outcome.status == "RESOLVED"
    assert outcome.transcript == "Is it a diamond?"
    analyzer_stub.transcribe.assert_called_once_with(b"RIFF", "audio/wav")


def test_turn_change_during_transcription_is_not_applied(investigating, analyzer_stub):
    def transcribe(audio, mime_type):
        # le croupier tranche à la main pendant la transcription
        investigating.resolve_question("Manual question", "NO")
        return "Is it red?"

    analyzer_stub.transcribe.side_effect = transcribe
    analyzer_stub.decide.return_value = QuestionDecision(
        should_respond=True, edited_question="Is it red?", answer="YES"
    )

    outcome = asyncio.run(investigating.analyze_question_from_audio(b"RIFF", "audio/wav"))

    assert (outcome.status, outcome.reason) == ("RETRY", "ERROR")
    assert outcome.error == "Game state changed during analysis."
    assert [q.question for q in investigating.round.questions] == ["Manual question"]
    analyzer_stub.decide.assert_not_called()


def test_audio_requires_payload(investigating):
    with pytest.raises(DataIntegrityViolation):
        asyncio.run(investigating.analyze_question_from_audio(b"", "audio/webm"))


def test_analysis_only_during_investigation(make_engine, analyzer_stub):
    engine = make_engine(analyzer=analyzer_stub)
    with pytest.raises(PreconditionViolation):
        asyncio.run(engine.analyze_question_from_transcript("is it red?"))
