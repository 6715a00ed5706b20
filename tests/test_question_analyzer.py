import json
from types import SimpleNamespace
from unittest.mock import Mock

import pytest
import requests

from chicken_vault.services.errors import AIServiceError, MalformedModelOutput
from chicken_vault.services.question_analyzer import (
    QuestionAnalyzer,
    QuestionDecision,
    extension_for_mime_type,
    normalize_decision,
)


def _response(payload, status=200):
    return SimpleNamespace(
        ok=status < 400,
        status_code=status,
        content=b"{}",
        json=lambda: payload,
    )


def _chat(content=None, refusal=None):
    message = {"content": content}
    if refusal is not None:
        message["refusal"] = refusal
    return _response({"choices": [{"message": message}]})


@pytest.fixture
def session():
    return SimpleNamespace(post=Mock())


@pytest.fixture
def analyzer(session):
    return QuestionAnalyzer("sk-test", base_url="https://ai.example/v1/", session=session)


def test_decide_yes_sends_only_card_facts(analyzer, session):
    session.post.return_value = _chat(
        json.dumps({"shouldRespond": True, "editedQuestion": " Is it red? ", "answer": "YES", "ignoreReason": None})
    )

    decision = analyzer.decide("uh is it red?", "QD")

    assert (decision.should_respond, decision.edited_question, decision.answer) == (True, "Is it red?", "YES")
    url = session.post.call_args.args[0]
    body = session.post.call_args.kwargs["json"]
    assert url == "https://ai.example/v1/chat/completions"
    assert session.post.call_args.kwargs["headers"] == {"Authorization": "Bearer sk-test"}
    assert body["response_format"]["json_schema"]["strict"] is True
    user_content = body["messages"][1]["content"]
    assert '"rankValue":12' in user_content
    assert '"QD"' in user_content  # le code figure parmi les faits dérivés


def test_decide_refusal_is_not_an_answer(analyzer, session):
    session.post.return_value = _chat(refusal="I can't help with that.")

    decision = analyzer.decide("is it red?", "QD")

    assert decision.model_refused
    assert not decision.should_respond
    assert decision.answer is None


def test_decide_empty_content_is_skipped(analyzer, session):
    session.post.return_value = _chat(content="")
    decision = analyzer.decide("...", "QD")
    assert (decision.should_respond, decision.ignore_reason) == (False, "UNCLEAR")


def test_decide_invalid_json_raises(analyzer, session):
    session.post.return_value = _chat(content="yes I think so")
    with pytest.raises(MalformedModelOutput):
        analyzer.decide("is it red?", "QD")


def test_decide_off_schema_is_normalized(analyzer, session):
    session.post.return_value = _chat(
        json.dumps({"shouldRespond": {"value": True}, "editedQuestion": "", "answer": {"value": "NO"}})
    )

    decision = analyzer.decide("Is it a spade?", "QD")

    assert (decision.should_respond, decision.edited_question, decision.answer) == (True, "Is it a spade?", "NO")


def test_api_error_message_is_surfaced(analyzer, session):
    session.post.return_value = _response({"error": {"message": "Rate limit reached"}}, status=429)
    with pytest.raises(AIServiceError, match="Rate limit reached"):
        analyzer.decide("is it red?", "QD")


def test_transport_failure_becomes_service_error(analyzer, session):
    session.post.side_effect = requests.ConnectionError("offline")
    with pytest.raises(AIServiceError):
        analyzer.decide("is it red?", "QD")


def test_missing_api_key(session):
    analyzer = QuestionAnalyzer("", session=session)
    with pytest.raises(AIServiceError, match="OPENAI_API_KEY"):
        analyzer.decide("is it red?", "QD")
    session.post.assert_not_called()


def test_transcribe_posts_audio(session):
    analyzer = QuestionAnalyzer("sk-test", session=session, transcribe_language="en")
    session.post.return_value = _response({"text": "  Is it a heart?  "})

    text = analyzer.transcribe(b"\x00\x01", "audio/mp4")

    assert text == "Is it a heart?"
    kwargs = session.post.call_args.kwargs
    assert kwargs["files"]["file"][0] == "question-audio.m4a"
    assert kwargs["data"]["language"] == "en"


def test_transcribe_empty_audio_skips_call(analyzer, session):
    assert analyzer.transcribe(b"", "audio/webm") == ""
    session.post.assert_not_called()


def test_decision_consistency_rules():
    with pytest.raises(ValueError):
        QuestionDecision(should_respond=True, edited_question="Is it red?", answer=None, ignore_reason=None)
    with pytest.raises(ValueError):
        QuestionDecision(should_respond=False, answer="YES", ignore_reason="CHATTER")
    assert normalize_decision("garbage", "x").ignore_reason == "UNCLEAR"


@pytest.mark.parametrize(
    "mime, expected",
    [("audio/webm;codecs=opus", "webm"), ("audio/wav", "wav"), ("audio/mpeg", "mp3"), ("", "webm")],
)
def test_extension_for_mime_type(mime, expected):
    assert extension_for_mime_type(mime) == expected
