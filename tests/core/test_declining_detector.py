"""
Unit tests for `core/conversation/understanding/declining_detector.py`.

Explicit refusals always decline; bare negatives only decline when they
answer an offer or a pending flow; questions never decline.
"""

import pytest

from models.schemas import DecliningAnalysis
from core.conversation.understanding.declining_detector import DecliningIntentDetector


@pytest.fixture
def detector():
    return DecliningIntentDetector()


@pytest.mark.parametrize("message", [
    "cancel", "Stop.", "no thanks", "never mind", "I don't want it", "not interested", "no, cancel that",
])
def test_explicit_english_refusals(detector, message):
    result = detector.detect(message)
    assert result.is_declining is True
    assert result.decline_type == "english_decline"


@pytest.mark.parametrize("message", ["hủy", "thôi", "không cần", "dừng lại", "bỏ qua"])
def test_explicit_vietnamese_refusals(detector, message):
    result = detector.detect(message)
    assert result.is_declining is True
    assert result.decline_type == "vietnamese_decline"


def test_refusal_during_a_flow_is_a_task_decline(detector):
    result = detector.detect("cancel", flow_pending=True)
    assert result.decline_type == "task_decline"


def test_bare_negative_without_offer_is_not_a_decline(detector):
    assert detector.detect("no").is_declining is False
    assert detector.detect("no", previous_assistant_text="Task created.").is_declining is False


def test_bare_negative_answering_an_offer_declines(detector):
    result = detector.detect("no", previous_assistant_text="Would you like me to create it?")
    assert result.is_declining is True
    assert result.matched_pattern == "bare_negative"


def test_bare_negative_in_a_flow_declines_unless_disabled(detector):
    assert detector.detect("không", flow_pending=True).is_declining is True
    assert detector.detect("không", flow_pending=True, bare_negative_declines=False).is_declining is False


@pytest.mark.parametrize("message", [
    "can you not cancel it?", "why not?", "do I have no tasks", "what if I say no?",
])
def test_questions_are_never_declines(detector, message):
    assert detector.detect(message, flow_pending=True).is_declining is False


def test_ordinary_messages_are_not_declines(detector):
    assert detector.detect("create task write report").is_declining is False
    assert detector.detect("").is_declining is False


def test_context_analysis_uses_latest_user_line_and_its_prompt(detector):
    context = "\n".join([
        "User: create task",
        "Assistant: Do you want a deadline?",
        "User: no",
    ])
    assert detector.analyze_context(context).is_declining is True

    no_offer = "\n".join(["Assistant: Do you want a deadline?", "User: tomorrow", "Assistant: Done.", "User: no"])
    assert detector.analyze_context(no_offer).is_declining is False


def test_responses_per_decline_type(detector):
    assert "nothing was created" in detector.build_response(DecliningAnalysis(decline_type="task_decline"))
    assert detector.build_response(DecliningAnalysis(decline_type="other")).startswith("Understood")
