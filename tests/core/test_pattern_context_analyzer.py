"""
Unit tests for `core/conversation/understanding/pattern_context_analyzer.py`.

The rule-based analyzer is the tier that must always work, so these tests
check the rule order: flow-starting commands first, then lookups, then the
in-flow rules (interruptions, field answers, confirmations, the catch-all)
and finally the idle rules.
"""

import pytest

from models.schemas import ContextIntentType, ConversationFlow, ConversationTurn, FlowType
from core.conversation.orchestration.state_store import ConversationState
from core.conversation.understanding.context_analyzer import ContextAnalyzer, FlowClues
from core.conversation.understanding.pattern_context_analyzer import (
    ADDITIONAL_INFO,
    CATCH_ALL_CONFIDENCE,
    FALLBACK_CONFIDENCE,
    PatternContextAnalyzer,
)


@pytest.fixture
def analyzer(extractor):
    return PatternContextAnalyzer(extractor)


def _creation_clues(waiting_for="priority", filled=None):
    return FlowClues(
        active_flow=ConversationFlow.TASK_CREATION,
        flow_type=FlowType.CREATE_TASK,
        waiting_for=waiting_for,
        filled_slots=filled if filled is not None else {"title": "write report"},
    )


def test_creation_command_with_title(analyzer):
    analysis = analyzer.analyze_sync("create task write report", FlowClues())

    assert analysis.intent_type == ContextIntentType.TASK_CREATION
    assert analysis.current_flow == ConversationFlow.TASK_CREATION
    assert analysis.extracted_value == "write report"
    assert analysis.next_expected_input == "priority"
    assert analysis.confidence == FALLBACK_CONFIDENCE[ContextIntentType.TASK_CREATION]
    assert analysis.metadata["source"] == "pattern"
    assert analysis.metadata["fallback"] is True


def test_vietnamese_creation_command(analyzer):
    analysis = analyzer.analyze_sync("tạo công việc họp nhóm", FlowClues())

    assert analysis.intent_type == ContextIntentType.TASK_CREATION
    assert analysis.extracted_value == "họp nhóm"


def test_update_command_extracts_id_field_and_value(analyzer):
    analysis = analyzer.analyze_sync("update task 3 priority to high", FlowClues())

    assert analysis.intent_type == ContextIntentType.TASK_UPDATE
    assert analysis.metadata["task_id"] == "3"
    assert analysis.metadata["field"] == "priority"
    assert analysis.metadata["value"] == "HIGH"
    assert analysis.next_expected_input is None


def test_delete_command_without_reference_waits_for_task_id(analyzer):
    analysis = analyzer.analyze_sync("delete task", FlowClues())

    assert analysis.intent_type == ContextIntentType.TASK_DELETION
    assert analysis.next_expected_input == "task_id"
    assert analysis.should_continue_flow is True


@pytest.mark.parametrize("message, query", [
    ("show my tasks", "list"),
    ("task statistics", "statistics"),
    ("how many tasks do I have", "statistics"),
])
def test_lookups(analyzer, message, query):
    analysis = analyzer.analyze_sync(message, FlowClues())

    assert analysis.intent_type == ContextIntentType.TASK_QUERY
    assert analysis.metadata["query"] == query


def test_offtopic_question_inside_flow_keeps_flow(analyzer):
    analysis = analyzer.analyze_sync("what's the weather?", _creation_clues(waiting_for="deadline"))

    assert analysis.intent_type == ContextIntentType.OFFTOPIC
    assert analysis.current_flow == ConversationFlow.TASK_CREATION
    assert analysis.should_continue_flow is True
    assert analysis.next_expected_input == "deadline"


def test_clarification_inside_flow(analyzer):
    analysis = analyzer.analyze_sync("what options are there?", _creation_clues())

    assert analysis.intent_type == ContextIntentType.CLARIFICATION


def test_priority_answer_is_field_input(analyzer):
    analysis = analyzer.analyze_sync("high", _creation_clues())

    assert analysis.intent_type == ContextIntentType.FIELD_INPUT
    assert analysis.field_mapping == "priority"
    assert analysis.extracted_value == "HIGH"
    assert analysis.next_expected_input == "deadline"


def test_no_is_a_none_deadline_only_when_deadline_is_awaited(analyzer):
    waiting = analyzer.analyze_sync("no", _creation_clues(waiting_for="deadline",
                                                            filled={"title": "x", "priority": "HIGH"}))
    assert waiting.field_mapping == "deadline"
    assert waiting.extracted_value is None

    other = analyzer.analyze_sync("no", _creation_clues(waiting_for="priority"))
    assert other.field_mapping != "deadline"


def test_confirmation_requires_collected_slots(analyzer):
    """
    "create it now" confirms a flow that already has values, but on an
    empty flow it is only treated as generic input.
    """
    confirmed = analyzer.analyze_sync("create it now", _creation_clues(waiting_for="deadline"))
    assert confirmed.intent_type == ContextIntentType.CONFIRMATION
    assert confirmed.should_continue_flow is False

    empty = analyzer.analyze_sync("create it now", _creation_clues(waiting_for="title", filled={}))
    assert empty.intent_type == ContextIntentType.FIELD_INPUT
    assert empty.field_mapping == "title"


def test_vietnamese_confirmation(analyzer):
    analysis = analyzer.analyze_sync("tạo ngay", _creation_clues(waiting_for="deadline"))

    assert analysis.intent_type == ContextIntentType.CONFIRMATION


def test_unrecognized_input_in_flow_is_kept_as_additional_info(analyzer):
    analysis = analyzer.analyze_sync("banana", _creation_clues())

    assert analysis.intent_type == ContextIntentType.FIELD_INPUT
    assert analysis.field_mapping == ADDITIONAL_INFO
    assert analysis.extracted_value == "banana"
    assert analysis.confidence == CATCH_ALL_CONFIDENCE
    assert analysis.should_continue_flow is True


def test_idle_messages(analyzer):
    assert analyzer.analyze_sync("hello", FlowClues()).intent_type == ContextIntentType.SMALL_TALK
    assert analyzer.analyze_sync("no", FlowClues()).intent_type == ContextIntentType.SMALL_TALK
    assert analyzer.analyze_sync("what is a deadline?", FlowClues()).intent_type == ContextIntentType.CLARIFICATION


def test_values_from_history_are_carried_as_metadata(analyzer, extractor):
    """Earlier turns of the current creation command contribute title and priority as evidence."""
    history = [
        ConversationTurn(role="user", content="create task write report"),
        ConversationTurn(role="assistant", content="What priority should this task have?"),
        ConversationTurn(role="user", content="high"),
    ]
    state = ConversationState(conversation_id="c1", flow_type=FlowType.CREATE_TASK,
                              collected_slots={"title": "write report"}, waiting_for="priority")
    clues = ContextAnalyzer(extractor).gather(history, state)

    analysis = analyzer.analyze_sync("high", clues)

    assert clues.history_values == {"task_title": "write report", "priority": "HIGH"}
    assert analysis.metadata["task_title"] == "write report"


async def test_async_entry_point_matches_sync(analyzer):
    analysis = await analyzer.analyze("show my tasks", FlowClues())

    assert analysis.intent_type == ContextIntentType.TASK_QUERY
