"""
End-to-end tests for `core/conversation/pipeline/orchestrator.py`.

These tests drive the ConversationOrchestrator turn by turn with the
deterministic understanding tier, the in-memory task store and an
unavailable completion service. They cover the full task-creation dialogue
(start, field answers, off-topic interruption, early confirmation), decline
handling with and without a pending flow, wake phrases, two-step
confirmation of capability questions, and the guarantee that an upstream
failure still produces a well-formed reply.
"""

import json
from datetime import datetime, timedelta
from unittest.mock import AsyncMock, MagicMock

from models.schemas import ActionKind, FlowType
from core.conversation.context.memory import ConversationMemory
from core.conversation.handlers.conversation import ConversationHandler, OFFTOPIC_REPLY
from core.conversation.orchestration.confirmation import CAPABILITY_EXPLANATIONS, STEP_1_MESSAGE
from core.conversation.orchestration.slot_filling import QUESTION_TEMPLATES
from core.conversation.pipeline.orchestrator import WAKE_ONLY_REPLY, ConversationOrchestrator
from core.conversation.understanding.gemini_context_analyzer import GeminiContextAnalyzer
from core.conversation.understanding.intent_classifier import IntentClassifier
from core.services.audit_log import LoggingAuditLog
from core.services.gemini_service import GeminiService, RateLimitExceededError
from core.services.task_tools import DEFAULT_DESCRIPTION


CID = "conv-1"


async def _start_creation(orchestrator):
    first = await orchestrator.process_message("create task write report", CID)
    second = await orchestrator.process_message("high", CID)
    return first, second


async def test_creation_dialogue_asks_each_missing_field_once(orchestrator, state_store):
    """
    A creation command with only a title starts slot filling and asks for the
    priority; answering the priority moves straight on to the deadline, so
    no field is asked for twice.
    """
    first, second = await _start_creation(orchestrator)

    assert first.intent == "COMMAND"
    assert first.action == ActionKind.CREATE_TASK.value
    assert first.needs_more_info is True
    assert first.response == QUESTION_TEMPLATES["priority"]
    assert first.metadata["waiting_for"] == "priority"

    assert second.needs_more_info is True
    assert second.response == QUESTION_TEMPLATES["deadline"]
    state = state_store.get(CID)
    assert state.flow_type == FlowType.CREATE_TASK
    assert state.collected_slots == {"title": "write report", "priority": "HIGH"}
    assert state.waiting_for == "deadline"


async def test_offtopic_message_keeps_the_flow_and_repeats_the_question(orchestrator, state_store):
    """
    An unrelated question in the middle of a flow gets a conversational reply
    that ends with the pending question, and the collected slots survive.
    """
    await _start_creation(orchestrator)

    result = await orchestrator.process_message("what's the weather?", CID)

    assert result.intent == "CHITCHAT"
    assert result.action == ActionKind.NONE.value
    assert OFFTOPIC_REPLY in result.response
    assert f"Back to your task: {QUESTION_TEMPLATES['deadline']}" in result.response
    assert result.metadata["should_continue_flow"] is True
    assert result.metadata["waiting_for"] == "deadline"
    assert state_store.get(CID).collected_slots == {"title": "write report", "priority": "HIGH"}


async def test_flow_survives_several_interruptions_then_completes(orchestrator, state_store, tool_executor):
    """
    Any number of off-topic turns leave the flow intact; the next field
    answer completes it and the task is created with every collected value.
    """
    await _start_creation(orchestrator)

    for message in ["tell me a joke", "how are you?", "thanks", "what's the weather?"]:
        result = await orchestrator.process_message(message, CID)
        assert result.success is True
        assert state_store.get(CID) is not None
        assert state_store.get(CID).waiting_for == "deadline"

    result = await orchestrator.process_message("tomorrow", CID)

    assert result.metadata["executed"] is True
    assert state_store.get(CID) is None
    task = tool_executor.get_tasks().data["tasks"][0]
    assert task["title"] == "write report"
    assert task["priority"] == "HIGH"
    assert task["deadline"].endswith("T23:59:59")


async def test_confirmation_executes_with_optional_fields_left_empty(orchestrator, state_store, tool_executor):
    """
    "create it now" while the deadline is still open confirms the flow: the
    task is created at once with no deadline and the state is cleared.
    """
    await _start_creation(orchestrator)

    result = await orchestrator.process_message("create it now", CID)

    assert result.intent == "COMMAND"
    assert result.action == ActionKind.CREATE_TASK.value
    assert result.needs_more_info is False
    assert result.metadata["executed"] is True
    assert "write report" in result.response
    assert state_store.get(CID) is None
    task = tool_executor.get_tasks().data["tasks"][0]
    assert task["priority"] == "HIGH"
    assert task["deadline"] is None


async def test_unrecognized_answer_does_not_leak_into_the_task(orchestrator, tool_executor):
    """
    A reply that answers nothing is re-asked and then forgotten: the task
    created after confirming keeps the default description.
    """
    await orchestrator.process_message("create task write report", CID)

    retry = await orchestrator.process_message("dunno", CID)
    assert retry.response.startswith("Sorry, I didn't catch that.")

    await orchestrator.process_message("create it now", CID)

    task = tool_executor.get_tasks().data["tasks"][0]
    assert task["description"] == DEFAULT_DESCRIPTION
    assert task["priority"] == "MEDIUM"


async def test_no_while_waiting_for_deadline_means_no_deadline(orchestrator, state_store, tool_executor):
    """
    "no" answers an optional deadline question with "no deadline" rather
    than cancelling the flow.
    """
    await _start_creation(orchestrator)

    result = await orchestrator.process_message("no", CID)

    assert result.metadata.get("declined") is None
    assert result.metadata["executed"] is True
    assert state_store.get(CID) is None
    assert tool_executor.get_tasks().data["tasks"][0]["deadline"] is None


async def test_bare_no_without_an_offer_is_not_a_decline(orchestrator):
    """
    A fresh conversation opening with "no" has nothing to decline, so it is
    handled as small talk.
    """
    result = await orchestrator.process_message("no", "fresh")

    assert result.intent == "CHITCHAT"
    assert result.action == ActionKind.NONE.value
    assert "declined" not in result.metadata


async def test_decline_cancels_pending_flow_without_executing(orchestrator, state_store, tool_executor):
    """
    A refusal while the priority question is open cancels the flow: state is
    cleared, the intent is reported as DECLINING and nothing is created.
    """
    await orchestrator.process_message("create task write report", CID)

    result = await orchestrator.process_message("no", CID)

    assert result.intent == "DECLINING"
    assert result.metadata["declined"] is True
    assert result.metadata["decline_type"] == "task_decline"
    assert state_store.get(CID) is None
    assert tool_executor.get_tasks().data["tasks"] == []


async def test_repeated_decline_is_harmless(orchestrator, state_store, tool_executor):
    """
    Declining again after a decline leaves the conversation with no flow
    and no tasks; the second refusal does not resurrect anything.
    """
    await orchestrator.process_message("create task write report", CID)
    await orchestrator.process_message("cancel", CID)

    second = await orchestrator.process_message("cancel", CID)

    assert second.intent == "DECLINING"
    assert second.metadata["decline_type"] == "english_decline"
    assert state_store.get(CID) is None
    assert tool_executor.get_tasks().data["tasks"] == []


async def test_question_containing_negation_is_not_a_decline(orchestrator, state_store):
    """A question inside a flow is never read as a refusal, even one containing "no"."""
    await orchestrator.process_message("create task write report", CID)

    result = await orchestrator.process_message("no idea, what options are there?", CID)

    assert result.intent != "DECLINING"
    assert state_store.get(CID) is not None


async def test_wake_phrase_alone_prompts_for_a_command(orchestrator):
    result = await orchestrator.process_message("TaskFlow", CID)

    assert result.response == WAKE_ONLY_REPLY
    assert result.metadata["wake_phrase"] is True


async def test_wake_phrase_executes_with_defaults(orchestrator, state_store, tool_executor):
    """
    A command prefixed with a wake phrase skips confirmation and the optional
    questions: the task is created with MEDIUM priority and no deadline.
    """
    result = await orchestrator.process_message("TaskFlow, create task buy milk", CID)

    assert result.metadata["executed"] is True
    assert state_store.get(CID) is None
    task = tool_executor.get_tasks().data["tasks"][0]
    assert task["title"] == "buy milk"
    assert task["priority"] == "MEDIUM"
    assert task["deadline"] is None


async def test_capability_question_then_just_asking_explains(orchestrator, state_store, tool_executor):
    """
    "can you create a task?" opens the two-step confirmation; answering
    "just asking" explains the capability and performs nothing.
    """
    first = await orchestrator.process_message("can you create a task?", CID)

    assert first.response == STEP_1_MESSAGE
    assert first.needs_more_info is True
    assert first.metadata["confirmation_step"] == 1

    second = await orchestrator.process_message("just asking", CID)

    assert second.response == CAPABILITY_EXPLANATIONS[ActionKind.CREATE_TASK]
    assert second.intent == "QUERY"
    assert state_store.get(CID) is None
    assert tool_executor.get_tasks().data["tasks"] == []


async def test_capability_question_then_perform_action_collects_title(orchestrator, state_store):
    """
    Choosing "perform action" for a command without a title hands over to
    slot filling, which asks for the title and then the priority.
    """
    await orchestrator.process_message("can you create a task?", CID)

    result = await orchestrator.process_message("perform action", CID)

    assert result.response == QUESTION_TEMPLATES["title"]
    assert state_store.get(CID).waiting_for == "title"

    result = await orchestrator.process_message("Buy milk", CID)

    assert result.response == QUESTION_TEMPLATES["priority"]
    assert state_store.get(CID).collected_slots["title"] == "Buy milk"


async def test_list_and_statistics_execute_directly(orchestrator, tool_executor):
    tool_executor.create_task("write report", priority="HIGH")

    listing = await orchestrator.process_message("show my tasks", CID)
    stats = await orchestrator.process_message("task statistics", CID)

    assert listing.action == ActionKind.GET_TASKS.value
    assert "write report" in listing.response
    assert stats.action == ActionKind.GET_STATISTICS.value
    assert stats.metadata["tool_data"]["statistics"]["total"] == 1


async def test_human_request_is_escalated(orchestrator):
    result = await orchestrator.process_message("I want to talk to a human", CID)

    assert result.metadata["escalated"] is True
    assert orchestrator.escalation.get_escalations(CID)


async def test_unexpected_failure_still_returns_a_reply(orchestrator):
    """
    An exception escaping classification is caught: the turn returns an
    apology with error metadata instead of raising.
    """
    orchestrator.classifier.classify = AsyncMock(side_effect=RuntimeError("boom"))

    result = await orchestrator.process_message("create task write report", CID)

    assert result.success is False
    assert result.metadata["error"] is True
    assert result.metadata["error_type"] == "unknown"
    assert result.response
    assert orchestrator.get_metrics()["failed"] == 1


async def test_model_outage_falls_back_to_pattern_rules(state_store, tool_executor):
    """
    With a configured but rate-limited completion service, classification
    and replies use the deterministic tier and the dialogue proceeds exactly
    as it does offline.
    """
    service = GeminiService(api_key="test-key")
    service.complete = AsyncMock(side_effect=RateLimitExceededError("quota"))
    orchestrator = ConversationOrchestrator(
        state_store=state_store,
        memory=ConversationMemory(),
        classifier=IntentClassifier(primary=GeminiContextAnalyzer(service=service)),
        tool_executor=tool_executor,
        audit_log=LoggingAuditLog(),
        conversation_handler=ConversationHandler(service=service),
    )

    result = await orchestrator.process_message("create task write report", CID)

    assert result.response == QUESTION_TEMPLATES["priority"]
    assert result.metadata["analysis_source"] == "pattern"
    assert result.metadata["fallback_reason"] == "rate_limited"

    offtopic = await orchestrator.process_message("how are you?", CID)

    assert offtopic.metadata["response_type"] == "template"
    assert state_store.get(CID).waiting_for == "priority"


def _model_reply(confidence):
    return json.dumps({
        "current_flow": "TASK_CREATION",
        "intent_type": "TASK_CREATION",
        "field_mapping": "title",
        "extracted_value": "write report",
        "confidence": confidence,
        "should_continue_flow": True,
        "next_expected_input": "priority",
    })


def _model_orchestrator(reply, state_store, tool_executor):
    service = GeminiService(api_key="test-key")
    service.complete = AsyncMock(return_value=reply)
    return ConversationOrchestrator(
        state_store=state_store,
        memory=ConversationMemory(),
        classifier=IntentClassifier(primary=GeminiContextAnalyzer(service=service)),
        tool_executor=tool_executor,
        audit_log=LoggingAuditLog(),
        conversation_handler=ConversationHandler(service=service),
    )


async def test_unsure_model_classification_asks_for_confirmation(state_store, tool_executor):
    """
    The model's own low confidence opens confirmation STEP_1 even though the
    reported confidence is raised to the rule tier's floor.
    """
    orchestrator = _model_orchestrator(_model_reply(0.1), state_store, tool_executor)

    result = await orchestrator.process_message("create task write report", CID)

    assert result.response == STEP_1_MESSAGE
    assert result.metadata["confirmation_step"] == 1
    assert result.metadata["analysis_source"] == "gemini"
    assert result.confidence >= 0.6
    assert state_store.get(CID).metadata["pending_action"] == "CREATE_TASK"


async def test_confident_model_classification_goes_straight_to_slot_filling(state_store, tool_executor):
    orchestrator = _model_orchestrator(_model_reply(0.95), state_store, tool_executor)

    result = await orchestrator.process_message("create task write report", CID)

    assert result.response == QUESTION_TEMPLATES["priority"]
    assert "confirmation_step" not in result.metadata


async def test_turns_are_recorded_to_memory_and_audit_log(orchestrator):
    orchestrator.audit_log = MagicMock()

    await orchestrator.process_message("hello", CID)

    turns = orchestrator.memory.get_recent(CID)
    assert [t.role for t in turns] == ["user", "assistant"]
    orchestrator.audit_log.record_turn.assert_called_once()


async def test_clear_conversation_drops_the_flow(orchestrator, state_store):
    await orchestrator.process_message("create task write report", CID)

    assert orchestrator.clear_conversation(CID) is True
    assert state_store.get(CID) is None
    assert orchestrator.clear_conversation(CID) is False


async def test_store_sweep_also_forgets_idle_history(orchestrator, state_store):
    for i in range(50):
        await orchestrator.process_message("hello", f"idle-{i}")
    await orchestrator.process_message("I want to talk to a human", "idle-0")
    assert orchestrator.memory.conversation_count() == 50
    assert len(orchestrator.escalation.get_escalations()) == 1

    state_store.sweep_expired(now=datetime.utcnow() + timedelta(hours=2))

    assert orchestrator.memory.conversation_count() == 0
    assert orchestrator.escalation.get_escalations() == []
