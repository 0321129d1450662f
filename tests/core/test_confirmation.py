"""
Unit tests for `core/conversation/orchestration/confirmation.py`.

Covers wake-phrase stripping, when a command needs confirming, and every
transition of the two-step confirmation: explain, re-ask, hand-over to slot
filling, summary, rename, confirm and cancel.
"""

import pytest

from models.schemas import ActionKind, FlowType
from core.conversation.orchestration.confirmation import (
    CONFIRMATION_STEP_1,
    CONFIRMATION_STEP_2,
    STEP_1_MESSAGE,
    STEP_1_REASK,
    ConfirmationController,
    ConfirmationOutcome,
)


@pytest.fixture
def controller(state_store):
    return ConfirmationController(state_store, wake_phrases=["TaskFlow", "Hey TaskFlow", "AI ơi"])


@pytest.mark.parametrize("message, expected", [
    ("TaskFlow, create task x", (True, "create task x")),
    ("Hey TaskFlow: show my tasks", (True, "show my tasks")),
    ("AI ơi tạo công việc", (True, "tạo công việc")),
    ("TaskFlowing along", (False, "TaskFlowing along")),
    ("create task x", (False, "create task x")),
])
def test_strip_wake_phrase(controller, message, expected):
    assert controller.strip_wake_phrase(message) == expected


def test_capability_questions_are_recognized(controller):
    assert controller.capability_action("can you create a task?") == ActionKind.CREATE_TASK
    assert controller.capability_action("could you show my tasks?") == ActionKind.GET_TASKS
    assert controller.capability_action("can you tell me a joke?") is None
    assert controller.capability_action("create task x") is None


def test_needs_confirmation_rules(controller):
    """
    Wake phrases and non-actions never need confirming; capability questions
    always do; otherwise only low-confidence commands do.
    """
    assert controller.needs_confirmation(ActionKind.CREATE_TASK, 0.3, "create task x", True) is False
    assert controller.needs_confirmation(ActionKind.NONE, 0.1, "hmm", False) is False
    assert controller.needs_confirmation(ActionKind.CREATE_TASK, 0.95, "can you create a task?", False) is True
    assert controller.needs_confirmation(ActionKind.DELETE_TASK, 0.5, "delete task 3", False) is True
    assert controller.needs_confirmation(ActionKind.DELETE_TASK, 0.7, "delete task 3", False) is False


def test_begin_opens_step_one(controller, state_store):
    question = controller.begin("c1", ActionKind.DELETE_TASK, "delete task 3", {"task_id": "3"})

    state = state_store.get("c1")
    assert question == STEP_1_MESSAGE
    assert controller.is_pending("c1") is True
    assert state.flow_type == FlowType.DELETE_TASK
    assert state.current_step == CONFIRMATION_STEP_1
    assert state.metadata["pending_action"] == "DELETE_TASK"


def test_just_asking_explains_and_clears(controller, state_store):
    controller.begin("c1", ActionKind.CREATE_TASK, "can you create a task?")

    decision = controller.handle_reply("c1", "just asking")

    assert decision.outcome == ConfirmationOutcome.EXPLAIN
    assert "create tasks" in decision.response
    assert state_store.get("c1") is None


def test_unclear_step_one_reply_reasks(controller):
    controller.begin("c1", ActionKind.CREATE_TASK, "can you create a task?")

    decision = controller.handle_reply("c1", "hmm maybe")

    assert decision.outcome == ConfirmationOutcome.ASK
    assert decision.response == STEP_1_REASK
    assert controller.is_pending("c1") is True


def test_perform_without_required_slots_hands_over_to_slot_filling(controller, state_store):
    controller.begin("c1", ActionKind.CREATE_TASK, "can you create a task?")

    decision = controller.handle_reply("c1", "perform action")

    assert decision.outcome == ConfirmationOutcome.SLOT_FILL
    assert decision.action == ActionKind.CREATE_TASK
    assert state_store.get("c1") is None


def test_perform_lookup_executes_immediately(controller):
    controller.begin("c1", ActionKind.GET_TASKS, "could you show my tasks?")

    decision = controller.handle_reply("c1", "yes")

    assert decision.outcome == ConfirmationOutcome.EXECUTE
    assert decision.action == ActionKind.GET_TASKS


def test_complete_command_goes_through_summary_rename_and_confirm(controller, state_store):
    """
    A fully specified create moves to STEP_2, shows the defaults it will use,
    accepts a rename, and executes only on an explicit confirmation.
    """
    controller.begin("c1", ActionKind.CREATE_TASK, "create task write report", {"title": "write report"})

    summary = controller.handle_reply("c1", "perform action")
    assert summary.outcome == ConfirmationOutcome.ASK
    assert state_store.get("c1").current_step == CONFIRMATION_STEP_2
    assert "- Title: write report" in summary.response
    assert "- Priority: MEDIUM" in summary.response
    assert "- Deadline: no deadline" in summary.response

    renamed = controller.handle_reply("c1", "change title quarterly report")
    assert "- Title: quarterly report" in renamed.response

    unclear = controller.handle_reply("c1", "hmm")
    assert unclear.outcome == ConfirmationOutcome.ASK

    confirmed = controller.handle_reply("c1", "confirm create")
    assert confirmed.outcome == ConfirmationOutcome.EXECUTE
    assert confirmed.slots == {"title": "quarterly report"}
    assert state_store.get("c1") is None


def test_cancel_at_any_step(controller, state_store):
    controller.begin("c1", ActionKind.DELETE_TASK, "delete task 3", {"task_id": "3"})
    controller.handle_reply("c1", "perform action")

    decision = controller.handle_reply("c1", "cancel")

    assert decision.outcome == ConfirmationOutcome.CANCEL
    assert state_store.get("c1") is None


def test_reply_without_pending_state_cancels(controller):
    assert controller.handle_reply("nobody", "yes").outcome == ConfirmationOutcome.CANCEL
